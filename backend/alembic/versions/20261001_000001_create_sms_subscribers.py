"""Create sms_subscribers table.

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01

WHAT: One row per phone number with first-message, recovery and conversion state
WHY: Workers coordinate only through conditional updates on this row, so the
     recovery lock (recovery_sent), the lifecycle (recovery_state) and the
     attribution token (converted) all live here.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261001_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    subscriber_status = sa.Enum(
        "active", "unsubscribed", "bounced", "invalid",
        name="subscriberstatusenum",
    )
    message_status = sa.Enum(
        "pending", "queued", "sent", "delivered", "failed", "undelivered",
        name="messagestatusenum",
    )
    code_namespace = sa.Enum("primary", "recovery", name="codenamespaceenum")
    recovery_state = sa.Enum(
        "pending", "scheduled", "claimed", "sent", "failed", "converted",
        name="recoverystateenum",
    )
    unsubscribe_reason = sa.Enum(
        "user_request", "stop_keyword", "bounced", "admin",
        name="unsubscribereasonenum",
    )

    op.create_table(
        "sms_subscribers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("phone", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="popup"),
        # Status
        sa.Column("status", subscriber_status, nullable=False, server_default="active"),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unsubscribe_reason", unsubscribe_reason, nullable=True),
        sa.Column("unsubscribe_after_message", sa.String(), nullable=True),
        # First message
        sa.Column("first_message_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("first_message_status", message_status, nullable=False, server_default="pending"),
        sa.Column("first_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_message_id", sa.String(), nullable=True),
        sa.Column("first_message_error", sa.String(), nullable=True),
        # Primary code
        sa.Column("primary_code", sa.String(), nullable=True),
        sa.Column("primary_percent", sa.Integer(), nullable=True),
        sa.Column("primary_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("primary_discount_id", sa.String(), nullable=True),
        # Recovery message
        sa.Column("recovery_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("recovery_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_status", message_status, nullable=True),
        sa.Column("recovery_scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_message_id", sa.String(), nullable=True),
        sa.Column("recovery_error", sa.String(), nullable=True),
        sa.Column("recovery_state", recovery_state, nullable=False, server_default="pending"),
        # Recovery code
        sa.Column("recovery_code", sa.String(), nullable=True),
        sa.Column("recovery_percent", sa.Integer(), nullable=True),
        sa.Column("recovery_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovery_discount_id", sa.String(), nullable=True),
        # Conversion
        sa.Column("converted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("converted_with", code_namespace, nullable=True),
        sa.Column("conversion_order_id", sa.String(), nullable=True),
        sa.Column("conversion_order_total", sa.Numeric(12, 2), nullable=True),
        sa.Column("conversion_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("conversion_code", sa.String(), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_to_convert_minutes", sa.Integer(), nullable=True),
        sa.Column("conversion_data", sa.JSON(), nullable=True),
        # Counters
        sa.Column("total_messages_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_messages_delivered", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_messages_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("primary_code", name="uq_sms_subscribers_primary_code"),
        sa.UniqueConstraint("recovery_code", name="uq_sms_subscribers_recovery_code"),
    )

    op.create_index("ix_sms_subscribers_phone", "sms_subscribers", ["phone"], unique=True)
    op.create_index("ix_sms_subscribers_status", "sms_subscribers", ["status"])
    op.create_index("ix_sms_subscribers_first_message_id", "sms_subscribers", ["first_message_id"])
    op.create_index("ix_sms_subscribers_recovery_message_id", "sms_subscribers", ["recovery_message_id"])
    op.create_index("ix_sms_subscribers_recovery_state", "sms_subscribers", ["recovery_state"])
    op.create_index("ix_sms_subscribers_converted", "sms_subscribers", ["converted"])
    op.create_index(
        "ix_sms_subscribers_schedulable",
        "sms_subscribers",
        ["status", "converted", "recovery_sent", "first_message_at"],
    )
    op.create_index(
        "ix_sms_subscribers_dispatch_ready",
        "sms_subscribers",
        ["status", "converted", "recovery_sent", "recovery_scheduled_for"],
    )


def downgrade() -> None:
    op.drop_index("ix_sms_subscribers_dispatch_ready", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_schedulable", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_converted", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_recovery_state", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_recovery_message_id", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_first_message_id", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_status", table_name="sms_subscribers")
    op.drop_index("ix_sms_subscribers_phone", table_name="sms_subscribers")
    op.drop_table("sms_subscribers")

    for name in (
        "unsubscribereasonenum",
        "recoverystateenum",
        "codenamespaceenum",
        "messagestatusenum",
        "subscriberstatusenum",
    ):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
