"""Create sms_retired_codes table.

Revision ID: 20261018_000002
Revises: 20261001_000001
Create Date: 2026-10-18

WHAT: Recovery codes replaced when an operator releases a failed subscriber
WHY: A released code was registered with Shopify and may have been delivered;
     it must stay attributable and must never be generated again.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_000002"
down_revision = "20261001_000001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Type already created by the previous revision
    code_namespace = postgresql.ENUM("primary", "recovery", name="codenamespaceenum", create_type=False)

    op.create_table(
        "sms_retired_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "subscriber_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("sms_subscribers.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("namespace", code_namespace, nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("percent", sa.Integer(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discount_id", sa.String(), nullable=True),
        sa.Column("message_id", sa.String(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("code", name="uq_sms_retired_codes_code"),
    )
    op.create_index("ix_sms_retired_codes_subscriber_id", "sms_retired_codes", ["subscriber_id"])


def downgrade() -> None:
    op.drop_index("ix_sms_retired_codes_subscriber_id", table_name="sms_retired_codes")
    op.drop_table("sms_retired_codes")
