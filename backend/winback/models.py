"""SQLAlchemy ORM models and enums.

This module defines the subscriber schema. One row per phone number carries
the whole first-message / recovery-message / conversion lifecycle, so every
worker coordinates through conditional updates on a single row.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, Numeric, JSON, Boolean, Index, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class SubscriberStatusEnum(str, enum.Enum):
    """Contact status. unsubscribed and invalid are terminal."""
    active = "active"
    unsubscribed = "unsubscribed"
    bounced = "bounced"
    invalid = "invalid"


class MessageStatusEnum(str, enum.Enum):
    pending = "pending"
    queued = "queued"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"
    undelivered = "undelivered"


class CodeNamespaceEnum(str, enum.Enum):
    """Which message a discount code belongs to, inferred from its prefix."""
    primary = "primary"
    recovery = "recovery"


class RecoveryStateEnum(str, enum.Enum):
    """Explicit recovery lifecycle.

    Allowed transitions live in winback/services/lifecycle.py.
    """
    pending = "pending"        # Waiting for the recovery window
    scheduled = "scheduled"    # recovery_scheduled_for stamped
    claimed = "claimed"        # Lock held by one worker, dispatch in progress
    sent = "sent"              # Recovery message accepted by the transport
    failed = "failed"          # Transport failure; needs an explicit resend decision
    converted = "converted"    # Purchase attributed (terminal)


class UnsubscribeReasonEnum(str, enum.Enum):
    user_request = "user_request"
    stop_keyword = "stop_keyword"
    bounced = "bounced"
    admin = "admin"


def _enum_column(enum_cls, **kwargs):
    return Column(Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj]), **kwargs)


# Core models ----------------------------------------------------

class Subscriber(Base):
    """SMS subscriber with first-message, recovery and conversion state.

    WHAT: The single shared mutable record of the recovery pipeline
    WHY: Claiming, dispatch outcomes and conversions all race over the same
         row; they coordinate through compare-and-swap updates guarded by
         the flags below and the `version` counter.
    REFERENCES:
        - winback/services/subscriber_store.py (conditional_update)
        - winback/services/lifecycle.py (recovery_state transitions)
    """
    __tablename__ = "sms_subscribers"
    __table_args__ = (
        Index("ix_sms_subscribers_schedulable", "status", "converted", "recovery_sent", "first_message_at"),
        Index("ix_sms_subscribers_dispatch_ready", "status", "converted", "recovery_sent", "recovery_scheduled_for"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Identity
    phone = Column(String, unique=True, index=True, nullable=False)  # E.164
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    source = Column(String, nullable=False, default="popup")

    # Status
    status = _enum_column(SubscriberStatusEnum, nullable=False, default=SubscriberStatusEnum.active, index=True)
    unsubscribed_at = Column(DateTime(timezone=True), nullable=True)
    unsubscribe_reason = _enum_column(UnsubscribeReasonEnum, nullable=True)
    unsubscribe_after_message = Column(String, nullable=True)  # none, first, recovery

    # First (welcome) message
    first_message_sent = Column(Boolean, nullable=False, default=False)
    first_message_status = _enum_column(MessageStatusEnum, nullable=False, default=MessageStatusEnum.pending)
    first_message_at = Column(DateTime(timezone=True), nullable=True)
    first_message_id = Column(String, nullable=True, index=True)
    first_message_error = Column(String, nullable=True)

    # Primary incentive code
    primary_code = Column(String, unique=True, nullable=True)
    primary_percent = Column(Integer, nullable=True)
    primary_expires_at = Column(DateTime(timezone=True), nullable=True)
    primary_discount_id = Column(String, nullable=True)

    # Recovery message
    # recovery_sent is the durable dispatch lock: only a successful claim sets it
    recovery_sent = Column(Boolean, nullable=False, default=False)
    recovery_at = Column(DateTime(timezone=True), nullable=True)
    recovery_status = _enum_column(MessageStatusEnum, nullable=True)
    recovery_scheduled_for = Column(DateTime(timezone=True), nullable=True)
    recovery_message_id = Column(String, nullable=True, index=True)
    recovery_error = Column(String, nullable=True)
    recovery_state = _enum_column(RecoveryStateEnum, nullable=False, default=RecoveryStateEnum.pending, index=True)

    # Recovery incentive code
    recovery_code = Column(String, unique=True, nullable=True)
    recovery_percent = Column(Integer, nullable=True)
    recovery_expires_at = Column(DateTime(timezone=True), nullable=True)
    recovery_discount_id = Column(String, nullable=True)

    # Conversion (converted doubles as the attribution idempotency token)
    converted = Column(Boolean, nullable=False, default=False, index=True)
    converted_with = _enum_column(CodeNamespaceEnum, nullable=True)
    conversion_order_id = Column(String, nullable=True)
    conversion_order_total = Column(Numeric(12, 2), nullable=True)
    conversion_discount_amount = Column(Numeric(12, 2), nullable=True)
    conversion_code = Column(String, nullable=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    time_to_convert_minutes = Column(Integer, nullable=True)
    conversion_data = Column(JSON, nullable=True)  # order name, currency, products, customer email

    # Engagement counters
    total_messages_sent = Column(Integer, nullable=False, default=0)
    total_messages_delivered = Column(Integer, nullable=False, default=0)
    total_messages_failed = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency counter, bumped by every conditional update
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __str__(self):
        return f"Subscriber {self.phone} ({self.status.value if self.status else 'unknown'})"


class RetiredCode(Base):
    """A recovery code replaced by an operator resend.

    WHAT: Keeps a code that was registered with the store (and possibly
          delivered) after its subscriber is released for a new attempt
    WHY: The customer can still redeem the old code; the order must be
         credited to the same subscriber, and the generator must never hand
         the code out again
    REFERENCES:
        - winback/services/claim_manager.py (release_failed)
        - winback/services/subscriber_store.py (find_by_code, code_exists)
    """
    __tablename__ = "sms_retired_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscriber_id = Column(
        UUID(as_uuid=True), ForeignKey("sms_subscribers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    namespace = _enum_column(CodeNamespaceEnum, nullable=False, default=CodeNamespaceEnum.recovery)
    code = Column(String, unique=True, nullable=False)
    percent = Column(Integer, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    discount_id = Column(String, nullable=True)
    message_id = Column(String, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)  # recovery_at of the attempt
    retired_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def __str__(self):
        return f"RetiredCode {self.code}"
