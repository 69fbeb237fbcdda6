"""
Enrollment Service.

WHAT:
    First contact with a subscriber: normalise the phone, create the row,
    issue the primary code (fixed percent, long expiry) and send the welcome
    message.

WHY:
    The welcome message starts the recovery clock: first_message_at and the
    delivery receipt for first_message_id are what the eligibility scanner
    keys on. Enrolling the same phone twice returns the existing row, and a
    row whose welcome never went out is completed on the next enrollment.

RULES:
    - Unsubscribed and invalid subscribers are returned as-is; nothing is sent.
    - A welcome the transport rejects marks the subscriber invalid.
    - If the primary code cannot be registered, the reservation is cleared
      and IssuanceError propagates; nothing is sent.

REFERENCES:
    - winback/routers/subscribers.py (POST /subscribers)
    - winback/services/code_issuer.py
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..models import CodeNamespaceEnum, MessageStatusEnum, Subscriber, SubscriberStatusEnum
from .code_issuer import CodeIssuer
from .errors import InvalidPhoneError, IssuanceError
from .message_templates import welcome
from .subscriber_store import SubscriberStore
from .telnyx_client import TelnyxClient, normalize_phone

logger = logging.getLogger(__name__)


def message_status_from_transport(status: Optional[str]) -> MessageStatusEnum:
    """Map a Telnyx message status onto MessageStatusEnum."""
    mapping = {
        "queued": MessageStatusEnum.queued,
        "sending": MessageStatusEnum.queued,
        "sent": MessageStatusEnum.sent,
        "delivered": MessageStatusEnum.delivered,
        "sending_failed": MessageStatusEnum.failed,
        "delivery_failed": MessageStatusEnum.failed,
        "failed": MessageStatusEnum.failed,
        "delivery_unconfirmed": MessageStatusEnum.undelivered,
        "undelivered": MessageStatusEnum.undelivered,
    }
    return mapping.get((status or "").lower(), MessageStatusEnum.queued)


@dataclass
class EnrollmentResult:
    subscriber: Subscriber
    created: bool
    already_subscribed: bool = False
    sms_sent: bool = False
    error: Optional[str] = None


class EnrollmentService:
    """
    Usage:
        service = EnrollmentService(store, issuer, telnyx)
        result = await service.enroll("(201) 555-0123", email="a@b.com")
    """

    def __init__(self, store: SubscriberStore, issuer: CodeIssuer, transport: TelnyxClient):
        self.store = store
        self.issuer = issuer
        self.transport = transport

    def _get_or_create(self, phone: str, email, first_name, source) -> tuple:
        existing = self.store.get_by_phone(phone)
        if existing is not None:
            return existing, False
        try:
            return self.store.create(phone=phone, email=email, first_name=first_name, source=source), True
        except IntegrityError:
            # Concurrent enrollment of the same phone
            existing = self.store.get_by_phone(phone)
            if existing is None:
                raise
            return existing, False

    async def _issue_primary(self, subscriber: Subscriber) -> Subscriber:
        try:
            await self.issuer.issue_code(subscriber.id, CodeNamespaceEnum.primary)
        except IssuanceError as e:
            if e.code:
                self.store.conditional_update(
                    subscriber.id,
                    expected={"primary_code": e.code, "primary_discount_id": None},
                    fields={"primary_code": None, "primary_percent": None, "primary_expires_at": None},
                )
            raise
        return self.store.get(subscriber.id)

    async def _send_welcome(self, subscriber: Subscriber) -> EnrollmentResult:
        text = welcome(subscriber.primary_code, subscriber.primary_percent)
        result = await self.transport.send(subscriber.phone, text)
        now = self.store.clock.now()

        if result.success:
            row = self.store.conditional_update(
                subscriber.id,
                expected={"first_message_sent": False},
                fields={
                    "first_message_sent": True,
                    "first_message_at": now,
                    "first_message_id": result.message_id,
                    "first_message_status": message_status_from_transport(result.status),
                    "first_message_error": None,
                    "total_messages_sent": Subscriber.total_messages_sent + 1,
                    "last_message_at": now,
                },
            )
            logger.info(f"[ENROLL] Welcome SMS sent to {subscriber.id} - ID: {result.message_id}")
            return EnrollmentResult(subscriber=row or self.store.get(subscriber.id), created=True, sms_sent=True)

        row = self.store.conditional_update(
            subscriber.id,
            expected={"first_message_sent": False},
            fields={
                "first_message_status": MessageStatusEnum.failed,
                "first_message_error": (result.error or "")[:500],
                "status": SubscriberStatusEnum.invalid,
                "total_messages_failed": Subscriber.total_messages_failed + 1,
            },
        )
        logger.warning(f"[ENROLL] Welcome SMS failed for {subscriber.id}: {result.error}")
        return EnrollmentResult(
            subscriber=row or self.store.get(subscriber.id),
            created=True,
            sms_sent=False,
            error=result.error,
        )

    async def enroll(
        self,
        phone: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        source: str = "popup",
    ) -> EnrollmentResult:
        """Enroll a phone number and send the welcome message.

        Raises:
            InvalidPhoneError: If the phone cannot be normalised
            IssuanceError: If the primary code cannot be registered
        """
        formatted = normalize_phone(phone)
        if not formatted:
            raise InvalidPhoneError(phone)

        subscriber, created = self._get_or_create(formatted, email, first_name, source)

        if subscriber.status != SubscriberStatusEnum.active or subscriber.first_message_sent:
            return EnrollmentResult(subscriber=subscriber, created=False, already_subscribed=True)

        if subscriber.primary_code is None:
            subscriber = await self._issue_primary(subscriber)

        result = await self._send_welcome(subscriber)
        result.created = created
        return result
