"""
Subscriber Events.

WHAT:
    Applies out-of-band events from the SMS provider: delivery receipts for
    the first and recovery messages, and inbound replies (STOP / HELP).

WHY:
    The recovery window starts from a *delivered* first message, so delivery
    receipts feed eligibility directly. STOP must take effect before the
    next cycle, and once unsubscribed a subscriber is never messaged again.

    Receipts arrive at least once and out of order. A status never moves
    back down the ranking below (a late "sent" must not undo "delivered"),
    and counters only move when the status actually changes into delivered
    or failed.

REFERENCES:
    - winback/routers/telnyx_webhooks.py
"""

import logging
from typing import Optional

from ..models import MessageStatusEnum, Subscriber, SubscriberStatusEnum, UnsubscribeReasonEnum
from .enrollment_service import message_status_from_transport
from .message_templates import help_response, stop_confirmation
from .subscriber_store import SubscriberStore
from .telnyx_client import TelnyxClient, normalize_phone

logger = logging.getLogger(__name__)

STOP_KEYWORDS = frozenset({"stop", "unsubscribe", "cancel", "quit", "end", "stopall"})
HELP_KEYWORDS = frozenset({"help", "info"})

_FAILED = (MessageStatusEnum.failed, MessageStatusEnum.undelivered)

# Receipt progression; final states share the top rank
STATUS_RANK = {
    MessageStatusEnum.pending: 0,
    MessageStatusEnum.queued: 1,
    MessageStatusEnum.sent: 2,
    MessageStatusEnum.delivered: 3,
    MessageStatusEnum.failed: 3,
    MessageStatusEnum.undelivered: 3,
}


def is_regression(current: Optional[MessageStatusEnum], incoming: MessageStatusEnum) -> bool:
    """True when applying `incoming` would move the status backwards."""
    if current is None:
        return False
    return STATUS_RANK[incoming] < STATUS_RANK[current]


class SubscriberEventService:
    """
    Usage:
        events = SubscriberEventService(store, telnyx)
        events.apply_delivery_status("msg-id", "delivered")
        await events.handle_inbound("+12015550123", "STOP")
    """

    def __init__(self, store: SubscriberStore, transport: Optional[TelnyxClient] = None):
        self.store = store
        self.transport = transport

    def _allowed_priors(self, current: Optional[MessageStatusEnum], status: MessageStatusEnum):
        if current is None:
            return None
        return [s for s, rank in STATUS_RANK.items() if rank <= STATUS_RANK[status]]

    def _status_update(self, subscriber: Subscriber, prefix: str, status: MessageStatusEnum, error: Optional[str]):
        status_column = f"{prefix}_status"
        current = getattr(subscriber, status_column)
        fields = {status_column: status}
        if error:
            fields[f"{prefix}_error"] = error[:500]

        # Counters only move on a transition into delivered / failed
        if status == MessageStatusEnum.delivered and current != MessageStatusEnum.delivered:
            fields["total_messages_delivered"] = Subscriber.total_messages_delivered + 1
        elif status in _FAILED and current not in _FAILED:
            fields["total_messages_failed"] = Subscriber.total_messages_failed + 1

        return self.store.conditional_update(
            subscriber.id,
            expected={status_column: self._allowed_priors(current, status), "version": subscriber.version},
            fields=fields,
        )

    def apply_delivery_status(self, message_id: str, status: str, error: Optional[str] = None) -> Optional[str]:
        """Record a delivery receipt.

        Returns:
            "first" or "recovery" for the message that was updated, None when
            the message id is unknown, the receipt is older than the stored
            status, or the update lost a race.
        """
        if not message_id:
            return None
        mapped = message_status_from_transport(status)

        matches = self.store.find(Subscriber.first_message_id == message_id, limit=1)
        prefix = "first_message"
        if not matches:
            matches = self.store.find(Subscriber.recovery_message_id == message_id, limit=1)
            prefix = "recovery"
        if not matches:
            logger.info(f"[SMS_EVENTS] Delivery receipt for unknown message {message_id}")
            return None

        subscriber = matches[0]
        current = getattr(subscriber, f"{prefix}_status")
        if is_regression(current, mapped):
            logger.info(
                f"[SMS_EVENTS] Ignoring late {mapped.value} receipt for {message_id}, already {current.value}"
            )
            return None
        row = self._status_update(subscriber, prefix, mapped, error)
        if row is None:
            logger.info(f"[SMS_EVENTS] Receipt for {message_id} raced another update, skipped")
            return None

        which = "first" if prefix == "first_message" else "recovery"
        logger.info(f"[SMS_EVENTS] Updated {which} SMS status: {subscriber.id} -> {mapped.value}")
        return which

    async def handle_inbound(self, from_phone: str, text: str) -> str:
        """Handle an inbound reply.

        Returns:
            One of unsubscribed, already_unsubscribed, help, ignored,
            unknown_number.
        """
        phone = normalize_phone(from_phone)
        subscriber = self.store.get_by_phone(phone) if phone else None
        if subscriber is None:
            logger.info(f"[SMS_EVENTS] Inbound SMS from unknown number: {from_phone}")
            return "unknown_number"

        keyword = (text or "").strip().lower()

        if keyword in STOP_KEYWORDS:
            if subscriber.status == SubscriberStatusEnum.unsubscribed:
                return "already_unsubscribed"

            if subscriber.recovery_message_id:
                after = "recovery"
            elif subscriber.first_message_sent:
                after = "first"
            else:
                after = "none"

            row = self.store.conditional_update(
                subscriber.id,
                expected={"status": [SubscriberStatusEnum.active, SubscriberStatusEnum.bounced, SubscriberStatusEnum.invalid]},
                fields={
                    "status": SubscriberStatusEnum.unsubscribed,
                    "unsubscribed_at": self.store.clock.now(),
                    "unsubscribe_reason": UnsubscribeReasonEnum.stop_keyword,
                    "unsubscribe_after_message": after,
                },
            )
            if row is None:
                return "already_unsubscribed"

            logger.info(f"[SMS_EVENTS] Unsubscribed via STOP: {subscriber.id} (after {after} SMS)")
            if self.transport is not None:
                await self.transport.send(phone, stop_confirmation())
            return "unsubscribed"

        if keyword in HELP_KEYWORDS:
            if self.transport is not None and subscriber.status != SubscriberStatusEnum.unsubscribed:
                await self.transport.send(phone, help_response())
            return "help"

        logger.info(f"[SMS_EVENTS] Inbound SMS from {subscriber.id} ignored")
        return "ignored"
