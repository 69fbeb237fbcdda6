"""
Recovery Dispatcher.

WHAT:
    Renders the recovery message for a claimed subscriber, sends it through
    the transport and records the outcome on the row.

WHY:
    Once the transport has been called, the outcome must be recorded against
    the same claim that authorised it. Both outcome writes are conditional on
    recovery_state = claimed, so a conversion that landed mid-send is never
    overwritten. A transport failure keeps recovery_sent = true: the provider
    may have delivered anyway, and a second message is worse than none.

REFERENCES:
    - winback/services/telnyx_client.py (TransportResult)
    - winback/services/message_templates.py (RECOVERY_TEMPLATES)
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..deps import RecoveryConfig
from ..models import MessageStatusEnum, RecoveryStateEnum, Subscriber
from .clock import Clock
from .code_issuer import IssuedCode
from .message_templates import RECOVERY_TEMPLATES, render_recovery
from .subscriber_store import SubscriberStore
from .telnyx_client import TelnyxClient

logger = logging.getLogger(__name__)

S = RecoveryStateEnum


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    text: Optional[str] = None
    recorded: bool = True


def template_index_for(subscriber: Subscriber) -> int:
    """Stable template choice per subscriber."""
    return subscriber.id.int % len(RECOVERY_TEMPLATES)


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(store, telnyx, config)
        result = await dispatcher.dispatch(claimed_subscriber, issued_code)
    """

    def __init__(
        self,
        store: SubscriberStore,
        transport: TelnyxClient,
        config: Optional[RecoveryConfig] = None,
        clock: Optional[Clock] = None,
        select_template: Callable[[Subscriber], int] = template_index_for,
    ):
        self.store = store
        self.transport = transport
        self.config = config or RecoveryConfig()
        self.clock = clock or store.clock
        self.select_template = select_template

    def render(self, subscriber: Subscriber, code: IssuedCode) -> str:
        return render_recovery(
            self.select_template(subscriber),
            code.code,
            code.percent,
            self.config.recovery_expiration_hours,
        )

    async def dispatch(self, subscriber: Subscriber, code: IssuedCode) -> SendResult:
        text = self.render(subscriber, code)
        result = await self.transport.send(subscriber.phone, text)
        now = self.clock.now()

        if result.success:
            row = self.store.transition(
                subscriber.id,
                from_states=[S.claimed],
                to_state=S.sent,
                expected={"recovery_sent": True},
                fields={
                    "recovery_status": MessageStatusEnum.sent,
                    "recovery_message_id": result.message_id,
                    "recovery_error": None,
                    "total_messages_sent": Subscriber.total_messages_sent + 1,
                    "last_message_at": now,
                },
            )
            if row is None:
                logger.warning(
                    f"[DISPATCH] Sent {result.message_id} but {subscriber.id} left claimed state before recording"
                )
            else:
                logger.info(f"[DISPATCH] Recovery SMS sent to {subscriber.id}: {code.code}")
            return SendResult(success=True, message_id=result.message_id, text=text, recorded=row is not None)

        row = self.store.transition(
            subscriber.id,
            from_states=[S.claimed],
            to_state=S.failed,
            expected={"recovery_sent": True},
            fields={
                "recovery_status": MessageStatusEnum.failed,
                "recovery_error": (result.error or "unknown transport error")[:500],
                "total_messages_failed": Subscriber.total_messages_failed + 1,
            },
        )
        logger.error(f"[DISPATCH] Transport failed for {subscriber.id}: {result.error}")
        return SendResult(success=False, error=result.error, text=text, recorded=row is not None)
