"""
Claim Manager.

WHAT:
    Acquires and releases the durable dispatch lock (recovery_sent) on a
    subscriber row.

WHY:
    The recovery message must go out at most once, even with several cron
    workers and overlapping runs. The lock is taken with a single conditional
    UPDATE; whoever changes the row wins, everyone else sees zero rows and
    moves on. There is no in-process lock to lose on a crash.

LOCK LIFECYCLE:
    try_claim            pending/scheduled -> claimed (recovery_sent := true)
    unlock               claimed -> scheduled/pending (only before anything was sent)
    mark_failed          claimed -> failed (lock kept)
    release_failed       failed -> scheduled/pending (operator resend decision;
                         the issued code is retired, never forgotten)
    expire_stale_claims  claimed for too long -> failed (crashed worker)

REFERENCES:
    - winback/services/subscriber_store.py (conditional_update)
    - winback/services/lifecycle.py
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from ..models import (
    CodeNamespaceEnum,
    MessageStatusEnum,
    RecoveryStateEnum,
    RetiredCode,
    Subscriber,
    SubscriberStatusEnum,
)
from ..telemetry import capture_message
from .clock import Clock
from .lifecycle import CLAIMABLE_STATES
from .subscriber_store import SubscriberStore

logger = logging.getLogger(__name__)

S = RecoveryStateEnum

# Fields cleared when a claim is given back
_RESERVATION_RESET = {
    "recovery_sent": False,
    "recovery_at": None,
    "recovery_code": None,
    "recovery_percent": None,
    "recovery_expires_at": None,
    "recovery_discount_id": None,
}


class ClaimManager:
    """
    Usage:
        claims = ClaimManager(store)
        claimed = claims.try_claim(subscriber.id)
        if claimed is None:
            return "claim_lost"
    """

    def __init__(self, store: SubscriberStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or store.clock

    def try_claim(self, subscriber_id) -> Optional[Subscriber]:
        """Take the dispatch lock.

        Returns:
            The claimed subscriber, or None when another worker holds the
            lock, the subscriber converted, or it is no longer active.
        """
        claimed = self.store.transition(
            subscriber_id,
            from_states=sorted(CLAIMABLE_STATES, key=lambda s: s.value),
            to_state=S.claimed,
            expected={
                "recovery_sent": False,
                "converted": False,
                "status": SubscriberStatusEnum.active,
            },
            fields={
                "recovery_sent": True,
                "recovery_at": self.clock.now(),
                "recovery_error": None,
            },
        )
        if claimed is None:
            logger.info(f"[CLAIM] Claim lost or not eligible: {subscriber_id}")
        else:
            logger.debug(f"[CLAIM] Claimed {subscriber_id}")
        return claimed

    def unlock(self, subscriber_id, error: str) -> Optional[Subscriber]:
        """Give the lock back after a failure that happened before sending.

        The subscriber returns to scheduled when it still has a schedule,
        otherwise to pending, and is picked up again by the next cycle.
        """
        current = self.store.get(subscriber_id)
        if current is None:
            return None
        target = S.scheduled if current.recovery_scheduled_for is not None else S.pending

        fields = dict(_RESERVATION_RESET)
        fields["recovery_error"] = (error or "")[:500]
        released = self.store.transition(
            subscriber_id,
            from_states=[S.claimed],
            to_state=target,
            expected={"recovery_sent": True},
            fields=fields,
        )
        if released is None:
            logger.warning(f"[CLAIM] Unlock skipped, {subscriber_id} is no longer claimed")
        else:
            logger.info(f"[CLAIM] Unlocked {subscriber_id}: {error}")
        return released

    def mark_failed(self, subscriber_id, error: str) -> Optional[Subscriber]:
        """Record a failure after a send attempt; the lock stays held."""
        return self.store.transition(
            subscriber_id,
            from_states=[S.claimed],
            to_state=S.failed,
            fields={
                "recovery_status": MessageStatusEnum.failed,
                "recovery_error": (error or "")[:500],
            },
        )

    def release_failed(self, subscriber_id) -> Optional[Subscriber]:
        """Operator decision to resend after a transport failure.

        Clears the lock; the subscriber is reconsidered by the next cycle
        (immediately if it has a past schedule). The previous code was
        registered with the store and may have reached the customer, so it is
        moved to sms_retired_codes in the same transaction: orders redeeming
        it are still attributed and the generator never draws it again.
        """
        current = self.store.get(subscriber_id)
        if current is None or current.recovery_state != S.failed:
            return None
        target = S.scheduled if current.recovery_scheduled_for is not None else S.pending

        fields = dict(_RESERVATION_RESET)
        fields.update({
            "recovery_status": None,
            "recovery_message_id": None,
        })
        retired = []
        if current.recovery_code:
            retired.append(RetiredCode(
                subscriber_id=current.id,
                namespace=CodeNamespaceEnum.recovery,
                code=current.recovery_code,
                percent=current.recovery_percent,
                expires_at=current.recovery_expires_at,
                discount_id=current.recovery_discount_id,
                message_id=current.recovery_message_id,
                sent_at=current.recovery_at,
                retired_at=self.clock.now(),
            ))
        released = self.store.transition(
            subscriber_id,
            from_states=[S.failed],
            to_state=target,
            expected={"converted": False, "recovery_code": current.recovery_code},
            fields=fields,
            add=retired,
        )
        if released is not None:
            logger.info(
                f"[CLAIM] Released failed subscriber {subscriber_id} for resend"
                + (f", retired code {current.recovery_code}" if retired else "")
            )
        return released

    def expire_stale_claims(self, older_than: timedelta) -> List[Subscriber]:
        """Move claims held longer than `older_than` to failed.

        A worker that died between claim and outcome leaves the row claimed.
        Whether the SMS went out is unknown, so the row is never retried
        automatically; it surfaces as failed for an operator to release.
        """
        cutoff: datetime = self.clock.now() - older_than
        stale = self.store.find(
            Subscriber.recovery_state == S.claimed,
            Subscriber.recovery_at <= cutoff,
        )
        expired = []
        for subscriber in stale:
            row = self.store.transition(
                subscriber.id,
                from_states=[S.claimed],
                to_state=S.failed,
                expected={"recovery_at": subscriber.recovery_at},
                fields={
                    "recovery_status": MessageStatusEnum.failed,
                    "recovery_error": f"Claim expired after {int(older_than.total_seconds() // 60)} minutes",
                },
            )
            if row is not None:
                expired.append(row)

        if expired:
            logger.warning(f"[CLAIM] Expired {len(expired)} stale claims")
            capture_message(
                f"Expired {len(expired)} stale recovery claims",
                level="warning",
                extra={"subscriber_ids": [str(row.id) for row in expired]},
            )
        return expired
