"""
Eligibility Scanner.

WHAT:
    Finds subscribers who should receive the recovery message, and stamps
    each with the instant at which it may be sent.

WHY:
    Two-phase selection keeps quiet hours out of the claim path:
    1. schedulable: first message delivered between max_hours and min_hours
       ago, no schedule yet. These get recovery_scheduled_for stamped with
       the next sendable instant.
    2. dispatch-ready: scheduled instant has passed. These are handed to
       the claim manager, oldest schedule first.

    Every query filters on status/converted/recovery_sent, but the results are
    a snapshot. is_still_eligible is the re-check right before claiming, and
    the claim itself is the authoritative guard.

REFERENCES:
    - winback/services/quiet_hours.py
    - winback/services/claim_manager.py
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from ..deps import RecoveryConfig
from ..models import (
    MessageStatusEnum,
    RecoveryStateEnum,
    Subscriber,
    SubscriberStatusEnum,
)
from .clock import Clock, ensure_utc
from .lifecycle import CLAIMABLE_STATES
from .quiet_hours import QuietHoursClock
from .subscriber_store import SubscriberStore

logger = logging.getLogger(__name__)

# Delivery receipts that prove the first message reached the handset
DELIVERED_STATUSES = (MessageStatusEnum.delivered,)


class EligibilityScanner:
    """
    Usage:
        scanner = EligibilityScanner(store, quiet_hours, config, clock)
        scanner.schedule_eligible(limit=100)
        for subscriber in scanner.find_dispatch_ready(limit=50):
            ...
    """

    def __init__(
        self,
        store: SubscriberStore,
        quiet_hours: QuietHoursClock,
        config: Optional[RecoveryConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.quiet_hours = quiet_hours
        self.config = config or RecoveryConfig()
        self.clock = clock or store.clock

    def _base_criteria(self) -> list:
        return [
            Subscriber.status == SubscriberStatusEnum.active,
            Subscriber.converted.is_(False),
            Subscriber.recovery_sent.is_(False),
        ]

    def window_bounds(self):
        """(oldest, newest) first_message_at accepted right now, both inclusive."""
        now = self.clock.now()
        return (
            now - timedelta(hours=self.config.max_hours),
            now - timedelta(hours=self.config.min_hours),
        )

    def find_schedulable(self, limit: int = 100) -> List[Subscriber]:
        oldest, newest = self.window_bounds()
        return self.store.find(
            *self._base_criteria(),
            Subscriber.first_message_status.in_(DELIVERED_STATUSES),
            Subscriber.recovery_scheduled_for.is_(None),
            Subscriber.recovery_state == RecoveryStateEnum.pending,
            Subscriber.first_message_at >= oldest,
            Subscriber.first_message_at <= newest,
            order_by=[Subscriber.first_message_at.asc()],
            limit=limit,
        )

    def find_dispatch_ready(self, limit: int = 50, exclude_ids: Optional[Iterable] = None) -> List[Subscriber]:
        now = self.clock.now()
        return self.store.find(
            *self._base_criteria(),
            Subscriber.recovery_scheduled_for.isnot(None),
            Subscriber.recovery_scheduled_for <= now,
            Subscriber.recovery_state.in_(list(CLAIMABLE_STATES)),
            order_by=[Subscriber.recovery_scheduled_for.asc()],
            limit=limit,
            exclude_ids=exclude_ids,
        )

    def schedule_eligible(self, limit: int = 100) -> int:
        """Stamp recovery_scheduled_for on every schedulable subscriber.

        Returns:
            Number of subscribers scheduled by this call
        """
        scheduled = 0
        for subscriber in self.find_schedulable(limit=limit):
            send_at = self.quiet_hours.next_sendable_instant()
            row = self.store.transition(
                subscriber.id,
                from_states=[RecoveryStateEnum.pending],
                to_state=RecoveryStateEnum.scheduled,
                expected={
                    "recovery_sent": False,
                    "converted": False,
                    "recovery_scheduled_for": None,
                    "status": SubscriberStatusEnum.active,
                },
                fields={"recovery_scheduled_for": send_at},
            )
            if row is not None:
                scheduled += 1

        if scheduled:
            logger.info(f"[ELIGIBILITY] Scheduled {scheduled} subscribers for recovery")
        return scheduled

    def is_still_eligible(self, subscriber: Subscriber) -> bool:
        """Re-check a snapshot against the current row before claiming."""
        current = self.store.get(subscriber.id)
        if current is None:
            return False
        if current.status != SubscriberStatusEnum.active:
            return False
        if current.converted or current.recovery_sent:
            return False
        if current.recovery_state not in CLAIMABLE_STATES:
            return False
        scheduled_for = ensure_utc(current.recovery_scheduled_for)
        if scheduled_for is not None and scheduled_for > self.clock.now():
            return False
        return True
