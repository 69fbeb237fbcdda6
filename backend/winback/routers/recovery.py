"""Recovery operator endpoints.

WHAT:
    Status, manual trigger, statistics and the resend decision for failed
    recovery messages.

WHY:
    Failed sends are never retried automatically because the provider may
    have delivered anyway. An operator looks at the failure and releases the
    subscriber explicitly; the next cycle then reconsiders it.

ENDPOINTS:
    GET  /recovery/status                    - send window + lifecycle counts
    POST /recovery/run                       - enqueue a cycle on the worker
    GET  /recovery/stats                     - conversion breakdown
    POST /recovery/subscribers/{id}/release  - failed -> pending/scheduled

    All endpoints require the X-Admin-Token header.

REFERENCES:
    - winback/services/recovery_analytics.py
    - winback/services/claim_manager.py (release_failed)
    - winback/workers/arq_enqueue.py
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import RecoveryConfig, get_recovery_config, require_admin_token
from ..models import RecoveryStateEnum
from ..schemas import RecoveryStatus, SubscriberOut
from ..services.claim_manager import ClaimManager
from ..services.eligibility import EligibilityScanner
from ..services.quiet_hours import QuietHoursClock
from ..services.recovery_analytics import RecoveryAnalytics
from ..services.subscriber_store import SubscriberStore
from ..workers.arq_enqueue import enqueue_recovery_cycle

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/recovery",
    tags=["Recovery"],
    dependencies=[Depends(require_admin_token)],
)


def _quiet_hours(config: RecoveryConfig) -> QuietHoursClock:
    return QuietHoursClock(
        config.timezone,
        start_hour=config.window_start_hour,
        end_hour=config.window_end_hour,
        buffer=timedelta(seconds=config.send_buffer_seconds),
    )


@router.get("/status", response_model=RecoveryStatus)
def recovery_status(
    db: Session = Depends(get_db),
    config: RecoveryConfig = Depends(get_recovery_config),
):
    """Send window and how many subscribers sit in each lifecycle state."""
    store = SubscriberStore(db)
    quiet_hours = _quiet_hours(config)
    counts = RecoveryAnalytics(store).lifecycle_counts()
    scanner = EligibilityScanner(store, quiet_hours, config)
    ready = len(scanner.find_dispatch_ready(limit=config.max_per_run))

    return RecoveryStatus(
        quiet_hours=quiet_hours.describe(),
        pending=counts[RecoveryStateEnum.pending.value],
        scheduled=counts[RecoveryStateEnum.scheduled.value],
        ready=ready,
        claimed=counts[RecoveryStateEnum.claimed.value],
        failed=counts[RecoveryStateEnum.failed.value],
    )


@router.post("/run", status_code=status.HTTP_202_ACCEPTED)
async def run_recovery():
    """Enqueue a recovery cycle on the worker."""
    result = await enqueue_recovery_cycle()
    logger.info(f"[RECOVERY_API] Manual cycle requested: {result['status']}")
    return result


@router.get("/stats")
def recovery_stats(
    since: Optional[datetime] = Query(default=None, description="Subscribers created at or after"),
    until: Optional[datetime] = Query(default=None, description="Subscribers created at or before"),
    db: Session = Depends(get_db),
):
    """Conversion breakdown by message, with revenue and rates."""
    return RecoveryAnalytics(SubscriberStore(db)).conversion_breakdown(since=since, until=until)


@router.post("/subscribers/{subscriber_id}/release", response_model=SubscriberOut)
def release_failed_subscriber(
    subscriber_id: UUID,
    db: Session = Depends(get_db),
):
    """Allow a subscriber whose recovery send failed to be sent again."""
    store = SubscriberStore(db)
    subscriber = store.get(subscriber_id)
    if subscriber is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscriber not found")

    released = ClaimManager(store).release_failed(subscriber_id)
    if released is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Subscriber is {subscriber.recovery_state.value}, only failed subscribers can be released",
        )

    logger.info(f"[RECOVERY_API] Released {subscriber_id} for resend")
    return released
