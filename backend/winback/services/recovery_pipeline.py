"""
Recovery Pipeline.

WHAT:
    One recovery cycle: quiet-hours gate, scheduling, then
    re-check -> claim -> issue code -> dispatch for every dispatch-ready
    subscriber, in batches, with a fixed delay between sends.

WHY:
    The cron job, the manual trigger endpoint and the tests all run the same
    cycle. Each subscriber's outcome is recorded on its own row as it
    happens, so a crash mid-batch loses at most the subscriber in flight
    (left claimed, later expired to failed by expire_stale_claims).

OUTCOMES:
    sent              transport accepted the message
    transport_failed  transport rejected it; lock kept, state failed
    issuance_failed   code could not be registered; lock released
    claim_lost        another worker, or a conversion, won the row
    not_eligible      re-check failed before claiming
    error             unexpected error before sending; lock released

    Store errors (SQLAlchemyError) are not outcomes: they abort the cycle.

REFERENCES:
    - winback/workers/arq_worker.py (cron + on-demand job)
    - winback/routers/recovery.py (POST /recovery/run)
"""

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..deps import RecoveryConfig, Settings, get_settings
from ..models import CodeNamespaceEnum, Subscriber
from ..schemas import RecoveryCycleResult
from ..telemetry import capture_exception
from .claim_manager import ClaimManager
from .clock import Clock
from .code_issuer import CodeIssuer
from .dispatcher import Dispatcher
from .eligibility import EligibilityScanner
from .errors import IssuanceError
from .quiet_hours import QuietHoursClock
from .shopify_discount_client import ShopifyDiscountClient
from .subscriber_store import SubscriberStore
from .telnyx_client import TelnyxClient

logger = logging.getLogger(__name__)


class RecoveryPipeline:
    """
    Usage:
        with get_sync_session() as db:
            pipeline = RecoveryPipeline.from_settings(db)
            result = await pipeline.run_cycle()
    """

    def __init__(
        self,
        store: SubscriberStore,
        quiet_hours: QuietHoursClock,
        scanner: EligibilityScanner,
        claims: ClaimManager,
        issuer: CodeIssuer,
        dispatcher: Dispatcher,
        config: Optional[RecoveryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.quiet_hours = quiet_hours
        self.scanner = scanner
        self.claims = claims
        self.issuer = issuer
        self.dispatcher = dispatcher
        self.config = config or RecoveryConfig()
        self.sleep = sleep

    @classmethod
    def build(
        cls,
        db: Session,
        discount_client: ShopifyDiscountClient,
        transport: TelnyxClient,
        config: Optional[RecoveryConfig] = None,
        clock: Optional[Clock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "RecoveryPipeline":
        """Wire the pipeline from its collaborators."""
        config = config or RecoveryConfig()
        clock = clock or Clock()
        store = SubscriberStore(db, clock=clock)
        quiet_hours = QuietHoursClock(
            config.timezone,
            start_hour=config.window_start_hour,
            end_hour=config.window_end_hour,
            buffer=timedelta(seconds=config.send_buffer_seconds),
            clock=clock,
        )
        return cls(
            store=store,
            quiet_hours=quiet_hours,
            scanner=EligibilityScanner(store, quiet_hours, config, clock),
            claims=ClaimManager(store, clock),
            issuer=CodeIssuer(store, discount_client, config, clock),
            dispatcher=Dispatcher(store, transport, config, clock),
            config=config,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, db: Session, settings: Optional[Settings] = None) -> "RecoveryPipeline":
        settings = settings or get_settings()
        return cls.build(
            db,
            discount_client=ShopifyDiscountClient.from_settings(settings),
            transport=TelnyxClient.from_settings(settings),
            config=RecoveryConfig.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # Per subscriber
    # ------------------------------------------------------------------

    async def process_subscriber(self, subscriber: Subscriber) -> str:
        """Run one subscriber through re-check, claim, issue and dispatch."""
        if not self.scanner.is_still_eligible(subscriber):
            return "not_eligible"

        claimed = self.claims.try_claim(subscriber.id)
        if claimed is None:
            return "claim_lost"

        try:
            code = await self.issuer.issue_code(claimed.id, CodeNamespaceEnum.recovery)
        except IssuanceError as e:
            logger.warning(f"[RECOVERY] Issuance failed for {claimed.id}: {e.message}")
            capture_exception(e, extra={"subscriber_id": str(claimed.id), "stage": "issue_code"})
            self.claims.unlock(claimed.id, e.message)
            return "issuance_failed"
        except SQLAlchemyError:
            raise
        except Exception as e:
            logger.exception(f"[RECOVERY] Unexpected error issuing code for {claimed.id}")
            capture_exception(e, extra={"subscriber_id": str(claimed.id), "stage": "issue_code"})
            self.claims.unlock(claimed.id, f"{type(e).__name__}: {e}")
            return "error"

        try:
            result = await self.dispatcher.dispatch(claimed, code)
        except SQLAlchemyError:
            raise
        except Exception as e:
            # The provider may have accepted the message, so the lock is kept
            logger.exception(f"[RECOVERY] Unexpected error dispatching to {claimed.id}")
            capture_exception(e, extra={"subscriber_id": str(claimed.id), "stage": "dispatch"})
            self.claims.mark_failed(claimed.id, f"{type(e).__name__}: {e}")
            return "error"

        return "sent" if result.success else "transport_failed"

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> RecoveryCycleResult:
        result = RecoveryCycleResult()

        if not self.quiet_hours.is_sendable_now():
            result.skipped = True
            result.reason = "quiet_hours"
            result.next_window = self.quiet_hours.next_sendable_instant()
            logger.info(f"[RECOVERY] Outside sending hours, next window {result.next_window.isoformat()}")
            return result

        expired = self.claims.expire_stale_claims(timedelta(minutes=self.config.stale_claim_minutes))
        result.expired_claims = len(expired)

        result.scheduled = self.scanner.schedule_eligible(limit=self.config.max_per_run)

        attempted: Set = set()
        first_send = True
        while result.processed < self.config.max_per_run:
            batch_size = min(self.config.batch_size, self.config.max_per_run - result.processed)
            batch = self.scanner.find_dispatch_ready(limit=batch_size, exclude_ids=attempted)
            if not batch:
                break

            for subscriber in batch:
                attempted.add(subscriber.id)
                if not first_send:
                    await self.sleep(self.config.send_delay_seconds)

                outcome = await self.process_subscriber(subscriber)
                result.processed += 1
                if outcome in ("sent", "transport_failed"):
                    first_send = False

                if outcome == "error":
                    result.errors += 1
                else:
                    setattr(result, outcome, getattr(result, outcome) + 1)

                if result.processed >= self.config.max_per_run:
                    break

        logger.info(
            f"[RECOVERY] Cycle complete: {result.sent} sent, {result.transport_failed} transport failures, "
            f"{result.issuance_failed} issuance failures, {result.claim_lost} claims lost, "
            f"{result.not_eligible} not eligible, {result.errors} errors"
        )
        return result
