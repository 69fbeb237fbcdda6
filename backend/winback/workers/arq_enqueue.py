"""ARQ job enqueueing utilities.

WHAT:
    Async helper to enqueue recovery cycles to the ARQ worker.

WHY:
    - POST /recovery/run must not block an HTTP request for minutes of
      throttled sends
    - Creates Redis pool on-demand, reuses connection

USAGE:
    from winback.workers.arq_enqueue import enqueue_recovery_cycle

    await enqueue_recovery_cycle()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from arq import create_pool
from arq.connections import ArqRedis

from winback.workers.arq_worker import get_redis_settings

logger = logging.getLogger(__name__)

# Global pool reference
_arq_pool: Optional[ArqRedis] = None

# One manual cycle at a time; arq drops a job whose id is already queued
MANUAL_CYCLE_JOB_ID = "recovery-cycle-manual"


async def get_arq_pool() -> ArqRedis:
    """Get or create ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
        logger.info("[ARQ-ENQUEUE] Redis pool created successfully")
    return _arq_pool


async def reset_arq_pool() -> None:
    """Reset the ARQ pool (useful for testing or reconnection)."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
        logger.info("[ARQ-ENQUEUE] Redis pool reset")


async def enqueue_recovery_cycle() -> Dict[str, Any]:
    """Enqueue one recovery cycle.

    Returns:
        Dict with job_id and status
    """
    pool = await get_arq_pool()

    job = await pool.enqueue_job(
        "process_recovery_cycle",
        _job_id=MANUAL_CYCLE_JOB_ID,
        _queue_name="arq:queue",
    )

    if job:
        logger.info("[ARQ] Enqueued recovery cycle %s", job.job_id)
        return {"job_id": job.job_id, "status": "enqueued"}
    else:
        logger.warning("[ARQ] Recovery cycle already queued")
        return {"job_id": MANUAL_CYCLE_JOB_ID, "status": "skipped_or_duplicate"}
