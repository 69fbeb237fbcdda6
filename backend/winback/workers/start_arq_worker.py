#!/usr/bin/env python3
"""Start ARQ worker for the recovery cycle.

USAGE:
    python -m winback.workers.start_arq_worker

    Or directly:
    arq winback.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    from winback.workers.arq_worker import WorkerSettings

    logger.info("Starting recovery worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
