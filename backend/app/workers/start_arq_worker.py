#!/usr/bin/env python3
"""Start ARQ worker for scheduled store syncs.

USAGE:
    python -m app.workers.start_arq_worker

    Or directly:
    arq app.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from app.workers.arq_worker import WorkerSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
