"""ARQ async worker - scheduled and queued store syncs.

WHAT:
    - Hourly cron that syncs every ACTIVE, idle store one after another
    - A queued job that syncs a single store (enqueued by the API when
      SYNC_IN_WORKER=true, see app/workers/arq_enqueue.py)

WHY:
    - By default the API process runs manual syncs as in-process tasks; the
      worker keeps catalogs fresh when nobody is clicking "Sync"
    - Both paths claim the store through the same entry guard
      (sync_state.try_begin_sync), so a scheduled run never overlaps a manual one

USAGE:
    # Start worker
    arq app.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m app.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - app/services/store_sync_service.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import UUID

from arq import cron

from app.database import SessionLocal
from app.deps import get_settings
from app.services import store_sync_service, sync_state
from app.telemetry import capture_exception, init_sentry
from app.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOBS
# =============================================================================

async def process_store_sync_job(ctx: Dict, store_id: str, claimed: bool = False) -> Dict:
    """Sync one store.

    Args:
        claimed: The enqueuer already holds the store's claim (API trigger).
            Otherwise the job claims the store itself.

    Returns {"started": False} without touching the store when another sync
    already owns it.
    """
    store_uuid = UUID(store_id)
    logger.info(f"[ARQ] Store sync job for {store_id} (claimed={claimed})")

    if not claimed:
        db = SessionLocal()
        try:
            claimed = sync_state.try_begin_sync(db, store_uuid)
        finally:
            db.close()

    if not claimed:
        logger.info(f"[ARQ] Store {store_id} already syncing, job skipped")
        return {"started": False, "store_id": store_id}

    try:
        stats = await store_sync_service.run_store_sync(store_uuid)
    except asyncio.CancelledError:
        # job_timeout or worker shutdown; release the claim for the next run
        logger.warning(f"[ARQ] Store sync job cancelled for {store_id}")
        db = SessionLocal()
        try:
            sync_state.mark_failed(db, store_uuid, None, "Sync job was cancelled (timeout or worker shutdown). Start a new sync.")
        finally:
            db.close()
        raise
    except Exception as e:
        logger.exception(f"[ARQ] Store sync job crashed for {store_id}: {e}")
        capture_exception(e, extra={"operation": "store_sync_job", "store_id": store_id})
        raise

    result = stats.to_dict()
    result["started"] = True
    return result


async def scheduled_store_sync(ctx: Dict) -> Dict:
    """Hourly sync of every ACTIVE store that is not already syncing."""
    if not get_settings().SCHEDULED_SYNC_ENABLED:
        logger.info("[SCHEDULER] Scheduled sync disabled (SCHEDULED_SYNC_ENABLED=false)")
        return {"stores": 0, "succeeded": 0, "failed": 0, "skipped": 0}

    try:
        return await store_sync_service.sync_due_stores()
    except Exception as e:
        logger.exception(f"[SCHEDULER] Scheduled sync crashed: {e}")
        capture_exception(e, extra={"operation": "scheduled_store_sync"})
        raise


# =============================================================================
# LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize resources and log config."""
    import platform

    init_sentry()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Scheduled sync: {'enabled' if get_settings().SCHEDULED_SYNC_ENABLED else 'disabled'} (hourly)")
    logger.info("=" * 60)

    # A worker killed mid-sync leaves stores claimed forever otherwise. Only
    # claims past the job timeout are released: younger ones may belong to a
    # sync the API process or another worker is still running.
    db = SessionLocal()
    try:
        sync_state.reset_stuck_syncs(db, older_than=sync_state.SYNC_CLAIM_TIMEOUT)
    finally:
        db.close()

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - One worker instance runs the hourly cron; stores are synced
      sequentially inside that job
    - retry_jobs=False: a failed sync is reported on the store and the user
      (or the next hourly run) starts a new one
    """

    functions = [
        process_store_sync_job,
        scheduled_store_sync,
    ]

    cron_jobs = [
        cron(scheduled_store_sync, minute=0, run_at_startup=False, unique=True),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    max_jobs = 4
    job_timeout = int(sync_state.SYNC_CLAIM_TIMEOUT.total_seconds())
    keep_result = 3600
    retry_jobs = False
    health_check_interval = 30

    queue_name = QUEUE_NAME
