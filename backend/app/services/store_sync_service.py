"""Store sync orchestrator.

WHAT:
    Runs one full sync for one store in strict step order:
    connection check -> products -> variations -> orders -> saving.
    Each fetch step pages through the WooCommerce API, hands every page to the
    reconciliation engine and bumps the step's running count after the page
    is committed.

WHY:
    The HTTP trigger must return immediately, so the sync runs as a background
    asyncio task and reports progress only through the Store row (polled by
    the dashboard). A store can have at most one sync in flight; the entry
    guard is the conditional UPDATE in app/services/sync_state.py.

FAILURE POLICY:
    - Any failure aborts the remaining steps of the run.
    - Pages already reconciled are kept (reconciliation is idempotent, so the
      next sync completes the rest).
    - sync_error gets a human-readable reason, sync_step stays at the step that
      failed, and rejected credentials also move the store to ERROR.
    - Nothing is retried automatically; the user starts a new sync.

REFERENCES:
    - app/services/sync_state_machine.py (step order and transitions)
    - app/services/reconciliation.py (per-page merge)
    - app/workers/arq_worker.py (hourly scheduled syncs)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.deps import Settings, get_settings
from app.models import Product, ProductTypeEnum, Store, StoreStatusEnum, SyncStepEnum, utcnow
from app.services import sync_state
from app.services.reconciliation import (
    PageResult,
    reconcile_orders_page,
    reconcile_products_page,
    reconcile_variations_page,
)
from app.services.store_service import StoreCredentialsError, client_for_store, get_store
from app.services.sync_state_machine import SyncPhase, SyncRun
from app.services.woocommerce_client import (
    RemoteAuthError,
    RemoteStoreError,
    WooCommerceClient,
    describe_remote_error,
)
from app.telemetry import capture_exception
from app.workers import arq_enqueue

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 50

# Strong references to running sync tasks (asyncio only keeps weak ones)
_running_tasks: Set[asyncio.Task] = set()


@dataclass
class SyncStartResult:
    """Response of the sync trigger."""

    success: bool
    message: str
    started: bool


@dataclass
class StoreSyncStats:
    """Outcome of one sync run."""

    store_id: Optional[UUID] = None
    success: bool = False
    products: int = 0
    variations: int = 0
    orders: int = 0
    failed_records: int = 0
    failed_step: Optional[str] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def absorb(self, result: PageResult) -> None:
        self.failed_records += result.failed
        room = MAX_REPORTED_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(result.errors[:room])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_id": str(self.store_id) if self.store_id else None,
            "success": self.success,
            "products": self.products,
            "variations": self.variations,
            "orders": self.orders,
            "failed_records": self.failed_records,
            "failed_step": self.failed_step,
            "error": self.error,
        }


@dataclass
class _RunContext:
    db: Session
    store: Store
    settings: Settings
    stats: StoreSyncStats
    client: Optional[WooCommerceClient] = None
    # local id -> remote id of variable products reconciled in this run.
    # A product repeated across pages (pagination drift) appears once.
    variable_parents: Dict[UUID, int] = field(default_factory=dict)


# =============================================================================
# STEPS
# =============================================================================

async def _connect(ctx: _RunContext) -> None:
    ctx.client = client_for_store(ctx.store)
    await ctx.client.ping()
    logger.info("[STORE_SYNC] Store %s reachable", ctx.store.id)


async def _fetch_products(ctx: _RunContext) -> None:
    page_number = 1
    while True:
        page = await ctx.client.get_products(page=page_number, per_page=ctx.settings.WOO_PAGE_SIZE)
        result = reconcile_products_page(ctx.db, ctx.store, page.records)
        ctx.stats.absorb(result)
        ctx.stats.products += result.processed

        for remote_id, row in result.rows.items():
            if row.product_type == ProductTypeEnum.variable.value:
                ctx.variable_parents[row.id] = remote_id

        sync_state.add_progress(ctx.db, ctx.store.id, products=result.processed)
        logger.info(
            "[STORE_SYNC] Store %s products page %d/%d: %d reconciled",
            ctx.store.id, page.page, page.total_pages, result.processed,
        )
        if not page.records or not page.has_more:
            break
        page_number += 1


async def _fetch_variations(ctx: _RunContext) -> None:
    for product_id, wc_product_id in ctx.variable_parents.items():
        product = ctx.db.get(Product, product_id)
        if product is None:
            continue

        page_number = 1
        while True:
            page = await ctx.client.get_variations(
                wc_product_id, page=page_number, per_page=ctx.settings.WOO_PAGE_SIZE
            )
            result = reconcile_variations_page(ctx.db, product, page.records)
            ctx.stats.absorb(result)
            ctx.stats.variations += result.processed
            sync_state.add_progress(ctx.db, ctx.store.id, variations=result.processed)
            if not page.records or not page.has_more:
                break
            page_number += 1

    logger.info(
        "[STORE_SYNC] Store %s variations done for %d variable product(s)",
        ctx.store.id, len(ctx.variable_parents),
    )


async def _fetch_orders(ctx: _RunContext) -> None:
    after = utcnow() - timedelta(days=ctx.settings.ORDER_SYNC_WINDOW_DAYS)
    for status in ctx.settings.order_sync_statuses:
        page_number = 1
        while True:
            page = await ctx.client.get_orders(
                page=page_number,
                per_page=ctx.settings.WOO_PAGE_SIZE,
                after=after,
                status=status,
            )
            result = reconcile_orders_page(ctx.db, ctx.store, page.records)
            ctx.stats.absorb(result)
            ctx.stats.orders += result.processed
            sync_state.add_progress(ctx.db, ctx.store.id, orders=result.processed)
            if not page.records or not page.has_more:
                break
            page_number += 1

    logger.info("[STORE_SYNC] Store %s orders done (%d reconciled)", ctx.store.id, ctx.stats.orders)


async def _save(ctx: _RunContext) -> None:
    ctx.db.commit()
    ctx.stats.finished_at = utcnow()


_STEP_HANDLERS: Dict[SyncPhase, Callable[[_RunContext], Any]] = {
    SyncPhase.connecting: _connect,
    SyncPhase.fetching_products: _fetch_products,
    SyncPhase.fetching_variations: _fetch_variations,
    SyncPhase.fetching_orders: _fetch_orders,
    SyncPhase.saving: _save,
}


# =============================================================================
# RUN
# =============================================================================

def _fail(ctx: _RunContext, run: SyncRun, message: str, credentials_rejected: bool = False) -> None:
    ctx.db.rollback()
    run.fail()
    ctx.stats.failed_step = run.failed_step.value if run.failed_step else None
    ctx.stats.error = message
    sync_state.mark_failed(
        ctx.db, ctx.stats.store_id, run.failed_step, message, credentials_rejected=credentials_rejected
    )
    run.finish_error()


async def run_store_sync(
    store_id: UUID,
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[Settings] = None,
) -> StoreSyncStats:
    """Drive one claimed store through every sync step.

    The caller must already own the store via sync_state.try_begin_sync().
    Never raises for remote or reconciliation failures; the outcome lands on
    the Store row and in the returned stats.
    """
    session_factory = session_factory or SessionLocal
    settings = settings or get_settings()
    stats = StoreSyncStats(store_id=store_id)

    db = session_factory()
    try:
        store = db.query(Store).filter(Store.id == store_id).first()
        if store is None:
            logger.error("[STORE_SYNC] Store %s vanished before sync started", store_id)
            stats.error = "Store not found"
            return stats

        ctx = _RunContext(db=db, store=store, settings=settings, stats=stats)
        run = SyncRun()
        run.start()
        logger.info("[STORE_SYNC] Starting sync for store %s (%s)", store.id, store.url)

        try:
            while not run.done:
                sync_state.set_step(db, store.id, run.step)
                await _STEP_HANDLERS[run.phase](ctx)
                run.succeed()
        except RemoteStoreError as e:
            logger.warning("[STORE_SYNC] Store %s failed at %s: %s", store_id, run.phase.value, e)
            _fail(ctx, run, describe_remote_error(e), credentials_rejected=isinstance(e, RemoteAuthError))
            return stats
        except StoreCredentialsError as e:
            logger.error("[STORE_SYNC] Store %s credentials unusable: %s", store_id, e)
            _fail(ctx, run, str(e), credentials_rejected=True)
            return stats
        except Exception as e:
            logger.exception("[STORE_SYNC] Unexpected error syncing store %s: %s", store_id, e)
            capture_exception(e, extra={
                "operation": "store_sync",
                "store_id": str(store_id),
                "phase": run.phase.value,
            })
            _fail(ctx, run, f"Unexpected error during sync: {e.__class__.__name__}")
            return stats

        sync_state.mark_succeeded(db, store_id, stats.finished_at)
        stats.success = True
        logger.info(
            "[STORE_SYNC] Store %s synced: %d products, %d variations, %d orders, %d failed records",
            store_id, stats.products, stats.variations, stats.orders, stats.failed_records,
        )
        return stats
    finally:
        db.close()


def _on_task_done(task: asyncio.Task) -> None:
    _running_tasks.discard(task)
    if task.cancelled():
        logger.warning("[STORE_SYNC] Background sync task was cancelled")
        return
    error = task.exception()
    if error is not None:
        logger.error("[STORE_SYNC] Background sync task crashed: %r", error)
        capture_exception(error, extra={"operation": "store_sync_task"})


def running_sync_tasks() -> List[asyncio.Task]:
    return list(_running_tasks)


async def _hand_off_to_worker(db: Session, store_id: UUID) -> SyncStartResult:
    try:
        queued = await arq_enqueue.enqueue_store_sync(store_id, claimed=True)
    except (RedisError, OSError) as e:
        logger.error("[STORE_SYNC] Could not enqueue sync for store %s: %s", store_id, e)
        queued = {"job_id": None, "status": "error"}

    if queued["status"] != "enqueued":
        # Nobody will run the sync; release the claim
        sync_state.mark_failed(db, store_id, SyncStepEnum.connection, "Could not queue the sync job. Try again.")
        return SyncStartResult(success=False, message="Could not queue sync", started=False)

    logger.info("[STORE_SYNC] Sync queued for store %s (job %s)", store_id, queued["job_id"])
    return SyncStartResult(success=True, message="Sync started", started=True)


async def start_store_sync(
    db: Session,
    company_id: UUID,
    store_id: UUID,
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[Settings] = None,
) -> SyncStartResult:
    """Claim the store and launch the sync in the background.

    Returns immediately. A second request while a sync is in flight is
    rejected with started=False (not queued, not merged).

    The sync runs as a task in this process, or as an arq job when
    SYNC_IN_WORKER is set. Either way the claim is taken here, so the answer
    to a concurrent second request is the same.

    Raises:
        StoreNotFoundError: Unknown store for this company.
    """
    store = get_store(db, company_id, store_id)

    if not sync_state.try_begin_sync(db, store.id):
        return SyncStartResult(success=False, message="Store is already syncing", started=False)

    settings = settings or get_settings()
    if settings.SYNC_IN_WORKER:
        return await _hand_off_to_worker(db, store.id)

    task = asyncio.create_task(run_store_sync(store.id, session_factory=session_factory))
    _running_tasks.add(task)
    task.add_done_callback(_on_task_done)

    logger.info("[STORE_SYNC] Sync started in background for store %s", store.id)
    return SyncStartResult(success=True, message="Sync started", started=True)


async def sync_due_stores(session_factory: Optional[Callable[[], Session]] = None) -> Dict[str, Any]:
    """Sync every ACTIVE, idle store one after another (hourly schedule).

    Stores claimed by a manual sync in the meantime are skipped.
    """
    session_factory = session_factory or SessionLocal
    db = session_factory()
    try:
        store_ids = [
            store_id for (store_id,) in db.query(Store.id)
            .filter(Store.status == StoreStatusEnum.active, Store.is_syncing.is_(False))
            .all()
        ]
        logger.info("[SCHEDULER] %d store(s) due for scheduled sync", len(store_ids))

        summary: Dict[str, Any] = {"stores": len(store_ids), "succeeded": 0, "failed": 0, "skipped": 0}
        for store_id in store_ids:
            if not sync_state.try_begin_sync(db, store_id):
                summary["skipped"] += 1
                continue
            stats = await run_store_sync(store_id, session_factory=session_factory)
            summary["succeeded" if stats.success else "failed"] += 1

        logger.info("[SCHEDULER] Scheduled sync finished: %s", summary)
        return summary
    finally:
        db.close()
