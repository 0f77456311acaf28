"""Sync state tracker: the Store row's sync fields as a poll-friendly record.

WHAT:
    - try_begin_sync(): atomic entry guard (conditional UPDATE on is_syncing)
    - set_step() / add_progress(): live progress written by the running sync
    - mark_succeeded() / mark_failed(): terminal transitions
    - get_sync_status(): read model consumed by pollers
    - reset_stuck_syncs(): startup cleanup after a crashed process; can be
      limited to claims older than a cutoff so a process never releases a
      sync that another live process still owns

WHY:
    A read-then-write check of is_syncing races when two sync requests for the
    same store arrive together. The guard is a single
    `UPDATE stores SET is_syncing = true WHERE id = :id AND is_syncing = false`
    and the caller owns the sync only if exactly one row changed.

    While is_syncing is true the running sync is the sole writer of these
    fields. Pollers only read and may see a snapshot up to one poll interval old.

REFERENCES:
    - app/services/store_sync_service.py (sole writer during a sync)
    - app/routers/stores.py (GET /stores/{id}/sync-status)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from app.models import Store, StoreStatusEnum, SyncStepEnum, utcnow

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 2

# No sync may hold a claim longer than this (matches the arq job_timeout)
SYNC_CLAIM_TIMEOUT = timedelta(hours=1)


@dataclass
class SyncStatus:
    """Snapshot of a store's sync fields."""

    store_id: UUID
    status: StoreStatusEnum
    is_syncing: bool
    sync_step: Optional[SyncStepEnum]
    sync_products_count: int
    sync_variations_count: int
    sync_orders_count: int
    last_sync_at: Optional[datetime]
    sync_error: Optional[str]
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS


def _update_store(db: Session, store_id: UUID, **values) -> int:
    result = db.execute(
        update(Store)
        .where(Store.id == store_id)
        .values(updated_at=utcnow(), **values)
    )
    db.commit()
    return result.rowcount


def try_begin_sync(db: Session, store_id: UUID) -> bool:
    """Claim the store for a new sync.

    Resets the running counts and clears the previous error in the same
    statement that flips is_syncing.

    Returns:
        True if this caller now owns the sync, False if one is already running.
    """
    result = db.execute(
        update(Store)
        .where(Store.id == store_id, Store.is_syncing.is_(False))
        .values(
            is_syncing=True,
            sync_started_at=utcnow(),
            sync_step=SyncStepEnum.connection,
            sync_error=None,
            sync_products_count=0,
            sync_variations_count=0,
            sync_orders_count=0,
            updated_at=utcnow(),
        )
    )
    db.commit()
    claimed = result.rowcount == 1
    if claimed:
        logger.info("[SYNC_STATE] Store %s claimed for sync", store_id)
    else:
        logger.info("[SYNC_STATE] Store %s already syncing (or missing), not claimed", store_id)
    return claimed


def set_step(db: Session, store_id: UUID, step: SyncStepEnum) -> None:
    _update_store(db, store_id, sync_step=step)
    logger.info("[SYNC_STATE] Store %s -> step %s", store_id, step.value)


def add_progress(
    db: Session,
    store_id: UUID,
    products: int = 0,
    variations: int = 0,
    orders: int = 0,
) -> None:
    """Increment running counts in SQL so pollers always see a monotonic value."""
    if not (products or variations or orders):
        return
    _update_store(
        db,
        store_id,
        sync_products_count=Store.sync_products_count + products,
        sync_variations_count=Store.sync_variations_count + variations,
        sync_orders_count=Store.sync_orders_count + orders,
    )


def mark_succeeded(db: Session, store_id: UUID, finished_at: Optional[datetime] = None) -> None:
    """Terminal success: counts are kept for display until the next sync starts."""
    _update_store(
        db,
        store_id,
        is_syncing=False,
        sync_started_at=None,
        sync_step=None,
        sync_error=None,
        last_sync_at=finished_at or utcnow(),
        status=StoreStatusEnum.active,
    )
    logger.info("[SYNC_STATE] Store %s sync succeeded", store_id)


def mark_failed(
    db: Session,
    store_id: UUID,
    failed_step: Optional[SyncStepEnum],
    message: str,
    credentials_rejected: bool = False,
) -> None:
    """Terminal failure: sync_step stays frozen at the step that failed.

    Args:
        credentials_rejected: Also move the store to ERROR status; it stays
            there until the credentials are fixed and a connection test passes.
    """
    values = dict(is_syncing=False, sync_started_at=None, sync_step=failed_step, sync_error=message)
    if credentials_rejected:
        values["status"] = StoreStatusEnum.error
    _update_store(db, store_id, **values)
    logger.warning(
        "[SYNC_STATE] Store %s sync failed at %s: %s",
        store_id, failed_step.value if failed_step else None, message,
    )


def get_sync_status(
    db: Session,
    store_id: UUID,
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Optional[SyncStatus]:
    """Read the polling snapshot. Returns None for an unknown store."""
    store = db.query(Store).filter(Store.id == store_id).first()
    if store is None:
        return None
    # Pollers must observe writes committed by the background sync session
    db.refresh(store)
    return SyncStatus(
        store_id=store.id,
        status=store.status,
        is_syncing=store.is_syncing,
        sync_step=store.sync_step,
        sync_products_count=store.sync_products_count,
        sync_variations_count=store.sync_variations_count,
        sync_orders_count=store.sync_orders_count,
        last_sync_at=store.last_sync_at,
        sync_error=store.sync_error,
        poll_interval_seconds=poll_interval_seconds,
    )


def reset_stuck_syncs(db: Session, older_than: Optional[timedelta] = None) -> int:
    """Release stores left with is_syncing=true by a process that died mid-sync.

    Args:
        older_than: Only release claims taken at least this long ago. A
            process that shares the database with other live sync runners
            (the arq worker next to the API) must pass this, otherwise it
            frees stores whose sync is still running elsewhere. None releases
            every claim, which is only safe for the process that owns all
            in-flight syncs.
    """
    conditions = [Store.is_syncing.is_(True)]
    if older_than is not None:
        cutoff = utcnow() - older_than
        # A claim with no timestamp predates sync_started_at; treat it as stale
        conditions.append(or_(Store.sync_started_at.is_(None), Store.sync_started_at <= cutoff))

    result = db.execute(
        update(Store)
        .where(*conditions)
        .values(
            is_syncing=False,
            sync_started_at=None,
            sync_error="Sync was interrupted by a server restart. Start a new sync.",
            updated_at=utcnow(),
        )
    )
    db.commit()
    if result.rowcount:
        logger.warning("[SYNC_STATE] Reset %d store(s) stuck in syncing state", result.rowcount)
    return result.rowcount
