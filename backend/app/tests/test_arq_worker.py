"""Tests for the arq job functions (no Redis: jobs are called directly)."""

import asyncio
from datetime import timedelta

import pytest

from app.models import Store, utcnow
from app.services import sync_state
from app.services.store_sync_service import StoreSyncStats
from app.workers import arq_worker


def test_job_skips_store_that_is_already_syncing(monkeypatch, session_factory, test_db_session, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    sync_state.try_begin_sync(test_db_session, store.id)

    async def must_not_run(*args, **kwargs):
        raise AssertionError("sync should not start")

    monkeypatch.setattr(arq_worker.store_sync_service, "run_store_sync", must_not_run)

    result = asyncio.run(arq_worker.process_store_sync_job({}, str(store.id)))

    assert result == {"started": False, "store_id": str(store.id)}


def test_job_claims_and_runs_sync(monkeypatch, session_factory, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    ran = []

    async def fake_run(store_id, session_factory=None, settings=None):
        ran.append(store_id)
        return StoreSyncStats(store_id=store_id, success=True, products=3)

    monkeypatch.setattr(arq_worker.store_sync_service, "run_store_sync", fake_run)

    result = asyncio.run(arq_worker.process_store_sync_job({}, str(store.id)))

    assert ran == [store.id]
    assert result["started"] is True
    assert result["success"] is True
    assert result["products"] == 3


def test_scheduled_sync_can_be_disabled(monkeypatch):
    from app.deps import Settings

    monkeypatch.setattr(arq_worker, "get_settings", lambda: Settings(SCHEDULED_SYNC_ENABLED=False))

    summary = asyncio.run(arq_worker.scheduled_store_sync({}))

    assert summary == {"stores": 0, "succeeded": 0, "failed": 0, "skipped": 0}


def test_startup_keeps_a_sync_running_elsewhere_claimed(monkeypatch, session_factory, test_db_session, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    monkeypatch.setattr(arq_worker, "init_sentry", lambda: False)
    # Claimed by the API process a moment ago
    assert sync_state.try_begin_sync(test_db_session, store.id) is True

    ctx = {}
    asyncio.run(arq_worker.startup(ctx))

    assert ctx["jobs_processed"] == 0
    assert sync_state.try_begin_sync(test_db_session, store.id) is False


def test_startup_releases_claims_older_than_job_timeout(monkeypatch, session_factory, test_db_session, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    monkeypatch.setattr(arq_worker, "init_sentry", lambda: False)
    sync_state.try_begin_sync(test_db_session, store.id)
    store.sync_started_at = utcnow() - timedelta(seconds=arq_worker.WorkerSettings.job_timeout + 60)
    test_db_session.commit()

    asyncio.run(arq_worker.startup({}))

    test_db_session.expire_all()
    assert test_db_session.get(Store, store.id).is_syncing is False


def test_job_enqueued_with_claim_does_not_claim_again(monkeypatch, session_factory, test_db_session, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)
    sync_state.try_begin_sync(test_db_session, store.id)
    ran = []

    async def fake_run(store_id, session_factory=None, settings=None):
        ran.append(store_id)
        return StoreSyncStats(store_id=store_id, success=True)

    monkeypatch.setattr(arq_worker.store_sync_service, "run_store_sync", fake_run)

    result = asyncio.run(arq_worker.process_store_sync_job({}, str(store.id), True))

    assert ran == [store.id]
    assert result["started"] is True


def test_cancelled_job_releases_the_claim(monkeypatch, session_factory, test_db_session, store):
    monkeypatch.setattr(arq_worker, "SessionLocal", session_factory)

    async def cancelled_run(store_id, session_factory=None, settings=None):
        raise asyncio.CancelledError()

    monkeypatch.setattr(arq_worker.store_sync_service, "run_store_sync", cancelled_run)

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(arq_worker.process_store_sync_job({}, str(store.id)))

    test_db_session.expire_all()
    released = test_db_session.get(Store, store.id)
    assert released.is_syncing is False
    assert "cancelled" in released.sync_error
