"""Tests for the persisted sync state (entry guard, progress, terminal states)."""

from datetime import timedelta

from app.models import Store, StoreStatusEnum, SyncStepEnum, utcnow
from app.services import sync_state


def _reload(db, store_id):
    db.expire_all()
    return db.query(Store).filter(Store.id == store_id).one()


def test_only_first_claim_wins(test_db_session, store, session_factory):
    other_session = session_factory()
    try:
        assert sync_state.try_begin_sync(test_db_session, store.id) is True
        assert sync_state.try_begin_sync(other_session, store.id) is False
    finally:
        other_session.close()

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is True
    assert store.sync_step == SyncStepEnum.connection


def test_claim_resets_counts_and_previous_error(test_db_session, store):
    store.sync_products_count = 40
    store.sync_error = "old failure"
    test_db_session.commit()

    assert sync_state.try_begin_sync(test_db_session, store.id)

    store = _reload(test_db_session, store.id)
    assert store.sync_products_count == 0
    assert store.sync_error is None


def test_claim_unknown_store_is_refused(test_db_session):
    from uuid import uuid4

    assert sync_state.try_begin_sync(test_db_session, uuid4()) is False


def test_progress_accumulates(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)

    sync_state.add_progress(test_db_session, store.id, products=100)
    sync_state.add_progress(test_db_session, store.id, products=20, variations=7)
    sync_state.add_progress(test_db_session, store.id, orders=3)

    store = _reload(test_db_session, store.id)
    assert (store.sync_products_count, store.sync_variations_count, store.sync_orders_count) == (120, 7, 3)


def test_mark_succeeded_releases_store(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)
    sync_state.add_progress(test_db_session, store.id, products=2)

    sync_state.mark_succeeded(test_db_session, store.id)

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert store.sync_step is None
    assert store.sync_error is None
    assert store.last_sync_at is not None
    # Counts stay visible after the run
    assert store.sync_products_count == 2


def test_mark_failed_freezes_step(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)

    sync_state.mark_failed(test_db_session, store.id, SyncStepEnum.orders, "Connection timed out.")

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert store.sync_step == SyncStepEnum.orders
    assert store.sync_error == "Connection timed out."
    assert store.last_sync_at is None
    assert store.status == StoreStatusEnum.active


def test_mark_failed_with_rejected_credentials_sets_error_status(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)

    sync_state.mark_failed(
        test_db_session, store.id, SyncStepEnum.connection, "Invalid API credentials.", credentials_rejected=True
    )

    assert _reload(test_db_session, store.id).status == StoreStatusEnum.error


def test_get_sync_status_snapshot(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)
    sync_state.set_step(test_db_session, store.id, SyncStepEnum.products)
    sync_state.add_progress(test_db_session, store.id, products=5)

    status = sync_state.get_sync_status(test_db_session, store.id, poll_interval_seconds=3)

    assert status.is_syncing is True
    assert status.sync_step == SyncStepEnum.products
    assert status.sync_products_count == 5
    assert status.poll_interval_seconds == 3


def test_reset_stuck_syncs(test_db_session, store, second_store):
    sync_state.try_begin_sync(test_db_session, store.id)

    assert sync_state.reset_stuck_syncs(test_db_session) == 1

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert "interrupted" in store.sync_error
    assert _reload(test_db_session, second_store.id).sync_error is None


def test_claim_records_start_time_and_terminal_states_clear_it(test_db_session, store):
    sync_state.try_begin_sync(test_db_session, store.id)
    assert _reload(test_db_session, store.id).sync_started_at is not None

    sync_state.mark_succeeded(test_db_session, store.id)
    assert _reload(test_db_session, store.id).sync_started_at is None


def test_reset_with_age_limit_keeps_a_running_sync_claimed(test_db_session, store):
    assert sync_state.try_begin_sync(test_db_session, store.id) is True

    released = sync_state.reset_stuck_syncs(test_db_session, older_than=sync_state.SYNC_CLAIM_TIMEOUT)

    assert released == 0
    assert _reload(test_db_session, store.id).is_syncing is True
    assert sync_state.try_begin_sync(test_db_session, store.id) is False


def test_reset_with_age_limit_releases_expired_claims(test_db_session, store, second_store):
    sync_state.try_begin_sync(test_db_session, store.id)
    sync_state.try_begin_sync(test_db_session, second_store.id)
    expired = _reload(test_db_session, store.id)
    expired.sync_started_at = utcnow() - sync_state.SYNC_CLAIM_TIMEOUT - timedelta(minutes=5)
    test_db_session.commit()

    released = sync_state.reset_stuck_syncs(test_db_session, older_than=sync_state.SYNC_CLAIM_TIMEOUT)

    assert released == 1
    assert _reload(test_db_session, store.id).is_syncing is False
    assert _reload(test_db_session, second_store.id).is_syncing is True
    assert sync_state.try_begin_sync(test_db_session, store.id) is True
