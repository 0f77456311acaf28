"""Tests for the store sync orchestrator.

The storefront is replaced by the FakeWooClient from conftest; the sync runs
against the shared in-memory database through its own sessions.
"""

import asyncio

from app.deps import Settings
from app.models import Order, Product, ProductVariation, Store, StoreStatusEnum, SyncStepEnum
from app.services import store_sync_service as svc
from app.services import sync_state
from app.services.woocommerce_client import RemoteAuthError, RemoteConnectionError


SETTINGS = Settings(ORDER_SYNC_STATUSES="processing,completed", WOO_PAGE_SIZE=100)


def _use_client(monkeypatch, client):
    monkeypatch.setattr(svc, "client_for_store", lambda store: client)


def _reload(db, store_id):
    db.expire_all()
    return db.query(Store).filter(Store.id == store_id).one()


def _run(store, session_factory, test_db_session):
    assert sync_state.try_begin_sync(test_db_session, store.id)
    return asyncio.run(svc.run_store_sync(store.id, session_factory=session_factory, settings=SETTINGS))


def test_full_sync_reconciles_everything(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls, remote_product, remote_order
):
    client = fake_client_cls(
        products=[
            remote_product(101, "Widget", stock=5),
            remote_product(102, "T-Shirt", product_type="variable", stock=0),
        ],
        variations={102: [
            {"id": 1021, "sku": "TS-S", "price": "15", "stock_quantity": 2,
             "attributes": [{"name": "Size", "option": "S"}]},
            {"id": 1022, "sku": "TS-M", "price": "15", "stock_quantity": 0,
             "attributes": [{"name": "Size", "option": "M"}]},
        ]},
        orders=[remote_order(501, status="processing"), remote_order(502, status="completed")],
    )
    _use_client(monkeypatch, client)

    stats = _run(store, session_factory, test_db_session)

    assert stats.success is True
    assert (stats.products, stats.variations, stats.orders) == (2, 2, 2)
    assert stats.failed_records == 0

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert store.sync_step is None
    assert store.sync_error is None
    assert store.last_sync_at is not None
    assert (store.sync_products_count, store.sync_variations_count, store.sync_orders_count) == (2, 2, 2)

    assert test_db_session.query(Product).filter(Product.store_id == store.id).count() == 2
    assert test_db_session.query(ProductVariation).count() == 2
    assert test_db_session.query(Order).filter(Order.store_id == store.id).count() == 2
    # Variations are only requested for variable products
    assert client.calls.count("get_variations") == 1


def test_products_are_paged_until_last_page(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls, remote_product
):
    client = fake_client_cls(
        products=[remote_product(i, f"Product {i}") for i in range(1, 4)],
        page_size=1,
    )
    _use_client(monkeypatch, client)

    stats = _run(store, session_factory, test_db_session)

    assert stats.success
    assert client.calls.count("get_products") == 3
    assert _reload(test_db_session, store.id).sync_products_count == 3


def test_variable_product_repeated_across_pages_fetches_variations_once(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls, remote_product
):
    shirt = remote_product(102, "T-Shirt", product_type="variable")
    client = fake_client_cls(
        products=[shirt, dict(shirt)],
        variations={102: [
            {"id": 1021, "sku": "TS-S", "price": "15", "stock_quantity": 2,
             "attributes": [{"name": "Size", "option": "S"}]},
        ]},
        page_size=1,
    )
    _use_client(monkeypatch, client)

    stats = _run(store, session_factory, test_db_session)

    assert stats.success
    assert client.calls.count("get_products") == 2
    assert client.calls.count("get_variations") == 1
    assert stats.variations == 1
    assert _reload(test_db_session, store.id).sync_variations_count == 1
    assert test_db_session.query(Product).filter(Product.store_id == store.id).count() == 1


def test_failure_at_orders_keeps_products_and_freezes_step(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls, remote_product
):
    client = fake_client_cls(
        products=[remote_product(101, "Widget", stock=5), remote_product(102, "Gadget")],
        fail_on="get_orders",
        error=RemoteConnectionError("Connection timed out. The store may be slow or unreachable."),
    )
    _use_client(monkeypatch, client)

    stats = _run(store, session_factory, test_db_session)

    assert stats.success is False
    assert stats.failed_step == SyncStepEnum.orders.value

    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert store.sync_step == SyncStepEnum.orders
    assert store.sync_error == "Connection timed out. The store may be slow or unreachable."
    assert store.status == StoreStatusEnum.active
    assert store.last_sync_at is None
    # Pages committed before the failure are kept
    assert test_db_session.query(Product).filter(Product.store_id == store.id).count() == 2
    assert store.sync_products_count == 2


def test_rejected_credentials_move_store_to_error(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls
):
    client = fake_client_cls(fail_on="ping", error=RemoteAuthError("Consumer key is invalid.", status_code=401))
    _use_client(monkeypatch, client)

    stats = _run(store, session_factory, test_db_session)

    assert stats.success is False
    store = _reload(test_db_session, store.id)
    assert store.status == StoreStatusEnum.error
    assert store.sync_step == SyncStepEnum.connection
    assert "Invalid API credentials" in store.sync_error
    assert "get_products" not in client.calls


def test_unexpected_error_is_reported_and_captured(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls
):
    captured = []
    monkeypatch.setattr(svc, "capture_exception", lambda e, extra=None: captured.append((e, extra)))
    _use_client(monkeypatch, fake_client_cls(fail_on="get_products", error=RuntimeError("boom")))

    stats = _run(store, session_factory, test_db_session)

    assert stats.success is False
    store = _reload(test_db_session, store.id)
    assert store.sync_error == "Unexpected error during sync: RuntimeError"
    assert store.sync_step == SyncStepEnum.products
    assert len(captured) == 1
    assert captured[0][1]["phase"] == "fetching_products"


def test_malformed_records_do_not_fail_the_sync(
    monkeypatch, test_db_session, session_factory, store, fake_client_cls, remote_product
):
    _use_client(monkeypatch, fake_client_cls(products=[
        remote_product(101, "Widget"),
        {"id": 102, "name": ""},
    ]))

    stats = _run(store, session_factory, test_db_session)

    assert stats.success is True
    assert stats.products == 1
    assert stats.failed_records == 1
    assert len(stats.errors) == 1


def test_start_store_sync_rejects_second_start(
    monkeypatch, test_db_session, session_factory, company, store, fake_client_cls, remote_product
):
    _use_client(monkeypatch, fake_client_cls(products=[remote_product(101, "Widget")]))
    company_id, store_id = company.id, store.id

    async def scenario():
        first = await svc.start_store_sync(test_db_session, company_id, store_id, session_factory=session_factory)
        second = await svc.start_store_sync(test_db_session, company_id, store_id, session_factory=session_factory)
        await asyncio.gather(*svc.running_sync_tasks())
        return first, second

    first, second = asyncio.run(scenario())

    assert (first.success, first.started) == (True, True)
    assert (second.success, second.started) == (False, False)
    assert second.message == "Store is already syncing"

    store = _reload(test_db_session, store_id)
    assert store.is_syncing is False
    assert store.last_sync_at is not None
    assert store.sync_products_count == 1


def test_sync_due_stores_skips_inactive_stores(
    monkeypatch, test_db_session, session_factory, store, second_store, fake_client_cls, remote_product
):
    second_store.status = StoreStatusEnum.inactive
    test_db_session.commit()
    _use_client(monkeypatch, fake_client_cls(products=[remote_product(101, "Widget")]))

    summary = asyncio.run(svc.sync_due_stores(session_factory=session_factory))

    assert summary == {"stores": 1, "succeeded": 1, "failed": 0, "skipped": 0}
    assert _reload(test_db_session, store.id).last_sync_at is not None
    assert _reload(test_db_session, second_store.id).last_sync_at is None


def test_missing_store_returns_error_stats(session_factory):
    from uuid import uuid4

    stats = asyncio.run(svc.run_store_sync(uuid4(), session_factory=session_factory, settings=SETTINGS))

    assert stats.success is False
    assert stats.error == "Store not found"


def test_start_in_worker_mode_claims_and_enqueues(monkeypatch, test_db_session, company, store):
    queued = []

    async def fake_enqueue(store_id, claimed=False):
        queued.append((store_id, claimed))
        return {"job_id": "job-1", "status": "enqueued"}

    monkeypatch.setattr(svc.arq_enqueue, "enqueue_store_sync", fake_enqueue)
    settings = Settings(SYNC_IN_WORKER=True)

    first = asyncio.run(svc.start_store_sync(test_db_session, company.id, store.id, settings=settings))
    second = asyncio.run(svc.start_store_sync(test_db_session, company.id, store.id, settings=settings))

    assert (first.success, first.started) == (True, True)
    assert (second.success, second.started) == (False, False)
    assert queued == [(store.id, True)]
    assert _reload(test_db_session, store.id).is_syncing is True


def test_start_in_worker_mode_releases_claim_when_redis_is_down(monkeypatch, test_db_session, company, store):
    from redis.exceptions import ConnectionError as RedisConnectionError

    async def broken_enqueue(store_id, claimed=False):
        raise RedisConnectionError("Connection refused")

    monkeypatch.setattr(svc.arq_enqueue, "enqueue_store_sync", broken_enqueue)

    result = asyncio.run(
        svc.start_store_sync(test_db_session, company.id, store.id, settings=Settings(SYNC_IN_WORKER=True))
    )

    assert (result.success, result.started) == (False, False)
    store = _reload(test_db_session, store.id)
    assert store.is_syncing is False
    assert "queue" in store.sync_error
