"""Tests for local stock and purchase price edits."""

import asyncio
from decimal import Decimal

import pytest

from app.models import Product, ProductVariation, StockStatusEnum, StoreStatusEnum
from app.services import inventory_service as svc
from app.services import product_mapping_service
from app.services.woocommerce_client import RemoteAuthError, RemoteConnectionError


@pytest.fixture
def use_client(monkeypatch):
    def _use(client):
        monkeypatch.setattr(svc, "client_for_store", lambda store: client)
        return client
    return _use


def test_stock_edit_is_pushed_then_saved(test_db_session, company, store, make_product, fake_client_cls, use_client):
    product = make_product(store, 101, "Widget", stock=0)
    client = use_client(fake_client_cls())

    result = asyncio.run(svc.update_product_stock(test_db_session, company.id, product.id, 8))
    updated = result.item

    assert client.stock_updates == [(101, 8)]
    assert (result.synced_stores, result.failed_stores) == (0, [])
    assert updated.stock_quantity == 8
    assert updated.stock_status == StockStatusEnum.instock
    assert updated.manage_stock is True


def test_failed_push_leaves_local_stock_unchanged(
    test_db_session, company, store, make_product, fake_client_cls, use_client
):
    product = make_product(store, 101, "Widget", stock=4)
    use_client(fake_client_cls(
        fail_on="update_product_stock",
        error=RemoteConnectionError("Connection refused. Is the store online?"),
    ))

    with pytest.raises(svc.StockPushError) as exc:
        asyncio.run(svc.update_product_stock(test_db_session, company.id, product.id, 0))

    assert "Connection refused" in str(exc.value)
    test_db_session.expire_all()
    assert test_db_session.get(type(product), product.id).stock_quantity == 4


def test_read_only_key_is_reported(test_db_session, company, store, make_product, fake_client_cls, use_client):
    product = make_product(store, 101, "Widget", stock=4)
    use_client(fake_client_cls(
        fail_on="update_product_stock",
        error=RemoteAuthError("Sorry, you cannot edit this resource.", status_code=401),
    ))

    with pytest.raises(svc.StockPushError) as exc:
        asyncio.run(svc.update_product_stock(test_db_session, company.id, product.id, 1))

    assert "Read/Write" in str(exc.value)


def test_variation_stock_edit(test_db_session, company, store, make_product, fake_client_cls, use_client):
    parent = make_product(store, 200, "T-Shirt", product_type="variable")
    variation = ProductVariation(product_id=parent.id, wc_variation_id=201, stock_quantity=3)
    test_db_session.add(variation)
    test_db_session.commit()
    client = use_client(fake_client_cls())

    updated = asyncio.run(svc.update_variation_stock(test_db_session, company.id, variation.id, 0)).item

    assert client.stock_updates == [(200, 201, 0)]
    assert updated.stock_quantity == 0
    assert updated.stock_status == StockStatusEnum.outofstock


def test_negative_quantity_is_rejected(test_db_session, company, store, make_product):
    product = make_product(store, 101, "Widget")

    with pytest.raises(svc.InventoryValidationError):
        asyncio.run(svc.update_product_stock(test_db_session, company.id, product.id, -1))


def test_inactive_store_products_are_not_editable(test_db_session, company, store, make_product):
    product = make_product(store, 101, "Widget")
    store.status = StoreStatusEnum.inactive
    test_db_session.commit()

    with pytest.raises(svc.InventoryNotFoundError):
        svc.update_product_purchase_price(test_db_session, company.id, product.id, Decimal("3.00"))


def test_other_company_cannot_edit(test_db_session, other_company, store, make_product):
    product = make_product(store, 101, "Widget")

    with pytest.raises(svc.InventoryNotFoundError):
        svc.update_product_purchase_price(test_db_session, other_company.id, product.id, Decimal("3.00"))


def test_purchase_price_set_and_cleared(test_db_session, company, store, make_product):
    product = make_product(store, 101, "Widget")

    updated = svc.update_product_purchase_price(test_db_session, company.id, product.id, Decimal("3.25"))
    assert updated.purchase_price == Decimal("3.25")

    cleared = svc.update_product_purchase_price(test_db_session, company.id, product.id, None)
    assert cleared.purchase_price is None

    with pytest.raises(svc.InventoryValidationError):
        svc.update_product_purchase_price(test_db_session, company.id, product.id, Decimal("-1"))


def test_variation_purchase_price(test_db_session, company, store, make_product):
    parent = make_product(store, 200, "T-Shirt", product_type="variable")
    variation = ProductVariation(product_id=parent.id, wc_variation_id=201)
    test_db_session.add(variation)
    test_db_session.commit()

    updated = svc.update_variation_purchase_price(test_db_session, company.id, variation.id, Decimal("7.10"))

    assert updated.purchase_price == Decimal("7.10")


@pytest.fixture
def clients_by_store(monkeypatch, fake_client_cls):
    """One fake storefront per store name."""
    clients = {}

    def _for_store(store):
        return clients.setdefault(store.name, fake_client_cls())

    monkeypatch.setattr(svc, "client_for_store", _for_store)
    return clients


@pytest.fixture
def mapped_mug(test_db_session, company, store, second_store, make_product):
    """Blue Mug in both stores; the Main Shop product is the source."""
    main = make_product(store, 1, "Blue Mug", sku="MUG-01", stock=7)
    outlet = make_product(second_store, 11, "Blue Mug", sku="MUG-01", stock=3)
    product_mapping_service.create_mapping(test_db_session, company.id, "MUG-01", [main.id, outlet.id])
    return main, outlet


def _stock(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).stock_quantity


def test_source_stock_edit_is_pushed_to_mapped_stores(test_db_session, company, mapped_mug, clients_by_store):
    main, outlet = mapped_mug

    result = asyncio.run(svc.update_product_stock(test_db_session, company.id, main.id, 5))

    assert (result.synced_stores, result.failed_stores) == (1, [])
    assert clients_by_store["Main Shop"].stock_updates == [(1, 5)]
    assert clients_by_store["Outlet"].stock_updates == [(11, 5)]
    assert _stock(test_db_session, outlet.id) == 5


def test_non_source_stock_edit_stays_in_its_store(test_db_session, company, mapped_mug, clients_by_store):
    main, outlet = mapped_mug

    result = asyncio.run(svc.update_product_stock(test_db_session, company.id, outlet.id, 2))

    assert result.synced_stores == 0
    assert "Main Shop" not in clients_by_store
    assert _stock(test_db_session, main.id) == 7


def test_mapped_store_failure_does_not_fail_the_edit(
    test_db_session, company, mapped_mug, clients_by_store, fake_client_cls
):
    main, outlet = mapped_mug
    clients_by_store["Outlet"] = fake_client_cls(
        fail_on="update_product_stock",
        error=RemoteConnectionError("Connection refused. Is the store online?"),
    )

    result = asyncio.run(svc.update_product_stock(test_db_session, company.id, main.id, 0))

    assert result.item.stock_quantity == 0
    assert (result.synced_stores, result.failed_stores) == (0, ["Outlet"])
    assert _stock(test_db_session, outlet.id) == 3


def test_inactive_mapped_store_is_skipped(test_db_session, company, second_store, mapped_mug, clients_by_store):
    main, _ = mapped_mug
    second_store.status = StoreStatusEnum.inactive
    test_db_session.commit()

    result = asyncio.run(svc.update_product_stock(test_db_session, company.id, main.id, 4))

    assert (result.synced_stores, result.failed_stores) == (0, [])
    assert "Outlet" not in clients_by_store


def test_source_variation_edit_reaches_matching_variation(
    test_db_session, company, store, second_store, make_product, clients_by_store
):
    main = make_product(store, 200, "T-Shirt", sku="TS", product_type="variable")
    outlet = make_product(second_store, 300, "T-Shirt", sku="TS", product_type="variable")
    source = ProductVariation(product_id=main.id, wc_variation_id=201, sku="TS-M", attribute_string="M", stock_quantity=4)
    by_sku = ProductVariation(product_id=outlet.id, wc_variation_id=301, sku="ts-m", attribute_string="Medium", stock_quantity=1)
    other = ProductVariation(product_id=outlet.id, wc_variation_id=302, sku="TS-L", attribute_string="L", stock_quantity=1)
    test_db_session.add_all([source, by_sku, other])
    test_db_session.commit()
    product_mapping_service.create_mapping(test_db_session, company.id, "TS", [main.id, outlet.id])

    result = asyncio.run(svc.update_variation_stock(test_db_session, company.id, source.id, 9))

    assert result.synced_stores == 1
    assert clients_by_store["Outlet"].stock_updates == [(300, 301, 9)]
    test_db_session.expire_all()
    assert test_db_session.get(ProductVariation, by_sku.id).stock_quantity == 9
    assert test_db_session.get(ProductVariation, other.id).stock_quantity == 1
