"""Tests for page reconciliation (products, variations, orders)."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from app.models import Order, OrderStatusEnum, Product, ProductVariation, StockStatusEnum
from app.services import reconciliation as rec


def _products(db, store):
    return {p.wc_product_id: p for p in db.query(Product).filter(Product.store_id == store.id).all()}


def test_first_sync_inserts_products_with_derived_stock_status(test_db_session, store, remote_product):
    page = [
        remote_product(101, "Widget", price="10", stock=5),
        remote_product(102, "Gadget", price="20", stock=0),
    ]

    result = rec.reconcile_products_page(test_db_session, store, page)

    assert (result.inserted, result.updated, result.unchanged, result.failed) == (2, 0, 0, 0)
    products = _products(test_db_session, store)
    assert set(products) == {101, 102}
    assert products[101].stock_status == StockStatusEnum.instock
    assert products[102].stock_status == StockStatusEnum.outofstock
    assert products[101].purchase_price is None
    assert products[102].purchase_price is None
    assert products[101].price == Decimal("10.00")
    assert products[101].synced_at is not None


def test_second_sync_updates_changed_and_keeps_absent(test_db_session, store, remote_product):
    rec.reconcile_products_page(test_db_session, store, [
        remote_product(101, "Widget", price="10", stock=5),
        remote_product(102, "Gadget", price="20", stock=0),
    ])
    gadget_synced_at = _products(test_db_session, store)[102].synced_at

    result = rec.reconcile_products_page(test_db_session, store, [
        remote_product(101, "Widget", price="12", stock=0),
    ])

    assert result.updated == 1
    products = _products(test_db_session, store)
    assert products[101].price == Decimal("12.00")
    assert products[101].stock_quantity == 0
    assert products[101].stock_status == StockStatusEnum.outofstock
    # Absent from the feed: retained and untouched
    assert products[102].name == "Gadget"
    assert products[102].synced_at == gadget_synced_at


def test_same_page_twice_is_a_no_op(test_db_session, store, remote_product):
    page = [remote_product(101, "Widget", stock=5), remote_product(102, "Gadget", stock=1)]
    rec.reconcile_products_page(test_db_session, store, page, now=datetime(2026, 1, 1))

    second = rec.reconcile_products_page(test_db_session, store, page, now=datetime(2026, 1, 2))

    assert (second.inserted, second.updated, second.unchanged) == (0, 0, 2)
    assert second.processed == 2
    for product in _products(test_db_session, store).values():
        assert product.synced_at == datetime(2026, 1, 1)


def test_purchase_price_survives_remote_update(test_db_session, store, remote_product):
    rec.reconcile_products_page(test_db_session, store, [remote_product(101, "Widget", price="10", stock=5)])
    product = _products(test_db_session, store)[101]
    product.purchase_price = Decimal("4.50")
    test_db_session.commit()

    rec.reconcile_products_page(test_db_session, store, [remote_product(101, "Widget v2", price="11", stock=3)])

    product = _products(test_db_session, store)[101]
    assert product.name == "Widget v2"
    assert product.purchase_price == Decimal("4.50")


def test_remote_stock_status_is_ignored(test_db_session, store, remote_product):
    record = remote_product(101, "Widget", stock=0)
    record["stock_status"] = "instock"

    rec.reconcile_products_page(test_db_session, store, [record])

    assert _products(test_db_session, store)[101].stock_status == StockStatusEnum.outofstock


def test_malformed_record_is_skipped_and_page_continues(test_db_session, store, remote_product):
    bad_price = remote_product(103, "Broken", price="not-a-price")
    no_id = {"name": "No id"}

    result = rec.reconcile_products_page(test_db_session, store, [
        remote_product(101, "Widget", stock=1),
        bad_price,
        no_id,
        remote_product(102, "Gadget", stock=2),
    ])

    assert result.inserted == 2
    assert result.failed == 2
    assert len(result.errors) == 2
    assert set(_products(test_db_session, store)) == {101, 102}


def test_duplicate_ids_in_one_page_keep_last_copy(test_db_session, store, remote_product):
    result = rec.reconcile_products_page(test_db_session, store, [
        remote_product(101, "First copy"),
        remote_product(101, "Second copy"),
    ])

    assert result.inserted == 1
    assert _products(test_db_session, store)[101].name == "Second copy"


def test_failed_batch_commit_is_replayed_per_record(test_db_session, store, remote_product, monkeypatch):
    real_commit = test_db_session.commit
    calls = {"n": 0}

    def flaky_commit():
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return real_commit()

    monkeypatch.setattr(test_db_session, "commit", flaky_commit)

    result = rec.reconcile_products_page(test_db_session, store, [
        remote_product(101, "Widget"),
        remote_product(102, "Gadget"),
    ])

    assert result.inserted == 2
    assert result.failed == 0
    assert set(_products(test_db_session, store)) == {101, 102}


def test_products_are_scoped_per_store(test_db_session, store, second_store, remote_product):
    rec.reconcile_products_page(test_db_session, store, [remote_product(101, "Widget")])
    result = rec.reconcile_products_page(test_db_session, second_store, [remote_product(101, "Other widget")])

    assert result.inserted == 1
    assert _products(test_db_session, store)[101].name == "Widget"
    assert _products(test_db_session, second_store)[101].name == "Other widget"


def test_variations_reconcile_under_parent(test_db_session, store, make_product):
    parent = make_product(store, 200, "T-Shirt", product_type="variable")
    records = [
        {"id": 201, "sku": "TS-S", "price": "15", "stock_quantity": 3, "status": "publish",
         "attributes": [{"name": "Size", "option": "S"}, {"name": "Color", "option": "Red"}]},
        {"id": 202, "sku": "TS-M", "price": "15", "stock_quantity": None, "status": "publish",
         "attributes": [{"name": "Size", "option": "M"}]},
    ]

    result = rec.reconcile_variations_page(test_db_session, parent, records)

    assert result.inserted == 2
    variations = {
        v.wc_variation_id: v
        for v in test_db_session.query(ProductVariation).filter(ProductVariation.product_id == parent.id)
    }
    assert variations[201].attributes == {"Size": "S", "Color": "Red"}
    assert variations[201].attribute_string == "S / Red"
    assert variations[201].stock_status == StockStatusEnum.instock
    assert variations[202].stock_quantity == 0
    assert variations[202].stock_status == StockStatusEnum.outofstock


def test_order_status_is_overwritten_from_remote(test_db_session, store, remote_order):
    rec.reconcile_orders_page(test_db_session, store, [remote_order(501, status="processing")])

    result = rec.reconcile_orders_page(test_db_session, store, [remote_order(501, status="completed")])

    assert result.updated == 1
    order = test_db_session.query(Order).filter(Order.store_id == store.id, Order.wc_order_id == 501).one()
    assert order.status == OrderStatusEnum.completed


def test_order_fields_mapping(remote_order):
    record = remote_order(501, created="2026-10-01T10:00:00")
    record.pop("subtotal", None)

    remote_id, fields = rec.order_fields_from_remote(record)

    assert remote_id == 501
    assert fields["subtotal"] == Decimal("16.00")
    assert fields["items_count"] == 3
    assert fields["customer_name"] == "Ada Lovelace"
    assert fields["payment_method"] == "Credit card"
    assert fields["order_date"] == datetime(2026, 10, 1, 10, 0, 0)


def test_order_with_unknown_status_is_skipped(test_db_session, store, remote_order):
    result = rec.reconcile_orders_page(test_db_session, store, [
        remote_order(501, status="checkout-draft"),
        remote_order(502, status="on-hold"),
    ])

    assert result.failed == 1
    assert result.inserted == 1
    order = test_db_session.query(Order).filter(Order.wc_order_id == 502).one()
    assert order.status == OrderStatusEnum.on_hold


def test_derive_stock_status():
    assert rec.derive_stock_status(3) == StockStatusEnum.instock
    assert rec.derive_stock_status(0) == StockStatusEnum.outofstock
    assert rec.derive_stock_status(-2) == StockStatusEnum.outofstock
    assert rec.derive_stock_status(None) == StockStatusEnum.outofstock
