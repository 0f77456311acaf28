"""Reconciliation engine for WooCommerce products, variations and orders.

WHAT:
    Merges one page of freshly fetched remote records into local storage:
    - Loads existing rows for the page in ONE query by compound key
      (store + remote ID, or parent product + remote variation ID)
    - Inserts missing rows, updates exactly the changed remote-owned fields,
      skips rows whose remote-owned fields are unchanged
    - Commits the page as one batch

WHY:
    The orchestrator streams pages through this module so polling clients see
    progress per page and a failure mid-sync keeps every page already written.

POLICIES:
    - Local-only fields (purchase_price) are NULL on insert and never touched
      on update. Identity fields (id, created_at) are never touched.
    - stock_status is derived from stock_quantity (> 0 -> instock), the
      remote stock_status field is ignored.
    - Rows missing from the remote feed are retained, never deleted.
    - Order status is overwritten from remote on every sync.
    - A malformed record or a record whose write fails raises
      ReconciliationError internally; it is logged with its remote ID and
      skipped while the rest of the page is written.
    - Unchanged rows produce no write (synced_at is not bumped), so running
      the same page twice is a no-op the second time.

REFERENCES:
    - app/services/store_sync_service.py (caller)
    - app/models.py (Product, ProductVariation, Order)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import (
    Order,
    OrderStatusEnum,
    Product,
    ProductTypeEnum,
    ProductVariation,
    StockStatusEnum,
    Store,
    utcnow,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

# Fields owned by the storefront. Anything not listed here is local.
PRODUCT_REMOTE_FIELDS = (
    "sku", "name", "product_type", "image_url", "price",
    "stock_quantity", "stock_status", "manage_stock", "is_active",
)
VARIATION_REMOTE_FIELDS = (
    "sku", "price", "stock_quantity", "stock_status", "manage_stock",
    "attributes", "attribute_string", "is_active",
)
ORDER_REMOTE_FIELDS = (
    "order_number", "status", "subtotal", "total_tax", "shipping_total",
    "discount_total", "total", "currency", "customer_name", "customer_email",
    "payment_method", "items_count", "order_date",
)


class ReconciliationError(Exception):
    """One remote record could not be reconciled (malformed or write failed)."""

    def __init__(self, message: str, remote_id: Optional[Any] = None):
        super().__init__(message)
        self.remote_id = remote_id


@dataclass
class PageResult:
    """Outcome of reconciling one page."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    rows: Dict[int, Any] = field(default_factory=dict)  # remote id -> local row

    @property
    def processed(self) -> int:
        """Records that ended up reconciled (written or already current)."""
        return self.inserted + self.updated + self.unchanged

    def record_failure(self, error: ReconciliationError) -> None:
        self.failed += 1
        self.errors.append(f"{error.remote_id}: {error}")


# =============================================================================
# FIELD DERIVATION
# =============================================================================

def derive_stock_status(quantity: Optional[int]) -> StockStatusEnum:
    """instock iff quantity > 0, whatever the storefront reports."""
    if quantity is not None and quantity > 0:
        return StockStatusEnum.instock
    return StockStatusEnum.outofstock


def _remote_id(record: Dict[str, Any]) -> int:
    raw = record.get("id") if isinstance(record, dict) else None
    try:
        remote_id = int(raw)
    except (TypeError, ValueError):
        raise ReconciliationError(f"record has no usable id ({raw!r})", remote_id=raw)
    if remote_id <= 0:
        raise ReconciliationError("record id must be positive", remote_id=raw)
    return remote_id


def _parse_money(value: Any, remote_id: int, name: str, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ReconciliationError(f"{name} is not a number ({value!r})", remote_id=remote_id)
    if not amount.is_finite():
        raise ReconciliationError(f"{name} is not finite ({value!r})", remote_id=remote_id)
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _parse_quantity(value: Any, remote_id: int) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError):
        raise ReconciliationError(f"stock_quantity is not a number ({value!r})", remote_id=remote_id)


def _parse_datetime(record: Dict[str, Any], remote_id: int) -> datetime:
    """Order creation time as naive UTC, preferring the *_gmt field."""
    gmt = record.get("date_created_gmt")
    local = record.get("date_created")
    raw = gmt or local
    if not raw:
        raise ReconciliationError("order has no creation date", remote_id=remote_id)
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        raise ReconciliationError(f"unparseable order date ({raw!r})", remote_id=remote_id)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _attributes(record: Dict[str, Any]) -> Tuple[Optional[Dict[str, str]], Optional[str]]:
    attributes = record.get("attributes") or []
    if not attributes:
        return None, None
    mapping: Dict[str, str] = {}
    options: List[str] = []
    for attribute in attributes:
        if not isinstance(attribute, dict):
            continue
        option = str(attribute.get("option") or "")
        mapping[str(attribute.get("name") or "")] = option
        if option:
            options.append(option)
    return mapping, " / ".join(options) or None


def product_fields_from_remote(record: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Map a WooCommerce product payload to remote-owned Product fields."""
    remote_id = _remote_id(record)
    name = str(record.get("name") or "").strip()
    if not name:
        raise ReconciliationError("product has no name", remote_id=remote_id)

    quantity = _parse_quantity(record.get("stock_quantity"), remote_id)
    images = record.get("images") or []

    return remote_id, {
        "sku": record.get("sku") or None,
        "name": name,
        "product_type": record.get("type") or ProductTypeEnum.simple.value,
        "image_url": images[0].get("src") if images and isinstance(images[0], dict) else None,
        "price": _parse_money(record.get("price"), remote_id, "price"),
        "stock_quantity": quantity,
        "stock_status": derive_stock_status(quantity),
        "manage_stock": bool(record.get("manage_stock")),
        "is_active": record.get("status") == "publish",
    }


def variation_fields_from_remote(record: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Map a WooCommerce variation payload to remote-owned ProductVariation fields."""
    remote_id = _remote_id(record)
    quantity = _parse_quantity(record.get("stock_quantity"), remote_id)
    attributes, attribute_string = _attributes(record)

    return remote_id, {
        "sku": record.get("sku") or None,
        "price": _parse_money(record.get("price"), remote_id, "price"),
        "stock_quantity": quantity,
        "stock_status": derive_stock_status(quantity),
        # "parent" means stock is managed at product level
        "manage_stock": bool(record.get("manage_stock")),
        "attributes": attributes,
        "attribute_string": attribute_string,
        "is_active": record.get("status", "publish") == "publish",
    }


def order_fields_from_remote(record: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Map a WooCommerce order payload to remote-owned Order fields."""
    remote_id = _remote_id(record)

    raw_status = record.get("status")
    try:
        status = OrderStatusEnum(raw_status)
    except ValueError:
        raise ReconciliationError(f"unsupported order status {raw_status!r}", remote_id=remote_id)

    line_items = record.get("line_items") or []
    subtotal = _parse_money(record.get("subtotal"), remote_id, "subtotal")
    if subtotal is None:
        subtotal = sum(
            (_parse_money(item.get("subtotal"), remote_id, "line item subtotal", Decimal("0")) for item in line_items),
            Decimal("0"),
        ).quantize(CENTS)

    billing = record.get("billing") or {}
    customer_name = " ".join(
        part for part in (billing.get("first_name"), billing.get("last_name")) if part
    ).strip()

    return remote_id, {
        "order_number": str(record.get("number") or remote_id),
        "status": status,
        "subtotal": subtotal,
        "total_tax": _parse_money(record.get("total_tax"), remote_id, "total_tax", Decimal("0.00")),
        "shipping_total": _parse_money(record.get("shipping_total"), remote_id, "shipping_total", Decimal("0.00")),
        "discount_total": _parse_money(record.get("discount_total"), remote_id, "discount_total", Decimal("0.00")),
        "total": _parse_money(record.get("total"), remote_id, "total", Decimal("0.00")),
        "currency": record.get("currency") or None,
        "customer_name": customer_name or None,
        "customer_email": billing.get("email") or None,
        "payment_method": record.get("payment_method_title") or record.get("payment_method") or None,
        "items_count": sum(_parse_quantity(item.get("quantity"), remote_id) for item in line_items),
        "order_date": _parse_datetime(record, remote_id),
    }


def diff_fields(row: Any, incoming: Dict[str, Any], owned_fields: Tuple[str, ...]) -> Dict[str, Any]:
    """Return the remote-owned fields whose incoming value differs from the row."""
    changes: Dict[str, Any] = {}
    for name in owned_fields:
        if name not in incoming:
            continue
        if getattr(row, name) != incoming[name]:
            changes[name] = incoming[name]
    return changes


# =============================================================================
# PAGE RECONCILIATION
# =============================================================================

@dataclass
class _EntitySpec:
    """How to reconcile one entity type within one scope (store or parent)."""

    label: str
    model: Any
    key_column: str
    scope: Dict[str, Any]
    owned_fields: Tuple[str, ...]
    to_fields: Callable[[Dict[str, Any]], Tuple[int, Dict[str, Any]]]


def _parse_page(spec: _EntitySpec, records: List[Dict[str, Any]], result: PageResult) -> Dict[int, Dict[str, Any]]:
    parsed: Dict[int, Dict[str, Any]] = {}
    for record in records:
        try:
            remote_id, fields = spec.to_fields(record)
        except ReconciliationError as e:
            logger.warning("[RECONCILE] Skipping malformed %s %s: %s", spec.label, e.remote_id, e)
            result.record_failure(e)
            continue
        # Duplicate IDs within a page: the later copy wins
        parsed[remote_id] = fields
    return parsed


def _load_existing(db: Session, spec: _EntitySpec, remote_ids: List[int]) -> Dict[int, Any]:
    if not remote_ids:
        return {}
    key = getattr(spec.model, spec.key_column)
    query = db.query(spec.model).filter(key.in_(remote_ids))
    for column, value in spec.scope.items():
        query = query.filter(getattr(spec.model, column) == value)
    return {getattr(row, spec.key_column): row for row in query.all()}


def _apply(db: Session, spec: _EntitySpec, remote_id: int, fields: Dict[str, Any],
           existing: Optional[Any], now: datetime, result: PageResult) -> None:
    if existing is None:
        row = spec.model(**spec.scope, **{spec.key_column: remote_id}, **fields, synced_at=now)
        db.add(row)
        result.inserted += 1
        result.rows[remote_id] = row
        return

    changes = diff_fields(existing, fields, spec.owned_fields)
    result.rows[remote_id] = existing
    if not changes:
        result.unchanged += 1
        return

    for name, value in changes.items():
        setattr(existing, name, value)
    existing.synced_at = now
    result.updated += 1
    logger.debug("[RECONCILE] %s %s changed: %s", spec.label, remote_id, sorted(changes))


def _reconcile_page(db: Session, spec: _EntitySpec, records: List[Dict[str, Any]],
                    now: Optional[datetime] = None) -> PageResult:
    now = now or utcnow()
    result = PageResult()
    parsed = _parse_page(spec, records, result)
    existing = _load_existing(db, spec, list(parsed))

    for remote_id, fields in parsed.items():
        _apply(db, spec, remote_id, fields, existing.get(remote_id), now, result)

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "[RECONCILE] Batch write of %d %s record(s) failed, retrying one by one: %s",
            len(parsed), spec.label, e,
        )
        return _reconcile_individually(db, spec, parsed, now, result)

    logger.info(
        "[RECONCILE] %s page: %d inserted, %d updated, %d unchanged, %d failed",
        spec.label, result.inserted, result.updated, result.unchanged, result.failed,
    )
    return result


def _reconcile_individually(db: Session, spec: _EntitySpec, parsed: Dict[int, Dict[str, Any]],
                            now: datetime, batch_result: PageResult) -> PageResult:
    """Replay a page record by record so only the offending records are skipped."""
    result = PageResult(failed=batch_result.failed, errors=list(batch_result.errors))

    for remote_id, fields in parsed.items():
        attempt = PageResult()
        try:
            existing = _load_existing(db, spec, [remote_id]).get(remote_id)
            _apply(db, spec, remote_id, fields, existing, now, attempt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            error = ReconciliationError(f"write failed: {e.__class__.__name__}", remote_id=remote_id)
            logger.error("[RECONCILE] Failed to write %s %s: %s", spec.label, remote_id, e)
            result.record_failure(error)
            continue

        result.inserted += attempt.inserted
        result.updated += attempt.updated
        result.unchanged += attempt.unchanged
        result.rows.update(attempt.rows)

    logger.info(
        "[RECONCILE] %s page (per-record): %d inserted, %d updated, %d unchanged, %d failed",
        spec.label, result.inserted, result.updated, result.unchanged, result.failed,
    )
    return result


def reconcile_products_page(db: Session, store: Store, records: List[Dict[str, Any]],
                            now: Optional[datetime] = None) -> PageResult:
    """Reconcile one page of remote products for a store."""
    spec = _EntitySpec(
        label="product",
        model=Product,
        key_column="wc_product_id",
        scope={"store_id": store.id},
        owned_fields=PRODUCT_REMOTE_FIELDS,
        to_fields=product_fields_from_remote,
    )
    return _reconcile_page(db, spec, records, now)


def reconcile_variations_page(db: Session, product: Product, records: List[Dict[str, Any]],
                              now: Optional[datetime] = None) -> PageResult:
    """Reconcile one page of remote variations for an already reconciled parent.

    Raises:
        ReconciliationError: If the parent has not been persisted yet.
    """
    if product.id is None:
        raise ReconciliationError("parent product is not persisted", remote_id=product.wc_product_id)

    spec = _EntitySpec(
        label="variation",
        model=ProductVariation,
        key_column="wc_variation_id",
        scope={"product_id": product.id},
        owned_fields=VARIATION_REMOTE_FIELDS,
        to_fields=variation_fields_from_remote,
    )
    return _reconcile_page(db, spec, records, now)


def reconcile_orders_page(db: Session, store: Store, records: List[Dict[str, Any]],
                          now: Optional[datetime] = None) -> PageResult:
    """Reconcile one page of remote orders; status always follows the remote."""
    spec = _EntitySpec(
        label="order",
        model=Order,
        key_column="wc_order_id",
        scope={"store_id": store.id},
        owned_fields=ORDER_REMOTE_FIELDS,
        to_fields=order_fields_from_remote,
    )
    return _reconcile_page(db, spec, records, now)
