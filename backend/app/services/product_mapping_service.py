"""Cross-store product mapping.

WHAT:
    Links the same physical product sold in several connected stores under
    one master SKU, and proposes such links from matching SKUs or names.

WHY:
    Summing stock across stores double-counts one physical inventory. Each
    mapping designates exactly one source item whose stock is the real stock;
    the sum across items is still reported but labeled non-authoritative.

INVARIANTS:
    - A product belongs to at most one mapping (unique product_id on items).
      Violations raise MappingConflictError and create nothing.
    - Exactly one item per mapping has is_source = True.
    - A mapping always links at least two products.

SUGGESTION KEYS:
    sku:<lowercased sku>          product has a SKU
    code:<lowercased code>        SKU-like code at the start of the name ("SZ4590 Blue Mug")
    name:<normalized name>        fallback: lowercased name, collapsed whitespace

REFERENCES:
    - app/models.py (ProductMapping, ProductMappingItem, DismissedMappingSuggestion)
    - app/routers/product_mappings.py
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.models import (
    DismissedMappingSuggestion,
    Product,
    ProductMapping,
    ProductMappingItem,
    Store,
    utcnow,
)

logger = logging.getLogger(__name__)

SKU_CODE_PATTERN = re.compile(r"^([A-Za-z0-9]+[-_]?[A-Za-z0-9]*)\s+")
SEARCH_MIN_LENGTH = 2
SEARCH_LIMIT = 50


class MappingNotFoundError(Exception):
    """Mapping does not exist or belongs to another company."""


class MappingValidationError(Exception):
    """Request is structurally invalid (unknown products, single store...)."""


class MappingConflictError(Exception):
    """A product is already mapped, or the master SKU is taken."""

    def __init__(self, message: str, product_ids: Optional[List[UUID]] = None):
        super().__init__(message)
        self.product_ids = product_ids or []


# =============================================================================
# READ MODELS
# =============================================================================

@dataclass
class MappingItemView:
    id: UUID
    store_id: UUID
    store_name: str
    product_id: UUID
    product_name: str
    sku: Optional[str]
    image_url: Optional[str]
    stock_quantity: int
    is_source: bool


@dataclass
class MappingView:
    id: UUID
    master_sku: str
    name: Optional[str]
    items: List[MappingItemView]
    real_stock: int     # stock of the source item
    total_stock: int    # sum across items, non-authoritative
    store_count: int
    created_at: datetime


@dataclass
class SuggestedProduct:
    id: UUID
    store_id: UUID
    store_name: str
    name: str
    sku: str
    stock_quantity: int
    price: Optional[Decimal]


@dataclass
class MappingSuggestion:
    suggestion_key: str
    master_sku: str
    products: List[SuggestedProduct]
    store_count: int
    total_stock: int
    real_stock: int


@dataclass
class ProductSearchHit:
    id: UUID
    store_id: UUID
    store_name: str
    name: str
    sku: Optional[str]
    stock_quantity: int
    price: Optional[Decimal]
    is_already_mapped: bool
    mapping_id: Optional[UUID]


@dataclass
class StoreStock:
    store_id: UUID
    store_name: str
    stock: int


@dataclass
class ConsolidatedInventoryRow:
    mapping_id: UUID
    master_sku: str
    name: Optional[str]
    real_stock: int
    total_stock: int
    stores: List[StoreStock] = field(default_factory=list)


# =============================================================================
# HELPERS
# =============================================================================

def extract_code_from_name(name: Optional[str]) -> Optional[str]:
    """SKU-like code at the start of a product name, e.g. "SZ4590 Blue Mug" -> "SZ4590".

    Only codes of 3+ characters containing a digit qualify.
    """
    if not name:
        return None
    match = SKU_CODE_PATTERN.match(name)
    if not match:
        return None
    code = match.group(1)
    if len(code) >= 3 and any(ch.isdigit() for ch in code):
        return code
    return None


def normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def suggestion_key_for(product: Product) -> str:
    if product.sku and product.sku.strip():
        return f"sku:{product.sku.strip().lower()}"
    code = extract_code_from_name(product.name)
    if code:
        return f"code:{code.lower()}"
    return f"name:{normalize_name(product.name)}"


def item_stock(product: Product) -> int:
    """Stock of one linked product; variable products sum their variations."""
    if product.variations:
        return sum(v.stock_quantity or 0 for v in product.variations)
    return product.stock_quantity or 0


def _to_view(mapping: ProductMapping) -> MappingView:
    items: List[MappingItemView] = []
    for item in mapping.items:
        product = item.product
        items.append(MappingItemView(
            id=item.id,
            store_id=item.store_id,
            store_name=item.store.name,
            product_id=product.id,
            product_name=product.name,
            sku=product.sku,
            image_url=product.image_url,
            stock_quantity=item_stock(product),
            is_source=item.is_source,
        ))

    source = next((i for i in items if i.is_source), None)
    return MappingView(
        id=mapping.id,
        master_sku=mapping.master_sku,
        name=mapping.name,
        items=items,
        real_stock=source.stock_quantity if source else 0,
        total_stock=sum(i.stock_quantity for i in items),
        store_count=len({i.store_id for i in items}),
        created_at=mapping.created_at,
    )


def _mapping_query(db: Session, company_id: UUID):
    return (
        db.query(ProductMapping)
        .options(
            selectinload(ProductMapping.items).selectinload(ProductMappingItem.product).selectinload(Product.variations),
            selectinload(ProductMapping.items).selectinload(ProductMappingItem.store),
        )
        .filter(ProductMapping.company_id == company_id)
    )


def _load_mapping(db: Session, company_id: UUID, mapping_id: UUID) -> ProductMapping:
    mapping = _mapping_query(db, company_id).filter(ProductMapping.id == mapping_id).first()
    if not mapping:
        raise MappingNotFoundError(f"Mapping {mapping_id} not found")
    return mapping


def _dedupe(ids: Iterable[UUID]) -> List[UUID]:
    seen: Dict[UUID, None] = {}
    for value in ids:
        seen.setdefault(value, None)
    return list(seen)


def _load_company_products(db: Session, company_id: UUID, product_ids: Sequence[UUID]) -> List[Product]:
    """Products in request order; all must belong to the company's stores."""
    products = (
        db.query(Product)
        .join(Store, Product.store_id == Store.id)
        .filter(Store.company_id == company_id, Product.id.in_(product_ids))
        .all()
    )
    by_id = {p.id: p for p in products}
    missing = [pid for pid in product_ids if pid not in by_id]
    if missing:
        raise MappingValidationError(f"{len(missing)} product(s) not found in this company's stores")
    return [by_id[pid] for pid in product_ids]


def _ensure_unmapped(db: Session, products: Sequence[Product]) -> None:
    ids = [p.id for p in products]
    taken = db.query(ProductMappingItem.product_id).filter(ProductMappingItem.product_id.in_(ids)).all()
    taken_ids = [row[0] for row in taken]
    if taken_ids:
        names = ", ".join(p.name for p in products if p.id in set(taken_ids))
        raise MappingConflictError(f"Already mapped: {names}", product_ids=taken_ids)


def _ensure_master_sku_free(db: Session, company_id: UUID, master_sku: str, exclude_id: Optional[UUID] = None) -> None:
    query = db.query(ProductMapping.id).filter(
        ProductMapping.company_id == company_id,
        ProductMapping.master_sku == master_sku,
    )
    if exclude_id is not None:
        query = query.filter(ProductMapping.id != exclude_id)
    if query.first():
        raise MappingConflictError(f"Master SKU '{master_sku}' is already used by another mapping")


def _commit_or_conflict(db: Session, message: str) -> None:
    """Commit; a concurrent writer that beat us to a unique key becomes a conflict."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning("[MAPPING] Integrity conflict: %s", e.orig)
        raise MappingConflictError(message) from e


# =============================================================================
# MAPPINGS
# =============================================================================

def list_mappings(db: Session, company_id: UUID, search: Optional[str] = None) -> List[MappingView]:
    query = _mapping_query(db, company_id)
    if search and search.strip():
        term = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(func.lower(ProductMapping.master_sku).like(term), func.lower(ProductMapping.name).like(term))
        )
    return [_to_view(m) for m in query.order_by(ProductMapping.created_at.desc()).all()]


def get_mapping(db: Session, company_id: UUID, mapping_id: UUID) -> MappingView:
    return _to_view(_load_mapping(db, company_id, mapping_id))


def create_mapping(
    db: Session,
    company_id: UUID,
    master_sku: str,
    product_ids: Sequence[UUID],
    name: Optional[str] = None,
) -> MappingView:
    """Create a mapping; the first requested product becomes the source.

    Raises:
        MappingValidationError: Blank SKU, fewer than 2 products, unknown
            products, or products all from one store
        MappingConflictError: A product is already mapped or the master SKU is taken
    """
    master_sku = (master_sku or "").strip()
    if not master_sku:
        raise MappingValidationError("Master SKU is required")

    ids = _dedupe(product_ids)
    if len(ids) < 2:
        raise MappingValidationError("A mapping needs at least two products")

    products = _load_company_products(db, company_id, ids)
    if len({p.store_id for p in products}) < 2:
        raise MappingValidationError("Mapped products must come from at least two different stores")

    _ensure_master_sku_free(db, company_id, master_sku)
    _ensure_unmapped(db, products)

    mapping = ProductMapping(company_id=company_id, master_sku=master_sku, name=(name or "").strip() or None)
    for index, product in enumerate(products):
        mapping.items.append(ProductMappingItem(
            store_id=product.store_id,
            product_id=product.id,
            sku=product.sku,
            is_source=index == 0,
        ))
    db.add(mapping)
    _commit_or_conflict(db, "One of the products was mapped concurrently")

    logger.info(
        "[MAPPING] Created mapping %s (%s) with %d products for company %s",
        mapping.id, master_sku, len(products), company_id,
    )
    return get_mapping(db, company_id, mapping.id)


def update_mapping(
    db: Session,
    company_id: UUID,
    mapping_id: UUID,
    master_sku: Optional[str] = None,
    name: Optional[str] = None,
) -> MappingView:
    mapping = _load_mapping(db, company_id, mapping_id)
    if master_sku is not None:
        master_sku = master_sku.strip()
        if not master_sku:
            raise MappingValidationError("Master SKU cannot be empty")
        _ensure_master_sku_free(db, company_id, master_sku, exclude_id=mapping.id)
        mapping.master_sku = master_sku
    if name is not None:
        mapping.name = name.strip() or None
    mapping.updated_at = utcnow()
    _commit_or_conflict(db, "Master SKU was taken concurrently")
    return get_mapping(db, company_id, mapping_id)


def delete_mapping(db: Session, company_id: UUID, mapping_id: UUID) -> None:
    mapping = _load_mapping(db, company_id, mapping_id)
    db.delete(mapping)
    db.commit()
    logger.info("[MAPPING] Deleted mapping %s for company %s", mapping_id, company_id)


def add_products_to_mapping(
    db: Session,
    company_id: UUID,
    mapping_id: UUID,
    product_ids: Sequence[UUID],
) -> MappingView:
    mapping = _load_mapping(db, company_id, mapping_id)
    existing = {item.product_id for item in mapping.items}
    ids = [pid for pid in _dedupe(product_ids) if pid not in existing]
    if not ids:
        raise MappingValidationError("No new products to add")

    products = _load_company_products(db, company_id, ids)
    _ensure_unmapped(db, products)

    for product in products:
        mapping.items.append(ProductMappingItem(
            store_id=product.store_id,
            product_id=product.id,
            sku=product.sku,
            is_source=False,
        ))
    mapping.updated_at = utcnow()
    _commit_or_conflict(db, "One of the products was mapped concurrently")

    logger.info("[MAPPING] Added %d product(s) to mapping %s", len(products), mapping_id)
    return get_mapping(db, company_id, mapping_id)


def remove_products_from_mapping(
    db: Session,
    company_id: UUID,
    mapping_id: UUID,
    product_ids: Sequence[UUID],
) -> MappingView:
    """Unlink products; if the source leaves, the oldest remaining item becomes source."""
    mapping = _load_mapping(db, company_id, mapping_id)
    to_remove = set(product_ids)
    removing = [item for item in mapping.items if item.product_id in to_remove]
    if not removing:
        raise MappingValidationError("None of the products belong to this mapping")

    remaining = [item for item in mapping.items if item.product_id not in to_remove]
    if len(remaining) < 2:
        raise MappingValidationError("A mapping must keep at least two products; delete it instead")

    for item in removing:
        mapping.items.remove(item)
    if not any(item.is_source for item in remaining):
        remaining[0].is_source = True

    mapping.updated_at = utcnow()
    db.commit()
    logger.info("[MAPPING] Removed %d product(s) from mapping %s", len(removing), mapping_id)
    return get_mapping(db, company_id, mapping_id)


def set_source_item(db: Session, company_id: UUID, mapping_id: UUID, product_id: UUID) -> MappingView:
    """Move the source flag to another item of the same mapping."""
    mapping = _load_mapping(db, company_id, mapping_id)
    target = next((item for item in mapping.items if item.product_id == product_id), None)
    if target is None:
        raise MappingValidationError("Product is not part of this mapping")

    for item in mapping.items:
        item.is_source = item is target
    mapping.updated_at = utcnow()
    db.commit()
    return get_mapping(db, company_id, mapping_id)


# =============================================================================
# SUGGESTIONS
# =============================================================================

def _dismissed_keys(db: Session, company_id: UUID) -> set:
    rows = (
        db.query(DismissedMappingSuggestion.suggestion_key)
        .filter(DismissedMappingSuggestion.company_id == company_id)
        .all()
    )
    return {row[0] for row in rows}


def suggest_mappings(
    db: Session,
    company_id: UUID,
    store_ids: Optional[Sequence[UUID]] = None,
) -> List[MappingSuggestion]:
    """Group unmapped products across stores by SKU, name code or normalized name.

    Only groups spanning 2+ stores and not dismissed are returned, largest
    store coverage first. The first product of a group is the proposed source.
    """
    dismissed = _dismissed_keys(db, company_id)

    query = (
        db.query(Product)
        .join(Store, Product.store_id == Store.id)
        .outerjoin(ProductMappingItem, ProductMappingItem.product_id == Product.id)
        .options(selectinload(Product.variations), selectinload(Product.store))
        .filter(Store.company_id == company_id, ProductMappingItem.id.is_(None))
        .order_by(Product.created_at.asc())
    )
    if store_ids:
        query = query.filter(Product.store_id.in_(list(store_ids)))

    groups: Dict[str, List[SuggestedProduct]] = {}
    for product in query.all():
        key = suggestion_key_for(product)
        if key.startswith("sku:"):
            display_sku = product.sku.strip()
        elif key.startswith("code:"):
            display_sku = extract_code_from_name(product.name)
        else:
            display_sku = product.name
        groups.setdefault(key, []).append(SuggestedProduct(
            id=product.id,
            store_id=product.store_id,
            store_name=product.store.name,
            name=product.name,
            sku=display_sku,
            stock_quantity=item_stock(product),
            price=product.price,
        ))

    suggestions: List[MappingSuggestion] = []
    for key, members in groups.items():
        if key in dismissed:
            continue
        store_count = len({m.store_id for m in members})
        if store_count < 2:
            continue
        suggestions.append(MappingSuggestion(
            suggestion_key=key,
            master_sku=members[0].sku,
            products=members,
            store_count=store_count,
            total_stock=sum(m.stock_quantity for m in members),
            real_stock=members[0].stock_quantity,
        ))

    suggestions.sort(key=lambda s: s.store_count, reverse=True)
    return suggestions


def dismiss_suggestion(db: Session, company_id: UUID, suggestion_key: str) -> None:
    """Remember a dismissed suggestion so it is not proposed again. Idempotent."""
    key = (suggestion_key or "").strip()
    if not key:
        raise MappingValidationError("Suggestion key is required")
    exists = (
        db.query(DismissedMappingSuggestion.id)
        .filter(
            DismissedMappingSuggestion.company_id == company_id,
            DismissedMappingSuggestion.suggestion_key == key,
        )
        .first()
    )
    if exists:
        return
    db.add(DismissedMappingSuggestion(company_id=company_id, suggestion_key=key))
    try:
        db.commit()
    except IntegrityError:
        # Dismissed concurrently; same end state
        db.rollback()
    logger.info("[MAPPING] Dismissed suggestion %s for company %s", key, company_id)


def restore_suggestion(db: Session, company_id: UUID, suggestion_key: str) -> bool:
    deleted = (
        db.query(DismissedMappingSuggestion)
        .filter(
            DismissedMappingSuggestion.company_id == company_id,
            DismissedMappingSuggestion.suggestion_key == suggestion_key,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def list_dismissed_suggestions(db: Session, company_id: UUID) -> List[DismissedMappingSuggestion]:
    return (
        db.query(DismissedMappingSuggestion)
        .filter(DismissedMappingSuggestion.company_id == company_id)
        .order_by(DismissedMappingSuggestion.created_at.desc())
        .all()
    )


def auto_match(db: Session, company_id: UUID, store_ids: Optional[Sequence[UUID]] = None) -> Dict[str, int]:
    """Create a mapping for every current suggestion.

    Suggestions that cannot be created (SKU taken, products mapped meanwhile)
    are counted as skipped.
    """
    created = 0
    skipped = 0
    for suggestion in suggest_mappings(db, company_id, store_ids):
        try:
            create_mapping(
                db,
                company_id,
                master_sku=suggestion.master_sku,
                product_ids=[p.id for p in suggestion.products],
            )
            created += 1
        except (MappingConflictError, MappingValidationError) as e:
            logger.info("[MAPPING] Auto-match skipped %s: %s", suggestion.suggestion_key, e)
            skipped += 1

    logger.info("[MAPPING] Auto-match for company %s: created=%d skipped=%d", company_id, created, skipped)
    return {"created": created, "skipped": skipped}


# =============================================================================
# SEARCH & INVENTORY
# =============================================================================

def search_products(
    db: Session,
    company_id: UUID,
    query_text: str,
    store_id: Optional[UUID] = None,
) -> List[ProductSearchHit]:
    """Find products by name or SKU for manual mapping (2+ characters)."""
    if not query_text or len(query_text.strip()) < SEARCH_MIN_LENGTH:
        return []
    term = f"%{query_text.strip().lower()}%"

    query = (
        db.query(Product)
        .join(Store, Product.store_id == Store.id)
        .options(selectinload(Product.variations), selectinload(Product.store), selectinload(Product.mapping_item))
        .filter(
            Store.company_id == company_id,
            or_(func.lower(Product.name).like(term), func.lower(Product.sku).like(term)),
        )
    )
    if store_id:
        query = query.filter(Product.store_id == store_id)

    hits: List[ProductSearchHit] = []
    for product in query.order_by(Product.name.asc()).limit(SEARCH_LIMIT).all():
        item = product.mapping_item
        hits.append(ProductSearchHit(
            id=product.id,
            store_id=product.store_id,
            store_name=product.store.name,
            name=product.name,
            sku=product.sku,
            stock_quantity=item_stock(product),
            price=product.price,
            is_already_mapped=item is not None,
            mapping_id=item.mapping_id if item else None,
        ))
    return hits


def get_consolidated_inventory(db: Session, company_id: UUID) -> List[ConsolidatedInventoryRow]:
    """Per-store stock of every mapping, with the source-based real stock."""
    rows: List[ConsolidatedInventoryRow] = []
    for view in list_mappings(db, company_id):
        per_store: Dict[UUID, StoreStock] = {}
        for item in view.items:
            entry = per_store.setdefault(item.store_id, StoreStock(item.store_id, item.store_name, 0))
            entry.stock += item.stock_quantity
        rows.append(ConsolidatedInventoryRow(
            mapping_id=view.id,
            master_sku=view.master_sku,
            name=view.name,
            real_stock=view.real_stock,
            total_stock=view.total_stock,
            stores=list(per_store.values()),
        ))
    return rows
