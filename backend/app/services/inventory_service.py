"""Local inventory edits between syncs.

WHAT:
    - Stock edits: pushed to the storefront first, then written locally with
      the derived stock status.
    - Stock edits on a mapping's source product are then pushed to every
      other product in the mapping (per-store failures are reported, never
      fatal to the edit itself).
    - Purchase price edits: local only. Reconciliation never overwrites them.

WHY:
    The storefront is the record of stock. Writing locally only after the
    remote accepted the value keeps the next sync from silently reverting the
    edit (and keeps local and remote from diverging when the push fails).

REFERENCES:
    - app/services/woocommerce_client.py (update_product_stock / update_variation_stock)
    - app/services/reconciliation.py (derive_stock_status, local-only fields)
    - app/services/product_mapping_service.py (source item = real stock)
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Product, ProductMappingItem, ProductVariation, Store, StoreStatusEnum
from app.services.reconciliation import derive_stock_status
from app.services.store_service import StoreCredentialsError, client_for_store
from app.services.woocommerce_client import RemoteAuthError, RemoteStoreError, describe_remote_error

logger = logging.getLogger(__name__)


class InventoryNotFoundError(Exception):
    """Product or variation not found in the company's active stores."""


class InventoryValidationError(Exception):
    """Rejected edit value."""


class StockPushError(Exception):
    """The storefront refused or could not receive a stock update."""


def _product(db: Session, company_id: UUID, product_id: UUID) -> Product:
    product = (
        db.query(Product)
        .join(Store, Product.store_id == Store.id)
        .filter(
            Product.id == product_id,
            Store.company_id == company_id,
            Store.status == StoreStatusEnum.active,
        )
        .first()
    )
    if not product:
        raise InventoryNotFoundError("Product not found")
    return product


def _variation(db: Session, company_id: UUID, variation_id: UUID) -> ProductVariation:
    variation = (
        db.query(ProductVariation)
        .join(Product, ProductVariation.product_id == Product.id)
        .join(Store, Product.store_id == Store.id)
        .filter(
            ProductVariation.id == variation_id,
            Store.company_id == company_id,
            Store.status == StoreStatusEnum.active,
        )
        .first()
    )
    if not variation:
        raise InventoryNotFoundError("Variation not found")
    return variation


def _push_error(error: RemoteStoreError) -> StockPushError:
    if isinstance(error, RemoteAuthError):
        return StockPushError(
            "The API key cannot write to this store. Create a Read/Write API key and update the store."
        )
    return StockPushError(f"Stock update failed: {describe_remote_error(error)}")


def _validate_quantity(quantity: int) -> None:
    if quantity is None or quantity < 0:
        raise InventoryValidationError("Stock quantity must be zero or more")


def _validate_price(price: Optional[Decimal]) -> None:
    if price is not None and price < 0:
        raise InventoryValidationError("Purchase price cannot be negative")


@dataclass
class StockEditResult:
    """An accepted stock edit and how far it spread to mapped stores."""

    item: Union[Product, ProductVariation]
    synced_stores: int = 0
    failed_stores: List[str] = field(default_factory=list)


def _set_local_stock(item: Union[Product, ProductVariation], quantity: int) -> None:
    item.stock_quantity = quantity
    item.stock_status = derive_stock_status(quantity)
    item.manage_stock = True


def _mapped_targets(product: Product) -> List[ProductMappingItem]:
    """Other items of the product's mapping, when the product is its source."""
    source = product.mapping_item
    if source is None or not source.is_source:
        return []
    targets = []
    for item in source.mapping.items:
        if item.product_id == product.id:
            continue
        if item.store.status != StoreStatusEnum.active:
            logger.info("[INVENTORY] Skipping mapped store %s (%s)", item.store.name, item.store.status.value)
            continue
        targets.append(item)
    return targets


def _matching_variation(source: ProductVariation, candidates: List[ProductVariation]) -> Optional[ProductVariation]:
    """Same variation in another store: SKU first, then the attribute label."""
    if source.sku:
        for candidate in candidates:
            if candidate.sku and candidate.sku.lower() == source.sku.lower():
                return candidate
    if source.attribute_string:
        for candidate in candidates:
            if candidate.attribute_string and candidate.attribute_string.lower() == source.attribute_string.lower():
                return candidate
    return None


async def _propagate_product_stock(db: Session, product: Product, quantity: int, result: StockEditResult) -> None:
    for item in _mapped_targets(product):
        target = item.product
        try:
            await client_for_store(item.store).update_product_stock(target.wc_product_id, quantity)
        except (RemoteStoreError, StoreCredentialsError) as e:
            logger.warning("[INVENTORY] Stock sync to %s failed for product %s: %s", item.store.name, target.id, e)
            result.failed_stores.append(item.store.name)
            continue
        _set_local_stock(target, quantity)
        result.synced_stores += 1
        logger.info("[INVENTORY] Synced stock to %s: product %s = %d", item.store.name, target.wc_product_id, quantity)
    db.commit()


async def _propagate_variation_stock(
    db: Session, variation: ProductVariation, quantity: int, result: StockEditResult
) -> None:
    for item in _mapped_targets(variation.product):
        target = _matching_variation(variation, list(item.product.variations))
        if target is None:
            logger.warning(
                "[INVENTORY] No matching variation in %s for %s",
                item.store.name, variation.sku or variation.attribute_string,
            )
            continue
        try:
            await client_for_store(item.store).update_variation_stock(
                item.product.wc_product_id, target.wc_variation_id, quantity
            )
        except (RemoteStoreError, StoreCredentialsError) as e:
            logger.warning("[INVENTORY] Variation stock sync to %s failed for %s: %s", item.store.name, target.id, e)
            result.failed_stores.append(item.store.name)
            continue
        _set_local_stock(target, quantity)
        result.synced_stores += 1
        logger.info(
            "[INVENTORY] Synced variation stock to %s: variation %s = %d",
            item.store.name, target.wc_variation_id, quantity,
        )
    db.commit()


async def update_product_stock(db: Session, company_id: UUID, product_id: UUID, quantity: int) -> StockEditResult:
    """Set a product's stock on its store, then on every mapped store if it is a source.

    Raises:
        StockPushError: The product's own store rejected the value; nothing
            was changed locally and nothing was propagated.
    """
    _validate_quantity(quantity)
    product = _product(db, company_id, product_id)
    client = client_for_store(product.store)

    try:
        await client.update_product_stock(product.wc_product_id, quantity)
    except RemoteStoreError as e:
        logger.warning("[INVENTORY] Stock push for product %s failed: %s", product.id, e)
        raise _push_error(e) from e

    _set_local_stock(product, quantity)
    db.commit()
    logger.info("[INVENTORY] Product %s stock set to %d", product.id, quantity)

    result = StockEditResult(item=product)
    await _propagate_product_stock(db, product, quantity, result)
    db.refresh(product)
    return result


async def update_variation_stock(
    db: Session, company_id: UUID, variation_id: UUID, quantity: int
) -> StockEditResult:
    _validate_quantity(quantity)
    variation = _variation(db, company_id, variation_id)
    parent = variation.product
    client = client_for_store(parent.store)

    try:
        await client.update_variation_stock(parent.wc_product_id, variation.wc_variation_id, quantity)
    except RemoteStoreError as e:
        logger.warning("[INVENTORY] Stock push for variation %s failed: %s", variation.id, e)
        raise _push_error(e) from e

    _set_local_stock(variation, quantity)
    db.commit()
    logger.info("[INVENTORY] Variation %s stock set to %d", variation.id, quantity)

    result = StockEditResult(item=variation)
    await _propagate_variation_stock(db, variation, quantity, result)
    db.refresh(variation)
    return result


def update_product_purchase_price(
    db: Session, company_id: UUID, product_id: UUID, purchase_price: Optional[Decimal]
) -> Product:
    _validate_price(purchase_price)
    product = _product(db, company_id, product_id)
    product.purchase_price = purchase_price
    db.commit()
    db.refresh(product)
    return product


def update_variation_purchase_price(
    db: Session, company_id: UUID, variation_id: UUID, purchase_price: Optional[Decimal]
) -> ProductVariation:
    _validate_price(purchase_price)
    variation = _variation(db, company_id, variation_id)
    variation.purchase_price = purchase_price
    db.commit()
    db.refresh(variation)
    return variation
