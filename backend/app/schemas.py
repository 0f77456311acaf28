"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID
from typing import Optional, List, Dict

from pydantic import BaseModel, Field, constr, conint, condecimal

from .models import StoreStatusEnum, SyncStepEnum, StockStatusEnum


# =============================================================================
# STORES
# =============================================================================

class StoreConnectionTest(BaseModel):
    """Credentials to test before a store is connected."""

    url: constr(min_length=1) = Field(description="Storefront URL (scheme optional)")
    consumer_key: constr(min_length=1) = Field(description="WooCommerce REST consumer key (ck_...)")
    consumer_secret: constr(min_length=1) = Field(description="WooCommerce REST consumer secret (cs_...)")

    model_config = {
        "json_schema_extra": {
            "example": {
                "url": "shop.example.com",
                "consumer_key": "ck_0123456789abcdef",
                "consumer_secret": "cs_0123456789abcdef",
            }
        }
    }


class ConnectionTestResponse(BaseModel):
    """Outcome of a connection test. Failures are reported, not raised."""

    success: bool = Field(description="Whether the store answered with valid credentials")
    error: Optional[str] = Field(default=None, description="Human-readable reason when success is false")


class StoreCreate(StoreConnectionTest):
    """Payload for connecting a new store."""

    name: constr(min_length=1, max_length=255) = Field(description="Display name")
    currency: constr(min_length=3, max_length=3) = Field(default="USD", description="ISO 4217 currency code")
    commission_rate: condecimal(ge=0, le=100) = Field(default=Decimal("0"), description="Payment commission in percent")
    shipping_cost: condecimal(ge=0) = Field(default=Decimal("0"), description="Flat shipping cost per order")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Main shop",
                "url": "https://shop.example.com",
                "consumer_key": "ck_0123456789abcdef",
                "consumer_secret": "cs_0123456789abcdef",
                "currency": "EUR",
                "commission_rate": "2.90",
                "shipping_cost": "4.95",
            }
        }
    }


class StoreUpdate(BaseModel):
    """Partial update. Changing url or credentials re-runs the connection test."""

    name: Optional[constr(min_length=1, max_length=255)] = None
    url: Optional[str] = None
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    currency: Optional[constr(min_length=3, max_length=3)] = None
    commission_rate: Optional[condecimal(ge=0, le=100)] = None
    shipping_cost: Optional[condecimal(ge=0)] = None
    status: Optional[StoreStatusEnum] = Field(default=None, description="ACTIVE or INACTIVE")


class StoreOut(BaseModel):
    """Connected store. Credentials are never returned."""

    id: UUID
    company_id: UUID
    name: str
    url: str
    status: StoreStatusEnum
    is_syncing: bool
    sync_step: Optional[SyncStepEnum] = None
    sync_products_count: int
    sync_variations_count: int
    sync_orders_count: int
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    currency: str
    commission_rate: Decimal
    shipping_cost: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class SyncStartResponse(BaseModel):
    """Immediate answer of the sync trigger."""

    success: bool = Field(description="False when the store was already syncing")
    message: str = Field(description="Human-readable outcome")
    started: bool = Field(description="Whether this request started a new sync")


class SyncStatusResponse(BaseModel):
    """Progress snapshot polled while a sync runs."""

    store_id: UUID
    status: StoreStatusEnum
    is_syncing: bool
    sync_step: Optional[SyncStepEnum] = Field(
        default=None, description="Current step while syncing; the failed step after a failure"
    )
    sync_products_count: int
    sync_variations_count: int
    sync_orders_count: int
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    poll_interval_seconds: int = Field(description="Suggested delay between polls")

    model_config = {"from_attributes": True}


# =============================================================================
# PRODUCT MAPPINGS
# =============================================================================

class MappingCreate(BaseModel):
    """Link products from different stores under one master SKU.

    The first product id becomes the source of truth for real stock.
    """

    master_sku: constr(min_length=1, max_length=255)
    name: Optional[str] = None
    product_ids: List[UUID] = Field(description="At least two products from two stores")


class MappingUpdate(BaseModel):
    master_sku: Optional[constr(min_length=1, max_length=255)] = None
    name: Optional[str] = None


class MappingProducts(BaseModel):
    product_ids: List[UUID]


class MappingSource(BaseModel):
    product_id: UUID = Field(description="Product that becomes the mapping's source of truth")


class MappingItemOut(BaseModel):
    id: UUID
    store_id: UUID
    store_name: str
    product_id: UUID
    product_name: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    stock_quantity: int
    is_source: bool

    model_config = {"from_attributes": True}


class MappingOut(BaseModel):
    id: UUID
    master_sku: str
    name: Optional[str] = None
    items: List[MappingItemOut]
    real_stock: int = Field(description="Stock of the source item")
    total_stock: int = Field(description="Sum of stock across all mapped stores")
    store_count: int
    created_at: datetime

    model_config = {"from_attributes": True}


class SuggestedProductOut(BaseModel):
    id: UUID
    store_id: UUID
    store_name: str
    name: str
    sku: str
    stock_quantity: int
    price: Optional[Decimal] = None

    model_config = {"from_attributes": True}


class MappingSuggestionOut(BaseModel):
    suggestion_key: str = Field(description="Stable key used to dismiss the suggestion")
    master_sku: str
    products: List[SuggestedProductOut]
    store_count: int
    total_stock: int
    real_stock: int

    model_config = {"from_attributes": True}


class SuggestionDismiss(BaseModel):
    suggestion_key: constr(min_length=1)


class DismissedSuggestionOut(BaseModel):
    suggestion_key: str
    created_at: datetime

    model_config = {"from_attributes": True}


class AutoMatchRequest(BaseModel):
    store_ids: Optional[List[UUID]] = Field(default=None, description="Restrict matching to these stores")


class AutoMatchResponse(BaseModel):
    created: int
    skipped: int


class ProductSearchHitOut(BaseModel):
    id: UUID
    store_id: UUID
    store_name: str
    name: str
    sku: Optional[str] = None
    stock_quantity: int
    price: Optional[Decimal] = None
    is_already_mapped: bool
    mapping_id: Optional[UUID] = None

    model_config = {"from_attributes": True}


class StoreStockOut(BaseModel):
    store_id: UUID
    store_name: str
    stock: int

    model_config = {"from_attributes": True}


class ConsolidatedInventoryRowOut(BaseModel):
    mapping_id: UUID
    master_sku: str
    name: Optional[str] = None
    real_stock: int
    total_stock: int
    stores: List[StoreStockOut]

    model_config = {"from_attributes": True}


# =============================================================================
# INVENTORY
# =============================================================================

class StockUpdate(BaseModel):
    """New stock quantity, pushed to the store before it is saved locally."""

    stock_quantity: conint(ge=0)


class PurchasePriceUpdate(BaseModel):
    """Local-only unit cost. null clears it."""

    purchase_price: Optional[condecimal(ge=0, max_digits=12, decimal_places=2)] = None


class InventoryItemOut(BaseModel):
    id: UUID
    sku: Optional[str] = None
    price: Optional[Decimal] = None
    purchase_price: Optional[Decimal] = None
    stock_quantity: int
    stock_status: StockStatusEnum
    manage_stock: bool

    model_config = {"from_attributes": True}


class StockEditResponse(InventoryItemOut):
    """Edited item plus the outcome of pushing it to mapped stores."""
    synced_stores: int = Field(default=0, description="Mapped stores that accepted the new stock")
    failed_stores: List[str] = Field(default_factory=list, description="Mapped stores that rejected it")


# =============================================================================
# MISC
# =============================================================================

class MessageResponse(BaseModel):
    detail: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status")
    checks: Dict[str, str] = Field(default_factory=dict, description="Per-dependency status")

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok",
                "checks": {"database": "ok"},
            }
        }
    }
