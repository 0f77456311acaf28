"""SQLAlchemy ORM models and enums.

This module defines the store synchronization schema using UUID primary keys
and explicit relationships. Remote-owned rows (products, variations, orders)
are keyed by their WooCommerce IDs scoped to the owning store or parent so the
reconciliation engine can upsert by compound key.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, Numeric, JSON, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp used for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums ---------------------------------------------------------

class StoreStatusEnum(str, enum.Enum):
    active = "ACTIVE"
    inactive = "INACTIVE"
    error = "ERROR"


class SyncStepEnum(str, enum.Enum):
    """Persisted sync step, polled by the dashboard while a sync runs."""
    connection = "connection"
    products = "products"
    variations = "variations"
    orders = "orders"
    saving = "saving"


class StockStatusEnum(str, enum.Enum):
    instock = "instock"
    outofstock = "outofstock"
    onbackorder = "onbackorder"


class ProductTypeEnum(str, enum.Enum):
    simple = "simple"
    variable = "variable"
    grouped = "grouped"
    external = "external"


class OrderStatusEnum(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"
    refunded = "refunded"
    failed = "failed"
    on_hold = "on-hold"


def _enum_values(obj):
    return [e.value for e in obj]


# Tenancy -------------------------------------------------------

class Company(Base):
    """Tenant that owns connected stores and cross-store mappings."""
    __tablename__ = "companies"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    stores = relationship("Store", back_populates="company", cascade="all")
    mappings = relationship("ProductMapping", back_populates="company", cascade="all")
    dismissed_suggestions = relationship(
        "DismissedMappingSuggestion", back_populates="company", cascade="all"
    )

    def __str__(self):
        return self.name


# Stores --------------------------------------------------------

class Store(Base):
    """A connected WooCommerce storefront.

    WHAT:
        Holds encrypted REST credentials, connection status and the sync
        telemetry fields the dashboard polls while a sync is running.
    WHY:
        The sync fields are mutated only by the background sync task while
        `is_syncing` is true; `is_syncing` itself is claimed through a
        conditional UPDATE (see app/services/sync_state.py).
    """
    __tablename__ = "stores"
    __table_args__ = (
        UniqueConstraint("company_id", "url", name="uq_stores_company_url"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)  # Normalized: lowercase, https, no trailing slash
    consumer_key_enc = Column(Text, nullable=False)
    consumer_secret_enc = Column(Text, nullable=False)
    status = Column(
        Enum(StoreStatusEnum, values_callable=_enum_values, name="store_status"),
        nullable=False,
        default=StoreStatusEnum.active,
    )

    # Sync telemetry
    is_syncing = Column(Boolean, nullable=False, default=False)
    sync_started_at = Column(DateTime, nullable=True)  # When the current claim was taken
    sync_step = Column(Enum(SyncStepEnum, values_callable=_enum_values, name="sync_step"), nullable=True)
    sync_products_count = Column(Integer, nullable=False, default=0)
    sync_variations_count = Column(Integer, nullable=False, default=0)
    sync_orders_count = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)

    # Financial configuration (consumed by profit reports)
    currency = Column(String(3), nullable=False, default="USD")
    commission_rate = Column(Numeric(5, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = relationship("Company", back_populates="stores")
    products = relationship("Product", back_populates="store", cascade="all")
    orders = relationship("Order", back_populates="store", cascade="all")
    mapping_items = relationship("ProductMappingItem", back_populates="store", cascade="all")

    def __str__(self):
        return f"{self.name} ({self.url})"


# Catalog -------------------------------------------------------

class Product(Base):
    """Local mirror of a remote catalog entry.

    `purchase_price` is entered locally and is never written by a sync.
    `stock_status` is always derived from `stock_quantity`.
    """
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("store_id", "wc_product_id", name="uq_products_store_wc_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    wc_product_id = Column(Integer, nullable=False)
    sku = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    product_type = Column(String(32), nullable=False, default=ProductTypeEnum.simple.value)
    image_url = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    purchase_price = Column(Numeric(12, 2), nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    stock_status = Column(
        Enum(StockStatusEnum, values_callable=_enum_values, name="stock_status"),
        nullable=False,
        default=StockStatusEnum.outofstock,
    )
    manage_stock = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    store = relationship("Store", back_populates="products")
    variations = relationship("ProductVariation", back_populates="product", cascade="all")
    mapping_item = relationship(
        "ProductMappingItem", back_populates="product", uselist=False, cascade="all"
    )

    def __str__(self):
        return f"{self.name} (#{self.wc_product_id})"


class ProductVariation(Base):
    """Variant of a variable product, scoped to its parent."""
    __tablename__ = "product_variations"
    __table_args__ = (
        UniqueConstraint("product_id", "wc_variation_id", name="uq_variations_product_wc_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    wc_variation_id = Column(Integer, nullable=False)
    sku = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    purchase_price = Column(Numeric(12, 2), nullable=True)
    stock_quantity = Column(Integer, nullable=False, default=0)
    stock_status = Column(
        Enum(StockStatusEnum, values_callable=_enum_values, name="stock_status"),
        nullable=False,
        default=StockStatusEnum.outofstock,
    )
    manage_stock = Column(Boolean, nullable=False, default=False)
    attributes = Column(JSON, nullable=True)  # {"Size": "XL", "Color": "Red"}
    attribute_string = Column(String, nullable=True)  # "XL / Red"
    is_active = Column(Boolean, nullable=False, default=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    product = relationship("Product", back_populates="variations")

    def __str__(self):
        return f"{self.attribute_string or self.sku or self.wc_variation_id}"


# Orders --------------------------------------------------------

class Order(Base):
    """Local mirror of a remote order. Remote is last-write-wins per sync."""
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("store_id", "wc_order_id", name="uq_orders_store_wc_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    wc_order_id = Column(Integer, nullable=False)
    order_number = Column(String, nullable=False)
    status = Column(Enum(OrderStatusEnum, values_callable=_enum_values, name="order_status"), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    total_tax = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_total = Column(Numeric(12, 2), nullable=False, default=0)
    discount_total = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    items_count = Column(Integer, nullable=False, default=0)
    order_date = Column(DateTime, nullable=False)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    store = relationship("Store", back_populates="orders")

    def __str__(self):
        return f"#{self.order_number} ({self.status.value if self.status else 'unknown'})"


# Cross-store mapping -------------------------------------------

class ProductMapping(Base):
    """Groups the same physical product across stores under one master SKU."""
    __tablename__ = "product_mappings"
    __table_args__ = (
        UniqueConstraint("company_id", "master_sku", name="uq_product_mappings_company_sku"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    master_sku = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    company = relationship("Company", back_populates="mappings")
    items = relationship(
        "ProductMappingItem",
        back_populates="mapping",
        cascade="all, delete-orphan",
        order_by="ProductMappingItem.created_at",
    )

    def __str__(self):
        return self.name or self.master_sku


class ProductMappingItem(Base):
    """Link between a mapping and one (store, product) pair.

    `product_id` is globally unique: a product belongs to at most one mapping.
    Exactly one item per mapping carries `is_source`.
    """
    __tablename__ = "product_mapping_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mapping_id = Column(UUID(as_uuid=True), ForeignKey("product_mappings.id", ondelete="CASCADE"), nullable=False, index=True)
    store_id = Column(UUID(as_uuid=True), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, unique=True)
    sku = Column(String, nullable=True)
    is_source = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    mapping = relationship("ProductMapping", back_populates="items")
    store = relationship("Store", back_populates="mapping_items")
    product = relationship("Product", back_populates="mapping_item")

    def __str__(self):
        return f"{self.sku or self.product_id}{' (source)' if self.is_source else ''}"


class DismissedMappingSuggestion(Base):
    """Suggestion key the user dismissed so it is not suggested again."""
    __tablename__ = "dismissed_mapping_suggestions"
    __table_args__ = (
        UniqueConstraint("company_id", "suggestion_key", name="uq_dismissed_suggestions_company_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_id = Column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    suggestion_key = Column(String, nullable=False)  # "sku:abc-1", "code:ab12", "name:blue widget"
    created_at = Column(DateTime, default=utcnow, nullable=False)

    company = relationship("Company", back_populates="dismissed_suggestions")

    def __str__(self):
        return self.suggestion_key
