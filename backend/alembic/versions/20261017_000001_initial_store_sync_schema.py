"""Initial store sync schema

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 09:00:00.000000

WHAT:
    Creates the tables for connected WooCommerce stores and their local mirror:
    - companies: tenants
    - stores: credentials (encrypted), status and sync telemetry
    - products / product_variations / orders: reconciled remote records
    - product_mappings / product_mapping_items: cross-store master SKUs
    - dismissed_mapping_suggestions: suggestions the user rejected

WHY:
    Remote ids are unique per scope (store for products and orders, parent
    product for variations) so reconciliation can upsert by natural key.
    product_mapping_items.product_id is unique: a product belongs to at most
    one mapping.

REFERENCES:
    - app/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017_000001'
down_revision = None
branch_labels = None
depends_on = None


store_status = postgresql.ENUM('ACTIVE', 'INACTIVE', 'ERROR', name='store_status', create_type=False)
sync_step = postgresql.ENUM(
    'connection', 'products', 'variations', 'orders', 'saving', name='sync_step', create_type=False
)
stock_status = postgresql.ENUM('instock', 'outofstock', 'onbackorder', name='stock_status', create_type=False)
order_status = postgresql.ENUM(
    'pending', 'processing', 'completed', 'cancelled', 'refunded', 'failed', 'on-hold',
    name='order_status', create_type=False,
)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enums
    # =========================================================================
    # stock_status is shared by products and variations, so types are created
    # once up front instead of by create_table
    bind = op.get_bind()
    for enum_type in (store_status, sync_step, stock_status, order_status):
        enum_type.create(bind, checkfirst=True)

    # =========================================================================
    # STEP 2: Tenancy and stores
    # =========================================================================
    op.create_table(
        'companies',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'stores',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('company_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('url', sa.String(), nullable=False),
        sa.Column('consumer_key_enc', sa.Text(), nullable=False),
        sa.Column('consumer_secret_enc', sa.Text(), nullable=False),
        sa.Column('status', store_status, nullable=False, server_default='ACTIVE'),
        sa.Column('is_syncing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sync_step', sync_step, nullable=True),
        sa.Column('sync_products_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sync_variations_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sync_orders_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sync_started_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('commission_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('shipping_cost', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'url', name='uq_stores_company_url'),
    )
    op.create_index('ix_stores_company_id', 'stores', ['company_id'])

    # =========================================================================
    # STEP 3: Local mirror (products, variations, orders)
    # =========================================================================
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('wc_product_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('product_type', sa.String(32), nullable=False, server_default='simple'),
        sa.Column('image_url', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('purchase_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stock_status', stock_status, nullable=False, server_default='outofstock'),
        sa.Column('manage_stock', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('store_id', 'wc_product_id', name='uq_products_store_wc_id'),
    )
    op.create_index('ix_products_store_id', 'products', ['store_id'])
    op.create_index('ix_products_sku', 'products', ['sku'])

    op.create_table(
        'product_variations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('wc_variation_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=True),
        sa.Column('purchase_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stock_status', stock_status, nullable=False, server_default='outofstock'),
        sa.Column('manage_stock', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('attribute_string', sa.String(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('product_id', 'wc_variation_id', name='uq_variations_product_wc_id'),
    )
    op.create_index('ix_product_variations_product_id', 'product_variations', ['product_id'])

    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('store_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('wc_order_id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(), nullable=False),
        sa.Column('status', order_status, nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total_tax', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('shipping_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('items_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('order_date', sa.DateTime(), nullable=False),
        sa.Column('synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('store_id', 'wc_order_id', name='uq_orders_store_wc_id'),
    )
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])

    # =========================================================================
    # STEP 4: Cross-store mappings
    # =========================================================================
    op.create_table(
        'product_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('company_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('master_sku', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'master_sku', name='uq_product_mappings_company_sku'),
    )
    op.create_index('ix_product_mappings_company_id', 'product_mappings', ['company_id'])

    op.create_table(
        'product_mapping_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('mapping_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('product_mappings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('stores.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('sku', sa.String(), nullable=True),
        sa.Column('is_source', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_product_mapping_items_mapping_id', 'product_mapping_items', ['mapping_id'])

    op.create_table(
        'dismissed_mapping_suggestions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('company_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('companies.id', ondelete='CASCADE'), nullable=False),
        sa.Column('suggestion_key', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('company_id', 'suggestion_key', name='uq_dismissed_suggestions_company_key'),
    )
    op.create_index('ix_dismissed_mapping_suggestions_company_id', 'dismissed_mapping_suggestions', ['company_id'])


def downgrade() -> None:
    op.drop_table('dismissed_mapping_suggestions')
    op.drop_table('product_mapping_items')
    op.drop_table('product_mappings')
    op.drop_table('orders')
    op.drop_table('product_variations')
    op.drop_table('products')
    op.drop_table('stores')
    op.drop_table('companies')

    bind = op.get_bind()
    for enum_type in (order_status, stock_status, sync_step, store_status):
        enum_type.drop(bind, checkfirst=True)
