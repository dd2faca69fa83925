"""add_warehouse_sync_tables

Revision ID: a1c4e7f20b35
Revises:
Create Date: 2026-10-19

Canonical marketplace tables, connector integrations and sync bookkeeping
(run log, watermarks, pass-through records).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f20b35'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _scope_columns():
    return [
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('integration_id', sa.String(), nullable=False, index=True),
        sa.Column('channel', sa.String(), nullable=False, index=True),
    ]


def _sync_columns():
    return [
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
    ]


def upgrade() -> None:
    """Create connector, canonical and bookkeeping tables."""
    op.create_table(
        'connector_integrations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('connector_type', sa.String(), nullable=False, index=True),
        sa.Column('connector_name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), index=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table(
        'external_orders',
        *_scope_columns(),
        sa.Column('external_order_id', sa.String(), nullable=False, index=True),
        sa.Column('order_number', sa.String(), nullable=True),
        sa.Column('order_date', sa.DateTime(timezone=True), index=True),
        sa.Column('status', sa.String(), index=True),

        # Customer
        sa.Column('customer_name', sa.String(), nullable=True),
        sa.Column('customer_phone', sa.String(), nullable=True),

        # Amounts
        sa.Column('total_amount', sa.Float(), default=0),
        sa.Column('subtotal', sa.Float(), default=0),
        sa.Column('shipping_fee', sa.Float(), default=0),
        sa.Column('shipping_fee_discount', sa.Float(), default=0),
        sa.Column('voucher_discount', sa.Float(), default=0),
        sa.Column('seller_income', sa.Float(), default=0),

        # Channel fees
        sa.Column('platform_fee', sa.Float(), default=0),
        sa.Column('commission_fee', sa.Float(), default=0),
        sa.Column('payment_fee', sa.Float(), default=0),
        sa.Column('service_fee', sa.Float(), default=0),

        # Derived
        sa.Column('total_fees', sa.Float(), default=0),
        sa.Column('net_revenue', sa.Float(), default=0),
        sa.Column('total_cogs', sa.Float(), default=0),
        sa.Column('gross_profit', sa.Float(), default=0),
        sa.Column('net_profit', sa.Float(), default=0),

        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=True),
        sa.Column('item_count', sa.Integer(), default=0),
        sa.Column('items', sa.JSON(), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),

        # Lifecycle timestamps
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        *_sync_columns(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'external_order_id',
                            name='uq_external_orders_natural_key'),
    )
    op.create_index('ix_external_orders_tenant_date', 'external_orders', ['tenant_id', 'order_date'])

    op.create_table(
        'external_order_items',
        *_scope_columns(),
        sa.Column('external_order_id', sa.String(), nullable=False, index=True),
        sa.Column('item_id', sa.String(), nullable=False),
        sa.Column('sku', sa.String(), nullable=True, index=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('quantity', sa.Integer(), default=0),
        sa.Column('unit_price', sa.Float(), default=0),
        sa.Column('discount_amount', sa.Float(), default=0),
        sa.Column('total_amount', sa.Float(), default=0),
        sa.Column('unit_cogs', sa.Float(), default=0),
        sa.Column('total_cogs', sa.Float(), default=0),
        sa.Column('margin', sa.Float(), nullable=True),
        *_sync_columns(),
        sa.UniqueConstraint('tenant_id', 'external_order_id', 'item_id',
                            name='uq_external_order_items_natural_key'),
    )

    op.create_table(
        'channel_settlements',
        *_scope_columns(),
        sa.Column('settlement_id', sa.String(), nullable=False),
        sa.Column('settlement_number', sa.String(), nullable=True),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gross_sales', sa.Float(), default=0),
        sa.Column('total_fees', sa.Float(), default=0),
        sa.Column('total_refunds', sa.Float(), default=0),
        sa.Column('net_amount', sa.Float(), default=0),
        sa.Column('total_orders', sa.Integer(), default=0),
        sa.Column('status', sa.String(), index=True),
        *_sync_columns(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'settlement_id',
                            name='uq_channel_settlements_natural_key'),
    )

    op.create_table(
        'external_products',
        *_scope_columns(),
        sa.Column('external_product_id', sa.String(), nullable=False),
        sa.Column('sku', sa.String(), nullable=True, index=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('brand', sa.String(), nullable=True),
        sa.Column('cost_price', sa.Float(), default=0),
        sa.Column('selling_price', sa.Float(), default=0),
        sa.Column('stock_quantity', sa.Integer(), default=0),
        sa.Column('status', sa.String(), index=True),
        *_sync_columns(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'external_product_id',
                            name='uq_external_products_natural_key'),
    )

    op.create_table(
        'external_customers',
        *_scope_columns(),
        sa.Column('external_customer_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True, index=True),
        sa.Column('phone', sa.String(), nullable=True, index=True),
        sa.Column('total_orders', sa.Integer(), default=0),
        sa.Column('total_spent', sa.Float(), default=0),
        sa.Column('first_order_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_order_date', sa.DateTime(timezone=True), nullable=True),
        *_sync_columns(),
        sa.UniqueConstraint('tenant_id', 'integration_id', 'external_customer_id',
                            name='uq_external_customers_natural_key'),
    )

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('integration_id', sa.String(), nullable=True, index=True),
        sa.Column('connector_type', sa.String()),
        sa.Column('connector_name', sa.String()),
        sa.Column('sync_type', sa.String()),
        sa.Column('status', sa.String(), index=True),
        sa.Column('started_at', sa.DateTime(timezone=True), index=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('records_fetched', sa.Integer(), default=0),
        sa.Column('records_created', sa.Integer(), default=0),
        sa.Column('records_failed', sa.Integer(), default=0),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sync_metadata', sa.JSON(), nullable=True),
    )

    op.create_table(
        'warehouse_sync_watermarks',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('data_model', sa.String(), nullable=False, index=True),
        sa.Column('dataset_id', sa.String(), nullable=True),
        sa.Column('table_id', sa.String(), nullable=True),
        sa.Column('sync_status', sa.String(), index=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_record_timestamp', sa.String(), nullable=True),
        sa.Column('total_records_synced', sa.Integer(), default=0),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('tenant_id', 'data_model', name='uq_watermark_tenant_model'),
    )

    op.create_table(
        'warehouse_records',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('tenant_id', sa.String(), nullable=False, index=True),
        sa.Column('data_model', sa.String(), nullable=False, index=True),
        sa.Column('record_key', sa.String(), nullable=False),
        sa.Column('target_table', sa.String(), nullable=True),
        sa.Column('dataset_id', sa.String(), nullable=True),
        sa.Column('table_id', sa.String(), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('tenant_id', 'data_model', 'record_key',
                            name='uq_warehouse_records_natural_key'),
    )


def downgrade() -> None:
    """Drop warehouse sync tables."""
    op.drop_table('warehouse_records')
    op.drop_table('warehouse_sync_watermarks')
    op.drop_table('sync_logs')
    op.drop_table('external_customers')
    op.drop_table('external_products')
    op.drop_table('channel_settlements')
    op.drop_table('external_order_items')
    op.drop_index('ix_external_orders_tenant_date', table_name='external_orders')
    op.drop_table('external_orders')
    op.drop_table('connector_integrations')
