"""
Canonical e-commerce models

Vendor-agnostic shapes for orders, order items, settlements, products and
customers loaded from the warehouse. Every table is upserted on its natural
key, so reprocessing a source row never creates a duplicate.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, JSON, Text, UniqueConstraint, Index

from app.models.base import Base
from app.utils.helpers import utcnow


class ExternalOrder(Base):
    """
    Orders from marketplace channels (Shopee, Lazada, TikTok Shop, Tiki, ...)

    Amounts are in the channel's currency. Derived fields (total_fees,
    net_revenue, gross_profit, net_profit) are computed at mapping time and
    are never null.
    """
    __tablename__ = "external_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "external_order_id", name="uq_external_orders_natural_key"),
        Index("ix_external_orders_tenant_date", "tenant_id", "order_date"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=False)
    channel = Column(String, index=True, nullable=False)

    external_order_id = Column(String, index=True, nullable=False)
    order_number = Column(String, nullable=True)
    order_date = Column(DateTime(timezone=True), index=True)
    status = Column(String, index=True)  # pending, confirmed, processing, shipping, delivered, cancelled, returned

    # Customer
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)

    # Amounts
    total_amount = Column(Float, default=0)
    subtotal = Column(Float, default=0)
    shipping_fee = Column(Float, default=0)
    shipping_fee_discount = Column(Float, default=0)
    voucher_discount = Column(Float, default=0)
    seller_income = Column(Float, default=0)

    # Fee breakdown
    platform_fee = Column(Float, default=0)
    commission_fee = Column(Float, default=0)
    payment_fee = Column(Float, default=0)
    service_fee = Column(Float, default=0)

    # Derived
    total_fees = Column(Float, default=0)
    net_revenue = Column(Float, default=0)
    total_cogs = Column(Float, default=0)
    gross_profit = Column(Float, default=0)
    net_profit = Column(Float, default=0)

    # Payment
    payment_method = Column(String, nullable=True)
    payment_status = Column(String, nullable=True)

    # Line items (normalized copy lives in external_order_items)
    item_count = Column(Integer, default=0)
    items = Column(JSON, nullable=True)
    shipping_address = Column(JSON, nullable=True)

    # Lifecycle
    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)

    # Provenance
    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)


class ExternalOrderItem(Base):
    """
    Order line items parsed from the order's embedded items field

    margin is left null here; it is computed by downstream profitability jobs.
    """
    __tablename__ = "external_order_items"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_order_id", "item_id", name="uq_external_order_items_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=False)
    channel = Column(String, index=True, nullable=False)
    external_order_id = Column(String, index=True, nullable=False)
    item_id = Column(String, nullable=False)

    sku = Column(String, index=True, nullable=True)
    product_name = Column(String, nullable=True)

    quantity = Column(Integer, default=0)
    unit_price = Column(Float, default=0)
    discount_amount = Column(Float, default=0)
    total_amount = Column(Float, default=0)
    unit_cogs = Column(Float, default=0)
    total_cogs = Column(Float, default=0)
    margin = Column(Float, nullable=True)

    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)


class ChannelSettlement(Base):
    """Marketplace payouts / settlement statements"""
    __tablename__ = "channel_settlements"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "settlement_id", name="uq_channel_settlements_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=False)
    channel = Column(String, index=True, nullable=False)
    settlement_id = Column(String, nullable=False)
    settlement_number = Column(String, nullable=True)

    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    payout_date = Column(DateTime(timezone=True), nullable=True)

    gross_sales = Column(Float, default=0)
    total_fees = Column(Float, default=0)
    total_refunds = Column(Float, default=0)
    net_amount = Column(Float, default=0)
    total_orders = Column(Integer, default=0)
    status = Column(String, index=True)  # completed, pending

    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)


class ExternalProduct(Base):
    """Channel product catalog"""
    __tablename__ = "external_products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "external_product_id", name="uq_external_products_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=False)
    channel = Column(String, index=True, nullable=False)
    external_product_id = Column(String, nullable=False)

    sku = Column(String, index=True, nullable=True)
    name = Column(String, nullable=True)
    category = Column(String, nullable=True)
    brand = Column(String, nullable=True)

    cost_price = Column(Float, default=0)
    selling_price = Column(Float, default=0)
    stock_quantity = Column(Integer, default=0)
    status = Column(String, index=True)  # active, inactive

    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)


class ExternalCustomer(Base):
    """Channel buyers"""
    __tablename__ = "external_customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "integration_id", "external_customer_id", name="uq_external_customers_natural_key"),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    integration_id = Column(String, index=True, nullable=False)
    channel = Column(String, index=True, nullable=False)
    external_customer_id = Column(String, nullable=False)

    name = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    phone = Column(String, index=True, nullable=True)

    total_orders = Column(Integer, default=0)
    total_spent = Column(Float, default=0)
    first_order_date = Column(DateTime(timezone=True), nullable=True)
    last_order_date = Column(DateTime(timezone=True), nullable=True)

    raw_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)
