"""
Warehouse channel registry

Where each marketplace channel's raw tables live in the warehouse and which
column identifies a row. These values are the only identifiers interpolated
into channel queries.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class ChannelConfig:
    name: str
    dataset: str
    orders_table: str
    order_id_field: str
    settlements_table: Optional[str] = None
    settlement_id_field: Optional[str] = None
    products_table: Optional[str] = None
    product_id_field: Optional[str] = None
    customers_table: Optional[str] = None
    customer_id_field: Optional[str] = None


CHANNELS: Dict[str, ChannelConfig] = {
    "shopee": ChannelConfig(
        name="shopee",
        dataset="menstaysimplicity_shopee",
        orders_table="shopee_Orders",
        order_id_field="order_sn",
        settlements_table="shopee_Settlements",
        settlement_id_field="settlement_id",
        products_table="shopee_Products",
        product_id_field="item_id",
        customers_table="shopee_Customers",
        customer_id_field="buyer_user_id",
    ),
    "lazada": ChannelConfig(
        name="lazada",
        dataset="menstaysimplicity_lazada",
        orders_table="lazada_Orders",
        order_id_field="orderNumber",
        settlements_table="lazada_Settlements",
        settlement_id_field="statement_number",
        products_table="lazada_Products",
        product_id_field="item_id",
        customers_table="lazada_Customers",
        customer_id_field="customer_id",
    ),
    "tiktok": ChannelConfig(
        name="tiktok",
        dataset="menstaysimplicity_tiktokshop",
        orders_table="tiktok_Orders",
        order_id_field="order_id",
        settlements_table="tiktok_Settlements",
        settlement_id_field="statement_id",
        products_table="tiktok_Products",
        product_id_field="product_id",
        customers_table="tiktok_Customers",
        customer_id_field="buyer_user_id",
    ),
    "tiki": ChannelConfig(
        name="tiki",
        dataset="menstaysimplicity_tiki",
        orders_table="tiki_Orders",
        order_id_field="order_code",
        products_table="tiki_Products",
        product_id_field="product_id",
    ),
    "sapo": ChannelConfig(
        name="sapo",
        dataset="menstaysimplicity_sapo",
        orders_table="sapo_Orders",
        order_id_field="id",
        products_table="sapo_Products",
        product_id_field="id",
        customers_table="sapo_Customers",
        customer_id_field="id",
    ),
    "shopify": ChannelConfig(
        name="shopify",
        dataset="menstaysimplicity_shopify",
        orders_table="shopify_Orders",
        order_id_field="id",
        products_table="shopify_Products",
        product_id_field="id",
        customers_table="shopify_Customers",
        customer_id_field="id",
    ),
}


def get_channel(name: Optional[str]) -> Optional[ChannelConfig]:
    """Case-insensitive lookup; None for unknown channels"""
    if not name:
        return None
    return CHANNELS.get(name.strip().lower())


def known_channels() -> Tuple[str, ...]:
    return tuple(CHANNELS)
