"""
Record Mapper
Transforms raw warehouse rows from heterogeneous marketplace schemas into the
canonical order / item / settlement / product / customer shapes.

Each canonical field is resolved from an ordered alias list (first present,
non-blank value wins; 0 is a value). Channel-specific aliases are tried before
the shared ones. Nothing in here raises on bad data: numbers fall back to 0,
timestamps and text to None, embedded JSON to an empty list.
"""
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from app.utils.helpers import utcnow


# ────────────────────────────────────────────
# ALIAS TABLES
# ────────────────────────────────────────────

ORDER_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "external_order_id": ("order_id", "orderId", "order_sn", "orderNumber", "order_number", "order_code", "code"),
    "order_number": ("order_number", "orderNumber", "order_sn", "order_id", "orderId", "order_code", "code"),
    "order_date": ("create_time", "createTime", "created_at", "order_date", "created_time"),
    "status": ("order_status", "orderStatus", "status", "statuses"),
    "customer_name": ("buyer_username", "buyerUsername", "customer_name", "recipient_name",
                      "customer_first_name", "billing_full_name"),
    "customer_phone": ("recipient_phone", "buyerPhone", "recipient_address_phone", "customer_phone"),
    "total_amount": ("total_amount", "totalAmount", "total_paid_amount", "paid_amount", "grand_total",
                     "total_price"),
    "subtotal": ("subtotal", "items_total", "product_subtotal", "subtotal_price"),
    "shipping_fee": ("shipping_fee", "shippingFee", "buyer_paid_shipping_fee"),
    "shipping_fee_discount": ("shipping_fee_discount", "seller_discount", "shipping_discount"),
    "platform_fee": ("platform_fee", "transaction_fee"),
    "commission_fee": ("commission_fee", "commission"),
    "payment_fee": ("payment_fee", "payment_processing_fee"),
    "service_fee": ("service_fee",),
    "voucher_discount": ("voucher_discount", "voucher_seller", "voucher_platform"),
    "seller_income": ("seller_income", "escrow_amount", "settlement_amount"),
    "payment_method": ("payment_method", "paymentMethod", "payment_method_name"),
    "payment_status": ("payment_status", "paymentStatus", "financial_status"),
    "item_count": ("item_count", "itemCount", "items_count"),
    "items": ("items", "order_items", "item_list", "line_items"),
    "shipping_address": ("shipping_address", "recipient_address", "address_shipping"),
    "paid_at": ("pay_time", "payTime", "paid_at"),
    "shipped_at": ("ship_time", "shipTime", "shipped_at"),
    "delivered_at": ("complete_time", "completeTime", "delivered_at"),
    "cancelled_at": ("cancel_time", "cancelTime", "cancelled_at"),
    "cancel_reason": ("cancel_reason", "cancelReason"),
}

ITEM_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "item_id": ("item_id", "itemId", "order_item_id", "line_item_id", "id", "sku_id", "model_id"),
    "sku": ("sku", "item_sku", "model_sku", "seller_sku", "sku_code", "product_code"),
    "product_name": ("item_name", "product_name", "name", "title"),
    "quantity": ("quantity", "qty", "model_quantity_purchased", "quantity_purchased"),
    "unit_price": ("price", "unit_price", "item_price", "model_discounted_price", "sale_price",
                   "original_price", "model_original_price"),
    "discount_amount": ("discount_amount", "discount", "voucher_amount", "platform_discount", "seller_discount"),
    "total_amount": ("total_amount", "total", "paid_price", "line_total"),
    "unit_cogs": ("cost_price", "unit_cost", "cogs", "cost"),
}

SETTLEMENT_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "settlement_id": ("settlement_id", "statement_id", "statement_number", "transaction_id", "payout_id", "id"),
    "settlement_number": ("settlement_number", "statement_number", "transaction_id", "settlement_id"),
    "period_start": ("period_start", "settlement_date", "statement_time", "start_time", "create_time"),
    "period_end": ("period_end", "end_time", "settlement_date", "statement_time", "create_time"),
    "payout_date": ("payout_date", "payout_time", "paid_time", "paid_at"),
    "gross_sales": ("gross_sales", "revenue_amount", "sales_amount", "amount", "total_amount"),
    "total_fees": ("total_fees", "fee_amount", "fees", "total_fee"),
    "total_refunds": ("total_refunds", "refund_amount", "refunds"),
    "net_amount": ("net_amount", "settlement_amount", "payout_amount", "current_balance", "net_sales"),
    "total_orders": ("total_orders", "order_count", "orders_count"),
    "status": ("status", "payout_status", "statement_status"),
}

PRODUCT_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "external_product_id": ("product_id", "item_id", "ItemId", "id", "sku_id"),
    "sku": ("sku", "item_sku", "seller_sku", "ItemCode", "model_sku", "Barcode", "barcode"),
    "name": ("name", "item_name", "product_name", "title", "ItemName"),
    "category": ("category", "category_name", "CategoryName", "product_type", "category_id"),
    "brand": ("brand", "brand_name", "TradeMark", "vendor"),
    "cost_price": ("cost_price", "AvgCostPrice", "cost", "unit_cost"),
    "selling_price": ("selling_price", "price", "current_price", "SellPrice", "sale_price", "BasePrice"),
    "stock_quantity": ("stock_quantity", "stock", "current_stock", "available_stock", "inventory_quantity",
                       "quantity"),
    "status": ("status", "item_status", "product_status"),
}

CUSTOMER_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "external_customer_id": ("customer_id", "buyer_user_id", "user_id", "CusId", "id"),
    "name": ("name", "customer_name", "buyer_username", "full_name", "Name"),
    "first_name": ("first_name", "First_name"),
    "last_name": ("last_name", "Last_name"),
    "email": ("email", "Email", "customer_email"),
    "phone": ("phone", "phone_number", "Phone", "ContactNumber", "PhoneFormat", "recipient_phone"),
    "total_orders": ("total_orders", "orders_count", "order_count", "Orders_count"),
    "total_spent": ("total_spent", "lifetime_value", "Total_spent", "TotalRevenue"),
    "first_order_date": ("first_order_date", "first_order_at", "created_at", "CreatedDate"),
    "last_order_date": ("last_order_date", "last_order_at"),
}

FIELD_ALIASES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "order": ORDER_FIELD_ALIASES,
    "item": ITEM_FIELD_ALIASES,
    "settlement": SETTLEMENT_FIELD_ALIASES,
    "product": PRODUCT_FIELD_ALIASES,
    "customer": CUSTOMER_FIELD_ALIASES,
}

# Tried before the shared aliases for that channel
CHANNEL_FIELD_ALIASES: Dict[str, Dict[str, Dict[str, Tuple[str, ...]]]] = {
    "shopee": {
        "order": {
            "external_order_id": ("order_sn",),
            "customer_phone": ("recipient_address_phone",),
        },
        "settlement": {"net_amount": ("escrow_amount",)},
    },
    "lazada": {
        "order": {
            "external_order_id": ("orderNumber", "order_number"),
            "status": ("statuses",),
            "total_amount": ("price",),
        },
    },
    "tiktok": {
        "order": {"total_amount": ("payment_total_amount",)},
        "item": {"unit_price": ("sale_price",)},
    },
    "tiki": {
        "order": {"external_order_id": ("order_code", "code")},
    },
}

# Canonical field holding each entity's natural id
NATURAL_ID_FIELDS: Dict[str, str] = {
    "order": "external_order_id",
    "item": "item_id",
    "settlement": "settlement_id",
    "product": "external_product_id",
    "customer": "external_customer_id",
}

# Text that is an epoch (seconds or ms) rather than a compact date like 20240315
_EPOCH_TEXT = re.compile(r"^(\d{9,}(\.\d+)?|\d+(\.\d+)?[eE][+]?\d+)$")

_INT64_LIMIT = 2 ** 63

# Variant columns that qualify a shared item / product id (Shopee model_id, ...)
VARIANT_ID_FIELDS = ("model_id", "modelId", "sku_id", "skuId", "variation_id")

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipping", "delivered", "cancelled", "returned")

# Checked top to bottom; the first rule with a matching keyword wins.
STATUS_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("delivered", ("complete", "delivered", "finish")),
    ("cancelled", ("cancel",)),
    ("returned", ("return", "refund")),
    ("shipping", ("ship", "transit", "delivery")),
    ("processing", ("process", "ready")),
    ("confirmed", ("confirm", "paid", "pay")),
    ("pending", ("pending", "unpaid")),
)


@dataclass(frozen=True)
class MappingContext:
    channel: str
    integration_id: str
    tenant_id: str
    id_field: Optional[str] = None  # registry id column, tried first for the natural id


@dataclass(frozen=True)
class ParsedField:
    """Result of normalizing a 'JSON text or already parsed' field"""
    state: str  # absent, parsed, invalid
    value: Any = None
    raw: Any = None

    @property
    def ok(self) -> bool:
        return self.state == "parsed"


@dataclass
class MappedOrder:
    order: Dict[str, Any]
    items: List[Dict[str, Any]] = field(default_factory=list)


# ────────────────────────────────────────────
# PRIMITIVES
# ────────────────────────────────────────────

def field_aliases(entity: str, canonical_field: str, ctx: Optional[MappingContext] = None) -> Tuple[str, ...]:
    """Ordered alias list: registry id column, channel aliases, shared aliases"""
    ordered: List[str] = []
    if ctx is not None:
        if ctx.id_field and canonical_field == NATURAL_ID_FIELDS.get(entity):
            ordered.append(ctx.id_field)
        channel_aliases = CHANNEL_FIELD_ALIASES.get((ctx.channel or "").lower(), {}).get(entity, {})
        ordered.extend(channel_aliases.get(canonical_field, ()))
    ordered.extend(FIELD_ALIASES[entity].get(canonical_field, ()))
    return tuple(dict.fromkeys(ordered))


def coalesce(row: Dict[str, Any], aliases: Sequence[str]) -> Any:
    """First alias whose value is present and not null/blank"""
    for alias in aliases:
        value = row.get(alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def to_int(value: Any, default: int = 0) -> int:
    result = to_float(value, float(default))
    # stored in 64-bit INTEGER columns
    if abs(result) >= _INT64_LIMIT:
        return default
    return int(result)


def to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = next((v for v in value if v not in (None, "")), None)
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO text, epoch seconds or epoch milliseconds -> aware UTC datetime"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    numeric = None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _EPOCH_TEXT.match(text):
            numeric = float(text)
    else:
        return None

    if numeric is not None:
        if not math.isfinite(numeric) or numeric <= 0:
            return None
        if numeric > 1e11:
            numeric /= 1000.0
        try:
            return datetime.fromtimestamp(numeric, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError, TypeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_json_field(value: Any) -> ParsedField:
    """Normalize a field that may be JSON text, an already-parsed value, or missing."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return ParsedField("absent")
    if isinstance(value, (list, dict)):
        return ParsedField("parsed", value, value)
    if isinstance(value, (str, bytes, bytearray)):
        try:
            return ParsedField("parsed", json.loads(value), value)
        except (TypeError, ValueError):
            return ParsedField("invalid", None, value)
    return ParsedField("invalid", None, value)


def normalize_order_status(status: Any) -> str:
    """Map any vendor status text onto one of ORDER_STATUSES. Never raises."""
    text = to_text(status)
    if not text:
        return "pending"

    lowered = text.lower()
    for canonical, keywords in STATUS_RULES:
        if any(keyword in lowered for keyword in keywords):
            return canonical
    return "pending"


def _item_list(parsed: ParsedField) -> List[Dict[str, Any]]:
    if not parsed.ok:
        return []
    value = parsed.value
    if isinstance(value, dict):
        value = value.get("items") or value.get("item_list") or []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _with_variant(base_id: Optional[str], row: Dict[str, Any]) -> Optional[str]:
    """item_id + variant id, so variants of one listing get distinct keys"""
    if not base_id:
        return base_id
    variant = to_text(coalesce(row, VARIANT_ID_FIELDS))
    if variant and variant != base_id:
        return f"{base_id}_{variant}"
    return base_id


def _unique_line_ids(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Lines still sharing an id (same listing twice) are suffixed with their position"""
    counts: Dict[str, int] = {}
    for item in items:
        counts[item["item_id"]] = counts.get(item["item_id"], 0) + 1
    for position, item in enumerate(items):
        if counts[item["item_id"]] > 1:
            item["item_id"] = f"{item['item_id']}_{position}"
    return items


def _address(parsed: ParsedField) -> Optional[Dict[str, Any]]:
    if parsed.state == "absent":
        return None
    if parsed.ok and isinstance(parsed.value, dict):
        return parsed.value
    return {"raw": parsed.raw if parsed.ok is False else parsed.value}


# ────────────────────────────────────────────
# ENTITY MAPPERS
# ────────────────────────────────────────────

def map_order_item(item: Dict[str, Any], external_order_id: str, position: int,
                   ctx: MappingContext, synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    """One embedded line item -> external_order_items record"""
    def pick(name):
        return coalesce(item, field_aliases("item", name, ctx))

    sku = to_text(pick("sku"))
    quantity = to_int(pick("quantity"))
    unit_price = to_float(pick("unit_price"))
    unit_cogs = to_float(pick("unit_cogs"))
    explicit_total = pick("total_amount")
    total_amount = to_float(explicit_total) if explicit_total is not None else unit_price * quantity
    total_cogs = unit_cogs * quantity

    return {
        "tenant_id": ctx.tenant_id,
        "integration_id": ctx.integration_id,
        "channel": ctx.channel.lower(),
        "external_order_id": external_order_id,
        "item_id": _with_variant(to_text(pick("item_id")), item) or sku or f"line-{position}",
        "sku": sku,
        "product_name": to_text(pick("product_name")),
        "quantity": quantity,
        "unit_price": unit_price,
        "discount_amount": to_float(pick("discount_amount")),
        "total_amount": total_amount,
        "unit_cogs": unit_cogs,
        "total_cogs": total_cogs,
        "margin": None,
        "raw_data": item,
        "last_synced_at": synced_at or utcnow(),
    }


def map_order(row: Dict[str, Any], ctx: MappingContext, synced_at: Optional[datetime] = None) -> MappedOrder:
    """
    Raw order row -> external_orders record plus its parsed line items.

    Derived fields:
        total_fees   = platform_fee + commission_fee + payment_fee + service_fee
        net_revenue  = seller_income if seller_income > 0 else total_amount - total_fees
        total_cogs   = sum of item total_cogs
        gross_profit = net_revenue - total_cogs
        net_profit   = gross_profit - shipping_fee + shipping_fee_discount
    """
    synced_at = synced_at or utcnow()

    def pick(name):
        return coalesce(row, field_aliases("order", name, ctx))

    external_order_id = to_text(pick("external_order_id"))

    parsed_items = parse_json_field(pick("items"))
    raw_items = _item_list(parsed_items)
    items = _unique_line_ids([
        map_order_item(item, external_order_id, position, ctx, synced_at)
        for position, item in enumerate(raw_items)
    ]) if external_order_id else []

    total_amount = to_float(pick("total_amount"))
    shipping_fee = to_float(pick("shipping_fee"))
    shipping_fee_discount = to_float(pick("shipping_fee_discount"))
    platform_fee = to_float(pick("platform_fee"))
    commission_fee = to_float(pick("commission_fee"))
    payment_fee = to_float(pick("payment_fee"))
    service_fee = to_float(pick("service_fee"))
    seller_income = to_float(pick("seller_income"))

    total_fees = platform_fee + commission_fee + payment_fee + service_fee
    net_revenue = seller_income if seller_income > 0 else total_amount - total_fees
    total_cogs = sum(item["total_cogs"] for item in items)
    gross_profit = net_revenue - total_cogs
    net_profit = gross_profit - shipping_fee + shipping_fee_discount

    item_count_value = pick("item_count")

    order = {
        "tenant_id": ctx.tenant_id,
        "integration_id": ctx.integration_id,
        "channel": ctx.channel.lower(),
        "external_order_id": external_order_id,
        "order_number": to_text(pick("order_number")) or external_order_id,
        "order_date": parse_timestamp(pick("order_date")) or synced_at,
        "status": normalize_order_status(pick("status")),
        "customer_name": to_text(pick("customer_name")),
        "customer_phone": to_text(pick("customer_phone")),
        "total_amount": total_amount,
        "subtotal": to_float(pick("subtotal")),
        "shipping_fee": shipping_fee,
        "shipping_fee_discount": shipping_fee_discount,
        "voucher_discount": to_float(pick("voucher_discount")),
        "seller_income": seller_income,
        "platform_fee": platform_fee,
        "commission_fee": commission_fee,
        "payment_fee": payment_fee,
        "service_fee": service_fee,
        "total_fees": total_fees,
        "net_revenue": net_revenue,
        "total_cogs": total_cogs,
        "gross_profit": gross_profit,
        "net_profit": net_profit,
        "payment_method": to_text(pick("payment_method")),
        "payment_status": to_text(pick("payment_status")),
        "item_count": to_int(item_count_value) if item_count_value is not None else len(raw_items),
        "items": raw_items,
        "shipping_address": _address(parse_json_field(pick("shipping_address"))),
        "paid_at": parse_timestamp(pick("paid_at")),
        "shipped_at": parse_timestamp(pick("shipped_at")),
        "delivered_at": parse_timestamp(pick("delivered_at")),
        "cancelled_at": parse_timestamp(pick("cancelled_at")),
        "cancel_reason": to_text(pick("cancel_reason")),
        "raw_data": row,
        "last_synced_at": synced_at,
    }
    return MappedOrder(order=order, items=items)


def _settlement_status(value: Any) -> str:
    text = (to_text(value) or "").lower()
    if any(keyword in text for keyword in ("complete", "paid", "settled", "success")):
        return "completed"
    return "pending"


def map_settlement(row: Dict[str, Any], ctx: MappingContext, synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    def pick(name):
        return coalesce(row, field_aliases("settlement", name, ctx))

    settlement_id = to_text(pick("settlement_id"))
    return {
        "tenant_id": ctx.tenant_id,
        "integration_id": ctx.integration_id,
        "channel": ctx.channel.lower(),
        "settlement_id": settlement_id,
        "settlement_number": to_text(pick("settlement_number")) or settlement_id,
        "period_start": parse_timestamp(pick("period_start")),
        "period_end": parse_timestamp(pick("period_end")),
        "payout_date": parse_timestamp(pick("payout_date")),
        "gross_sales": abs(to_float(pick("gross_sales"))),
        "total_fees": to_float(pick("total_fees")),
        "total_refunds": to_float(pick("total_refunds")),
        "net_amount": to_float(pick("net_amount")),
        "total_orders": to_int(pick("total_orders")),
        "status": _settlement_status(pick("status")),
        "raw_data": row,
        "last_synced_at": synced_at or utcnow(),
    }


def _product_status(value: Any) -> str:
    text = to_text(value)
    if text is None:
        return "active"
    return "active" if text.lower() in ("active", "normal", "live", "activate", "1", "true") else "inactive"


def map_product(row: Dict[str, Any], ctx: MappingContext, synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    def pick(name):
        return coalesce(row, field_aliases("product", name, ctx))

    return {
        "tenant_id": ctx.tenant_id,
        "integration_id": ctx.integration_id,
        "channel": ctx.channel.lower(),
        "external_product_id": _with_variant(to_text(pick("external_product_id")), row),
        "sku": to_text(pick("sku")),
        "name": to_text(pick("name")),
        "category": to_text(pick("category")),
        "brand": to_text(pick("brand")),
        "cost_price": to_float(pick("cost_price")),
        "selling_price": to_float(pick("selling_price")),
        "stock_quantity": to_int(pick("stock_quantity")),
        "status": _product_status(pick("status")),
        "raw_data": row,
        "last_synced_at": synced_at or utcnow(),
    }


def map_customer(row: Dict[str, Any], ctx: MappingContext, synced_at: Optional[datetime] = None) -> Dict[str, Any]:
    def pick(name):
        return coalesce(row, field_aliases("customer", name, ctx))

    name = to_text(pick("name"))
    if name is None:
        parts = [to_text(pick("first_name")), to_text(pick("last_name"))]
        name = " ".join(p for p in parts if p) or None

    email = to_text(pick("email"))
    return {
        "tenant_id": ctx.tenant_id,
        "integration_id": ctx.integration_id,
        "channel": ctx.channel.lower(),
        "external_customer_id": to_text(pick("external_customer_id")),
        "name": name,
        "email": email.lower() if email else None,
        "phone": to_text(pick("phone")),
        "total_orders": to_int(pick("total_orders")),
        "total_spent": to_float(pick("total_spent")),
        "first_order_date": parse_timestamp(pick("first_order_date")),
        "last_order_date": parse_timestamp(pick("last_order_date")),
        "raw_data": row,
        "last_synced_at": synced_at or utcnow(),
    }


ENTITY_MAPPERS = {
    "settlement": map_settlement,
    "product": map_product,
    "customer": map_customer,
}
