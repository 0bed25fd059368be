"""Response normalizers for TikTok Shop endpoints.

WHAT:
    One adapter per endpoint that maps the raw `data` object into canonical
    records (OrderRecord, ProductRecord, SettlementRecord, PerformanceRecord)
    wrapped in a RecordPage, plus TokenGrant for token refreshes.

WHY:
    TikTok nests results under different keys depending on endpoint version
    (`orders` vs `order_list`, `next_page_token` vs `next_cursor`, amounts as
    strings or numbers, expiry as absolute or relative seconds). Synchronizers
    only ever see the canonical shapes.

REFERENCES:
    - services/tiktok_shop_client.py (raw payloads)
    - services/resource_sync_service.py, services/product_sync_service.py (consumers)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from shopsync.utils.clock import from_epoch_seconds, utcnow

logger = logging.getLogger(__name__)

# Expiry values above this are absolute Unix timestamps, below are relative seconds
ABSOLUTE_EPOCH_THRESHOLD = 1_000_000_000

ORDER_LIST_KEYS = ("orders", "order_list")
PRODUCT_LIST_KEYS = ("products", "product_list")
STATEMENT_LIST_KEYS = ("statements", "statement_list")
PERFORMANCE_LIST_KEYS = ("shop_products", "products")
PAGE_TOKEN_KEYS = ("next_page_token", "next_cursor")


# =============================================================================
# CANONICAL RECORDS
# =============================================================================

@dataclass
class OrderRecord:
    order_id: str
    create_time: int
    update_time: Optional[int] = None
    status: Optional[str] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    buyer_user_id: Optional[str] = None
    line_item_count: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def natural_key(self) -> str:
        return self.order_id

    def to_columns(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "create_time": self.create_time,
            "update_time": self.update_time,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "buyer_user_id": self.buyer_user_id,
            "line_item_count": self.line_item_count,
            "details": self.raw,
        }


@dataclass
class ProductRecord:
    product_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    create_time: Optional[int] = None
    update_time: Optional[int] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    inventory: Optional[int] = None
    images: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def natural_key(self) -> str:
        return self.product_id

    def to_columns(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "title": self.title,
            "status": self.status,
            "create_time": self.create_time,
            "update_time": self.update_time,
            "price": self.price,
            "currency": self.currency,
            "inventory": self.inventory,
            "images": list(self.images),
            "details": self.raw,
        }


@dataclass
class SettlementRecord:
    settlement_id: str
    statement_time: int
    payment_status: Optional[str] = None
    revenue_amount: Optional[Decimal] = None
    settlement_amount: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    adjustment_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def natural_key(self) -> str:
        return self.settlement_id

    def to_columns(self) -> Dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "statement_time": self.statement_time,
            "payment_status": self.payment_status,
            "revenue_amount": self.revenue_amount,
            "settlement_amount": self.settlement_amount,
            "fee_amount": self.fee_amount,
            "adjustment_amount": self.adjustment_amount,
            "currency": self.currency,
            "details": self.raw,
        }


@dataclass
class PerformanceRecord:
    product_id: str
    ctr: Optional[float] = None
    gmv: Optional[Decimal] = None
    orders_count: Optional[int] = None
    units_sold: Optional[int] = None

    def to_columns(self) -> Dict[str, Any]:
        return {
            "ctr": self.ctr,
            "gmv": self.gmv,
            "orders_count": self.orders_count,
            "units_sold": self.units_sold,
        }


@dataclass
class RecordPage:
    """One upstream page in canonical form."""
    records: List[Any]
    next_page_token: Optional[str] = None
    total_count: Optional[int] = None


@dataclass
class TokenGrant:
    access_token: str
    access_token_expires_at: datetime
    refresh_token: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _first(data: Dict[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def _first_list(data: Any, keys: Iterable[str]) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if not isinstance(data, dict):
        return []
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            return value
    return []


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse TikTok amounts: "12.34", 12.34, or {"amount": "12.34", ...}."""
    if isinstance(value, dict):
        value = value.get("amount")
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.debug("[NORMALIZER] Unparseable amount %r", value)
        return None


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        text = str(value).strip()
        if text.endswith("%"):
            return float(text[:-1]) / 100
        return float(text)
    except (TypeError, ValueError):
        return None


def _currency(data: Dict[str, Any], *nested: str) -> Optional[str]:
    if data.get("currency"):
        return data["currency"]
    for key in nested:
        inner = data.get(key)
        if isinstance(inner, dict) and inner.get("currency"):
            return inner["currency"]
    return None


def _page(data: Any, records: List[Any]) -> RecordPage:
    token = None
    total = None
    if isinstance(data, dict):
        token = _first(data, PAGE_TOKEN_KEYS)
        total = _to_int(_first(data, ("total_count", "total")))
    return RecordPage(records=records, next_page_token=token or None, total_count=total)


def expiry_to_datetime(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Convert an expiry field to a naive UTC datetime.

    Values above ABSOLUTE_EPOCH_THRESHOLD are absolute Unix seconds; smaller
    values are seconds relative to `now`.
    """
    seconds = _to_int(value)
    if seconds is None:
        return None
    if seconds > ABSOLUTE_EPOCH_THRESHOLD:
        return from_epoch_seconds(seconds)
    return (now or utcnow()) + timedelta(seconds=seconds)


# =============================================================================
# ENDPOINT ADAPTERS
# =============================================================================

def normalize_order(raw: Dict[str, Any]) -> Optional[OrderRecord]:
    order_id = _first(raw, ("id", "order_id"))
    if not order_id:
        logger.warning("[NORMALIZER] Order without id skipped")
        return None

    payment = raw.get("payment") or raw.get("payment_info") or {}
    total = to_decimal(_first(payment, ("total_amount", "grand_total"))) if isinstance(payment, dict) else None
    if total is None:
        total = to_decimal(raw.get("total_amount"))

    line_items = raw.get("line_items") or raw.get("item_list")

    return OrderRecord(
        order_id=str(order_id),
        create_time=_to_int(_first(raw, ("create_time", "created_time"))) or 0,
        update_time=_to_int(_first(raw, ("update_time", "updated_time"))),
        status=_first(raw, ("status", "order_status")),
        total_amount=total,
        currency=_currency(raw, "payment", "payment_info"),
        buyer_user_id=_first(raw, ("user_id", "buyer_user_id")),
        line_item_count=len(line_items) if isinstance(line_items, list) else None,
        raw=raw,
    )


def normalize_orders_page(data: Any) -> RecordPage:
    records = [r for r in (normalize_order(o) for o in _first_list(data, ORDER_LIST_KEYS)) if r]
    return _page(data, records)


def extract_images(raw: Dict[str, Any]) -> List[str]:
    """Image URLs from main_images[].urls / thumb_urls, or a flat images list."""
    urls: List[str] = []
    for image in raw.get("main_images") or raw.get("images") or []:
        if isinstance(image, str):
            urls.append(image)
        elif isinstance(image, dict):
            candidates = image.get("urls") or image.get("thumb_urls") or []
            if candidates:
                urls.append(candidates[0])
            elif image.get("url"):
                urls.append(image["url"])
    return urls


def normalize_product(raw: Dict[str, Any]) -> Optional[ProductRecord]:
    product_id = _first(raw, ("id", "product_id"))
    if not product_id:
        logger.warning("[NORMALIZER] Product without id skipped")
        return None

    skus = raw.get("skus") or []
    main_sku = skus[0] if skus and isinstance(skus[0], dict) else {}
    price_info = main_sku.get("price") or {}
    price = to_decimal(_first(price_info, ("sale_price", "tax_exclusive_price", "original_price")))

    inventory = None
    for sku in skus:
        for stock in (sku.get("inventory") or sku.get("stock_infos") or []) if isinstance(sku, dict) else []:
            quantity = _to_int(_first(stock, ("quantity", "available_stock")))
            if quantity is not None:
                inventory = (inventory or 0) + quantity

    return ProductRecord(
        product_id=str(product_id),
        title=_first(raw, ("title", "product_name", "name")),
        status=_first(raw, ("status", "product_status")),
        create_time=_to_int(raw.get("create_time")),
        update_time=_to_int(raw.get("update_time")),
        price=price,
        currency=price_info.get("currency") if isinstance(price_info, dict) else None,
        inventory=inventory,
        images=extract_images(raw),
        raw=raw,
    )


def normalize_products_page(data: Any) -> RecordPage:
    records = [r for r in (normalize_product(p) for p in _first_list(data, PRODUCT_LIST_KEYS)) if r]
    return _page(data, records)


def normalize_settlement(raw: Dict[str, Any]) -> Optional[SettlementRecord]:
    settlement_id = _first(raw, ("id", "statement_id", "settlement_id"))
    if not settlement_id:
        logger.warning("[NORMALIZER] Statement without id skipped")
        return None

    return SettlementRecord(
        settlement_id=str(settlement_id),
        statement_time=_to_int(_first(raw, ("statement_time", "settlement_time", "create_time"))) or 0,
        payment_status=_first(raw, ("payment_status", "status")),
        revenue_amount=to_decimal(raw.get("revenue_amount")),
        settlement_amount=to_decimal(_first(raw, ("settlement_amount", "net_amount"))),
        fee_amount=to_decimal(raw.get("fee_amount")),
        adjustment_amount=to_decimal(raw.get("adjustment_amount")),
        currency=raw.get("currency"),
        raw=raw,
    )


def normalize_statements_page(data: Any) -> RecordPage:
    records = [r for r in (normalize_settlement(s) for s in _first_list(data, STATEMENT_LIST_KEYS)) if r]
    return _page(data, records)


def normalize_performance(raw: Dict[str, Any]) -> Optional[PerformanceRecord]:
    product_id = _first(raw, ("id", "product_id"))
    if not product_id:
        return None

    # Metrics live either at the top level or under performance.intervals[0]
    metrics = raw
    performance = raw.get("performance")
    if isinstance(performance, dict):
        intervals = performance.get("intervals") or []
        metrics = intervals[0] if intervals else performance

    return PerformanceRecord(
        product_id=str(product_id),
        ctr=_to_float(_first(metrics, ("click_through_rate", "ctr"))),
        gmv=to_decimal(metrics.get("gmv")),
        orders_count=_to_int(_first(metrics, ("orders", "order_count", "sku_orders"))),
        units_sold=_to_int(_first(metrics, ("units_sold", "unit_sold"))),
    )


def normalize_performance_page(data: Any) -> RecordPage:
    records = [r for r in (normalize_performance(p) for p in _first_list(data, PERFORMANCE_LIST_KEYS)) if r]
    return _page(data, records)


def normalize_token_grant(data: Dict[str, Any], now: Optional[datetime] = None) -> TokenGrant:
    """Token refresh payload -> TokenGrant with absolute expiries."""
    now = now or utcnow()
    access_token = data.get("access_token")
    if not access_token:
        raise ValueError("Token refresh response did not include an access_token")

    access_expires_at = expiry_to_datetime(data.get("access_token_expire_in"), now)
    return TokenGrant(
        access_token=access_token,
        access_token_expires_at=access_expires_at or now,
        refresh_token=data.get("refresh_token"),
        refresh_token_expires_at=expiry_to_datetime(data.get("refresh_token_expire_in"), now),
    )
