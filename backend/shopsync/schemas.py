"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


# Sync Schemas
# ---------------------------------------------------------------------

class SyncRequest(BaseModel):
    """Payload for POST /sync/{account_id}.

    WHAT: Which shop and which resources to sync
    WHY: `sync_type` mirrors the dashboard buttons; `resources` allows any subset
    """

    shop_id: Optional[str] = Field(
        default=None,
        description="External TikTok shop id (defaults to the account's first shop)",
    )
    sync_type: Optional[str] = Field(
        default=None,
        description="all | orders | products | settlements | finance | performance",
    )
    resources: Optional[List[str]] = Field(
        default=None,
        description="Explicit resource list; overrides sync_type",
    )

    @model_validator(mode="before")
    @classmethod
    def accept_camel_case(cls, data: Any) -> Any:
        # Older dashboard builds send shopId / syncType
        if isinstance(data, dict):
            data = dict(data)
            if "shopId" in data and "shop_id" not in data:
                data["shop_id"] = data.pop("shopId")
            if "syncType" in data and "sync_type" not in data:
                data["sync_type"] = data.pop("syncType")
        return data

    model_config = {
        "json_schema_extra": {
            "example": {"shop_id": "7495012345678901234", "sync_type": "all"}
        }
    }


class ResourceSyncStats(BaseModel):
    fetched: int = Field(description="New records fetched from TikTok")
    upserted: int = Field(description="Records written to the mirror")
    is_incremental: bool = Field(description="False for first syncs and full refreshes")


class SyncResponse(BaseModel):
    """Response from a sync run.

    WHAT: Per-resource stats plus per-resource errors
    WHY: One resource failing does not fail the others
    """

    success: bool
    is_first_sync: bool
    stats: Dict[str, ResourceSyncStats] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "is_first_sync": False,
                "stats": {
                    "orders": {"fetched": 12, "upserted": 12, "is_incremental": True},
                },
                "errors": {},
            }
        }
    }


class SyncJobResponse(BaseModel):
    job_id: Optional[str] = Field(description="ARQ job id (None when a duplicate was skipped)")
    status: str = Field(description="enqueued | skipped_or_duplicate")


class SyncJobStatusResponse(BaseModel):
    job_id: str
    status: str = Field(description="deferred | queued | in_progress | complete | not_found")
    result: Optional[Dict[str, Any]] = None


class ScheduledSyncResult(BaseModel):
    shop_id: str
    status: str = Field(description="success | failed")
    error: Optional[str] = None


class ScheduledSyncResponse(BaseModel):
    success: bool = True
    results: List[ScheduledSyncResult] = Field(default_factory=list)


# Cache Status Schemas
# ---------------------------------------------------------------------

class ResourceCacheStatus(BaseModel):
    last_synced_at: Optional[datetime] = None
    should_prompt: bool
    should_auto_sync: bool


class CacheStatusResponse(BaseModel):
    """Staleness flags for one shop.

    WHAT: Per-resource flags and the aggregates clients act on
    WHY: Aggregates cover orders/products/settlements only
    """

    resources: Dict[str, ResourceCacheStatus]
    should_prompt_user: bool
    should_auto_sync: bool


# Mirror Read Schemas
# ---------------------------------------------------------------------

class OrderOut(BaseModel):
    order_id: str
    status: Optional[str] = None
    create_time: int
    update_time: Optional[int] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    buyer_user_id: Optional[str] = None
    line_item_count: Optional[int] = None
    details: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class ProductOut(BaseModel):
    product_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    create_time: Optional[int] = None
    update_time: Optional[int] = None
    price: Optional[Decimal] = None
    currency: Optional[str] = None
    inventory: Optional[int] = None
    images: Optional[List[str]] = None
    ctr: Optional[float] = None
    gmv: Optional[Decimal] = None
    orders_count: Optional[int] = None
    units_sold: Optional[int] = None
    details: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class SettlementOut(BaseModel):
    settlement_id: str
    statement_time: int
    payment_status: Optional[str] = None
    revenue_amount: Optional[Decimal] = None
    settlement_amount: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    adjustment_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    model_config = {"from_attributes": True}


class SyncedOrdersResponse(BaseModel):
    orders: List[OrderOut]
    count: int


class SyncedProductsResponse(BaseModel):
    products: List[ProductOut]
    count: int


class SyncedSettlementsResponse(BaseModel):
    settlements: List[SettlementOut]
    count: int


class ShopMetricsResponse(BaseModel):
    """Derived shop metrics.

    WHAT: Order/product counts, revenue, net settled, AOV, unsettled estimate
    WHY: unsettled_revenue is a policy estimate (configurable factor)
    """

    account_id: UUID
    shop_id: str
    total_orders: int
    total_revenue: Decimal
    total_products: int
    total_net: Decimal
    avg_order_value: Decimal
    unsettled_revenue: Decimal


class HealthResponse(BaseModel):
    status: str = Field(description="Service status")
