"""TikTok Shop synchronization endpoints.

WHAT:
    Thin HTTP wrappers over the sync services:
    - POST /sync/{account_id}: sync one shop (selected resources)
    - GET  /cache-status/{account_id}: staleness flags
    - GET  /{orders|products|settlements}/synced/{account_id}: mirror reads
    - GET  /metrics/{account_id}: derived shop metrics
    - POST /sync/{account_id}/enqueue, GET /sync/jobs/{job_id}: ARQ hand-off
    - GET  /sync/cron: scheduled sweep over every shop

WHY:
    - Routers handle request parsing and error mapping only
    - Business logic is shared with the ARQ worker and the client coordinator

REFERENCES:
    - shopsync/services/sync_orchestrator.py
    - shopsync/services/cache_staleness.py
    - shopsync/services/finance_service.py
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from shopsync import schemas
from shopsync.database import SessionLocal, get_db
from shopsync.deps import get_tiktok_client, verify_cron_secret
from shopsync.models import TikTokShop
from shopsync.services.cache_staleness import cache_status_to_dict, evaluate_cache_status
from shopsync.services.finance_service import compute_shop_metrics
from shopsync.services.shop_store import ShopDataStore, ShopNotFoundError, SyncResource
from shopsync.services.sync_orchestrator import SyncOrchestrator, parse_resources, run_scheduled_sync
from shopsync.services.tiktok_shop_client import TikTokShopAPIError, TikTokShopClient
from shopsync.services.token_service import TokenRefreshError
from shopsync.workers.arq_enqueue import enqueue_shop_sync_job, get_job_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tiktok-shop", tags=["TikTok Shop Sync"])


def _resolve_shop(db: Session, account_id: UUID, shop_id: Optional[str]) -> TikTokShop:
    """Load the shop or raise 404."""
    try:
        return ShopDataStore(db).get_shop(account_id, shop_id)
    except ShopNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def get_session_factory():
    """Session factory for the sweep; overridden in tests."""
    return SessionLocal


# =============================================================================
# SYNC
# =============================================================================

@router.post("/sync/{account_id}", response_model=schemas.SyncResponse)
async def sync_shop(
    account_id: UUID,
    payload: Optional[schemas.SyncRequest] = None,
    db: Session = Depends(get_db),
    client: TikTokShopClient = Depends(get_tiktok_client),
):
    """Sync one shop's orders, products, settlements (or any subset).

    Errors in one resource are reported under `errors` and do not fail the
    others. A shop whose token cannot be refreshed returns 401.
    """
    payload = payload or schemas.SyncRequest()
    try:
        resources = parse_resources(payload.sync_type, payload.resources)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    shop = _resolve_shop(db, account_id, payload.shop_id)
    logger.info("[SHOP_SYNC] Sync requested for shop %s: %s", shop.shop_id, [r.value for r in resources])

    try:
        result = await SyncOrchestrator(db, client).sync(shop, resources)
    except TokenRefreshError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except TikTokShopAPIError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return schemas.SyncResponse(**result.to_dict())


@router.post("/sync/{account_id}/enqueue", response_model=schemas.SyncJobResponse)
async def enqueue_shop_sync(
    account_id: UUID,
    payload: Optional[schemas.SyncRequest] = None,
    db: Session = Depends(get_db),
):
    """Hand the sync to the ARQ worker (long first syncs)."""
    payload = payload or schemas.SyncRequest()
    try:
        resources = parse_resources(payload.sync_type, payload.resources)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    shop = _resolve_shop(db, account_id, payload.shop_id)
    try:
        job = await enqueue_shop_sync_job(account_id, shop.shop_id, [r.value for r in resources])
    except Exception as e:
        logger.warning("[SHOP_SYNC] Could not enqueue sync for shop %s: %s", shop.shop_id, e)
        raise HTTPException(status_code=503, detail="Sync queue unavailable")
    return schemas.SyncJobResponse(**job)


@router.get("/sync/jobs/{job_id}", response_model=schemas.SyncJobStatusResponse)
async def get_sync_job(job_id: str):
    try:
        status = await get_job_status(job_id)
    except Exception as e:
        logger.warning("[SHOP_SYNC] Could not read job %s: %s", job_id, e)
        raise HTTPException(status_code=503, detail="Sync queue unavailable")
    return schemas.SyncJobStatusResponse(**status)


@router.get("/sync/cron", response_model=schemas.ScheduledSyncResponse)
async def scheduled_sync(
    _: None = Depends(verify_cron_secret),
    client: TikTokShopClient = Depends(get_tiktok_client),
    session_factory=Depends(get_session_factory),
):
    """Sync every connected shop; individual failures are reported per shop."""
    results = await run_scheduled_sync(session_factory, client=client)
    return schemas.ScheduledSyncResponse(success=True, results=results)


# =============================================================================
# CACHE STATUS
# =============================================================================

@router.get("/cache-status/{account_id}", response_model=schemas.CacheStatusResponse)
def get_cache_status(
    account_id: UUID,
    shop_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    shop = _resolve_shop(db, account_id, shop_id)
    return cache_status_to_dict(evaluate_cache_status(shop.last_synced_map()))


# =============================================================================
# MIRROR READS
# =============================================================================

@router.get("/orders/synced/{account_id}", response_model=schemas.SyncedOrdersResponse)
def get_synced_orders(
    account_id: UUID,
    shop_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    shop = _resolve_shop(db, account_id, shop_id)
    rows = ShopDataStore(db).fetch_synced(shop, SyncResource.orders)
    return schemas.SyncedOrdersResponse(orders=[schemas.OrderOut.model_validate(r) for r in rows], count=len(rows))


@router.get("/products/synced/{account_id}", response_model=schemas.SyncedProductsResponse)
def get_synced_products(
    account_id: UUID,
    shop_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    shop = _resolve_shop(db, account_id, shop_id)
    rows = ShopDataStore(db).fetch_synced(shop, SyncResource.products)
    return schemas.SyncedProductsResponse(products=[schemas.ProductOut.model_validate(r) for r in rows], count=len(rows))


@router.get("/settlements/synced/{account_id}", response_model=schemas.SyncedSettlementsResponse)
def get_synced_settlements(
    account_id: UUID,
    shop_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    shop = _resolve_shop(db, account_id, shop_id)
    rows = ShopDataStore(db).fetch_synced(shop, SyncResource.settlements)
    return schemas.SyncedSettlementsResponse(
        settlements=[schemas.SettlementOut.model_validate(r) for r in rows], count=len(rows),
    )


# =============================================================================
# METRICS
# =============================================================================

@router.get("/metrics/{account_id}", response_model=schemas.ShopMetricsResponse)
def get_shop_metrics(
    account_id: UUID,
    shop_id: Optional[str] = Query(default=None),
    start_time: Optional[int] = Query(default=None, description="Unix seconds, inclusive"),
    end_time: Optional[int] = Query(default=None, description="Unix seconds, inclusive"),
    db: Session = Depends(get_db),
):
    """Order/product counts, revenue, net settled and estimated unsettled revenue."""
    shop = _resolve_shop(db, account_id, shop_id)
    store = ShopDataStore(db)
    metrics = compute_shop_metrics(
        store.fetch_synced(shop, SyncResource.orders),
        store.fetch_synced(shop, SyncResource.products),
        store.fetch_synced(shop, SyncResource.settlements),
        start_time=start_time,
        end_time=end_time,
    )
    return schemas.ShopMetricsResponse(account_id=account_id, shop_id=shop.shop_id, **metrics.to_dict())
