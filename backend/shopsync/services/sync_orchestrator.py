"""Sync orchestration for one shop, and the scheduled sweep over all shops.

WHAT:
    - SyncOrchestrator.sync(): decides first-sync vs incremental once, runs
      the requested synchronizers in a fixed order and aggregates their stats.
      A failing resource is recorded and the others still run.
    - run_scheduled_sync(): cron entry point. Syncs orders, products and
      settlements for every connected shop; shops run concurrently (bounded),
      each in its own DB session, and one shop failing never aborts the rest.

WHY:
    Both the HTTP API and the ARQ worker share this logic; routers stay thin.

REFERENCES:
    - services/resource_sync_service.py, services/product_sync_service.py
    - routers/shop_sync.py (POST /sync, GET /sync/cron)
    - workers/arq_worker.py (process_shop_sync_job, scheduled_shop_sync)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from shopsync.config import Settings, get_settings
from shopsync.models import TikTokShop
from shopsync.services.product_sync_service import PerformanceSynchronizer, ProductSynchronizer
from shopsync.services.resource_sync_service import (
    OrderSynchronizer,
    ResourceSynchronizer,
    SettlementSynchronizer,
    SyncStats,
)
from shopsync.services.shop_store import ShopDataStore, SyncResource
from shopsync.services.tiktok_shop_client import TikTokShopClient
from shopsync.services.token_service import TokenLifecycleManager, TokenRefreshError
from shopsync.telemetry import capture_exception, set_shop_context
from shopsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

RESOURCE_ORDER: List[SyncResource] = [
    SyncResource.orders,
    SyncResource.products,
    SyncResource.settlements,
    SyncResource.performance,
]

DEFAULT_RESOURCES = (SyncResource.orders, SyncResource.products, SyncResource.settlements)

SYNC_TYPE_ALIASES: Dict[str, Sequence[SyncResource]] = {
    "all": DEFAULT_RESOURCES,
    "finance": (SyncResource.settlements,),
}


def parse_resources(
    sync_type: Optional[str] = None,
    resources: Optional[Iterable[str]] = None,
) -> List[SyncResource]:
    """Resolve a sync_type or explicit resource list into ordered resources.

    Raises:
        ValueError: Unknown sync type / resource name
    """
    requested: List[SyncResource] = []
    names = list(resources) if resources else [sync_type or "all"]
    for name in names:
        key = (name or "").strip().lower()
        if key in SYNC_TYPE_ALIASES:
            requested.extend(SYNC_TYPE_ALIASES[key])
            continue
        try:
            requested.append(SyncResource(key))
        except ValueError:
            raise ValueError(f"Unknown sync type: {name}") from None
    return [resource for resource in RESOURCE_ORDER if resource in requested]


@dataclass
class OrchestrationResult:
    is_first_sync: bool
    stats: Dict[str, SyncStats] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "is_first_sync": self.is_first_sync,
            "stats": {name: stats.to_dict() for name, stats in self.stats.items()},
            "errors": dict(self.errors),
        }


class SyncOrchestrator:
    """Runs synchronizers for one shop over one DB session.

    Usage:
        orchestrator = SyncOrchestrator(db, TikTokShopClient())
        result = await orchestrator.sync(shop, [SyncResource.orders])
    """

    def __init__(
        self,
        db: Session,
        client: TikTokShopClient,
        settings: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = ShopDataStore(db)
        self.tokens = TokenLifecycleManager(db, client, now_fn=now_fn)
        wiring = dict(settings=self.settings, now_fn=now_fn)
        performance = PerformanceSynchronizer(self.store, self.tokens, client, **wiring)
        self.synchronizers: Dict[SyncResource, ResourceSynchronizer] = {
            SyncResource.orders: OrderSynchronizer(self.store, self.tokens, client, **wiring),
            SyncResource.products: ProductSynchronizer(
                self.store, self.tokens, client, performance=performance, **wiring
            ),
            SyncResource.settlements: SettlementSynchronizer(self.store, self.tokens, client, **wiring),
            SyncResource.performance: performance,
        }

    async def sync(self, shop: TikTokShop, resources: Iterable[SyncResource] = DEFAULT_RESOURCES) -> OrchestrationResult:
        """Run the requested resources sequentially.

        Raises:
            TokenRefreshError: The shop has no usable token (nothing ran)
        """
        requested = set(resources)
        ordered = [resource for resource in RESOURCE_ORDER if resource in requested]
        set_shop_context(shop.shop_id, str(shop.account_id))

        # Fail fast when the token can't be made valid; every resource would fail
        await self.tokens.ensure_valid_token(shop)

        is_first_sync = not self.store.has_orders(shop)
        result = OrchestrationResult(is_first_sync=is_first_sync)
        logger.info(
            "[SYNC_ORCHESTRATOR] Shop %s: resources=%s first_sync=%s",
            shop.shop_id, [r.value for r in ordered], is_first_sync,
        )

        for resource in ordered:
            try:
                result.stats[resource.value] = await self.synchronizers[resource].sync(shop, is_first_sync)
            except Exception as e:
                logger.exception("[SYNC_ORCHESTRATOR] %s failed for shop %s", resource.value, shop.shop_id)
                capture_exception(e, extra={"shop_id": shop.shop_id, "resource": resource.value})
                result.errors[resource.value] = str(e)

        logger.info(
            "[SYNC_ORCHESTRATOR] Shop %s finished: stats=%s errors=%s",
            shop.shop_id, {k: v.to_dict() for k, v in result.stats.items()}, list(result.errors),
        )
        return result


# =============================================================================
# SCHEDULED SWEEP
# =============================================================================

async def _sync_through_row(
    db: Session,
    client: TikTokShopClient,
    shop: TikTokShop,
    settings: Settings,
    now_fn: Callable[[], datetime],
) -> OrchestrationResult:
    orchestrator = SyncOrchestrator(db, client, settings=settings, now_fn=now_fn)
    if orchestrator.tokens.is_expired(shop):
        logger.info("[SYNC_SWEEP] Token expired for shop %s, refreshing first", shop.shop_id)
        await orchestrator.tokens.ensure_valid_token(shop, force_refresh=True)
    return await orchestrator.sync(shop, DEFAULT_RESOURCES)


async def _sync_one_shop(
    session_factory: Callable[[], Session],
    client: TikTokShopClient,
    row_ids: Sequence[Any],
    shop_id: str,
    settings: Settings,
    now_fn: Callable[[], datetime],
) -> Dict[str, Any]:
    """Sync one external shop through its first row with a usable token.

    Rows are tried oldest first; a row whose token cannot be refreshed hands
    over to the next alias. Upserts fan out to every alias either way.
    """
    db = session_factory()
    try:
        token_error: Optional[TokenRefreshError] = None
        for row_id in row_ids:
            shop = db.get(TikTokShop, row_id)
            if shop is None:
                continue
            try:
                result = await _sync_through_row(db, client, shop, settings, now_fn)
            except TokenRefreshError as e:
                logger.warning("[SYNC_SWEEP] Token unusable for shop %s row %s: %s", shop_id, row_id, e)
                token_error = e
                continue

            if result.errors:
                error = "; ".join(f"{name}: {message}" for name, message in result.errors.items())
                return {"shop_id": shop_id, "status": "failed", "error": error}
            return {"shop_id": shop_id, "status": "success"}

        if token_error is None:
            return {"shop_id": shop_id, "status": "failed", "error": "Shop no longer exists"}
        capture_exception(token_error, extra={"shop_id": shop_id, "source": "scheduled_sync"})
        return {"shop_id": shop_id, "status": "failed", "error": str(token_error)}

    except Exception as e:
        logger.exception("[SYNC_SWEEP] Shop %s failed", shop_id)
        capture_exception(e, extra={"shop_id": shop_id, "source": "scheduled_sync"})
        return {"shop_id": shop_id, "status": "failed", "error": str(e)}
    finally:
        db.close()


async def run_scheduled_sync(
    session_factory: Callable[[], Session],
    client: Optional[TikTokShopClient] = None,
    settings: Optional[Settings] = None,
    now_fn: Callable[[], datetime] = utcnow,
) -> List[Dict[str, Any]]:
    """Sync every connected shop; never raises for an individual shop.

    Rows aliasing the same external shop id are synced once, through the
    oldest row whose token is usable; upserts fan out to the others.

    Returns:
        [{"shop_id": ..., "status": "success" | "failed", "error"?: ...}, ...]
    """
    settings = settings or get_settings()
    client = client or TikTokShopClient()

    db = session_factory()
    try:
        targets: Dict[str, List[Any]] = {}
        for shop in ShopDataStore(db).list_shops():
            targets.setdefault(shop.shop_id, []).append(shop.id)
    finally:
        db.close()

    logger.info("[SYNC_SWEEP] Starting scheduled sync for %d shop(s)", len(targets))
    semaphore = asyncio.Semaphore(max(1, settings.SWEEP_MAX_CONCURRENT_SHOPS))

    async def bounded(shop_id: str, row_ids: List[Any]) -> Dict[str, Any]:
        async with semaphore:
            return await _sync_one_shop(session_factory, client, row_ids, shop_id, settings, now_fn)

    results = await asyncio.gather(*(bounded(shop_id, row_ids) for shop_id, row_ids in targets.items()))

    failed = sum(1 for r in results if r["status"] == "failed")
    logger.info("[SYNC_SWEEP] Completed: %d succeeded, %d failed", len(results) - failed, failed)
    return list(results)
