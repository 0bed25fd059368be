"""Backends for the client sync coordinator.

WHAT:
    - LocalSyncBackend: in-process; reads the mirror through ShopDataStore and
      syncs through SyncOrchestrator, one DB session per call.
    - HttpSyncBackend: talks to the HTTP API (routers/shop_sync.py) with httpx.

WHY:
    Both produce the same wire shapes, so the coordinator's policy is tested
    in-process and used unchanged by remote clients.

REFERENCES:
    - services/client_sync_coordinator.py (SyncBackend contract)
    - routers/shop_sync.py (HTTP endpoints)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from shopsync import schemas
from shopsync.services.cache_staleness import cache_status_to_dict, evaluate_cache_status
from shopsync.services.client_sync_coordinator import ShopSnapshot, SyncBackend
from shopsync.services.shop_store import ShopDataStore, SyncResource
from shopsync.services.sync_orchestrator import SyncOrchestrator, parse_resources
from shopsync.services.tiktok_shop_client import TikTokShopClient

logger = logging.getLogger(__name__)

API_PREFIX = "/api/tiktok-shop"


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def serialize_rows(rows, schema) -> list:
    return [schema.model_validate(row).model_dump(mode="json") for row in rows]


class LocalSyncBackend(SyncBackend):
    """In-process backend over a session factory."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[], TikTokShopClient] = TikTokShopClient,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory

    async def get_cache_status(self, account_id, shop_id) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            shop = ShopDataStore(db).get_shop(_as_uuid(account_id), shop_id)
            return cache_status_to_dict(evaluate_cache_status(shop.last_synced_map()))
        finally:
            db.close()

    async def load_snapshot(self, account_id, shop_id) -> ShopSnapshot:
        db = self.session_factory()
        try:
            store = ShopDataStore(db)
            shop = store.get_shop(_as_uuid(account_id), shop_id)
            return ShopSnapshot(
                products=serialize_rows(store.fetch_synced(shop, SyncResource.products), schemas.ProductOut),
                orders=serialize_rows(store.fetch_synced(shop, SyncResource.orders), schemas.OrderOut),
                statements=serialize_rows(store.fetch_synced(shop, SyncResource.settlements), schemas.SettlementOut),
            )
        finally:
            db.close()

    async def sync(self, account_id, shop_id, sync_type) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            shop = ShopDataStore(db).get_shop(_as_uuid(account_id), shop_id)
            orchestrator = SyncOrchestrator(db, self.client_factory())
            result = await orchestrator.sync(shop, parse_resources(sync_type))
            return result.to_dict()
        finally:
            db.close()


class HttpSyncBackend(SyncBackend):
    """Backend over the HTTP API.

    Usage:
        backend = HttpSyncBackend("http://localhost:8000")
        coordinator = ClientSyncCoordinator(backend)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with self._http() as http:
            response = await http.get(f"{API_PREFIX}{path}", params=params)
        response.raise_for_status()
        return response.json()

    async def get_cache_status(self, account_id, shop_id) -> Dict[str, Any]:
        return await self._get(f"/cache-status/{account_id}", {"shop_id": shop_id})

    async def load_snapshot(self, account_id, shop_id) -> ShopSnapshot:
        params = {"shop_id": shop_id}
        products = await self._get(f"/products/synced/{account_id}", params)
        orders = await self._get(f"/orders/synced/{account_id}", params)
        settlements = await self._get(f"/settlements/synced/{account_id}", params)
        return ShopSnapshot(
            products=products.get("products", []),
            orders=orders.get("orders", []),
            statements=settlements.get("settlements", []),
        )

    async def sync(self, account_id, shop_id, sync_type) -> Dict[str, Any]:
        async with self._http() as http:
            response = await http.post(
                f"{API_PREFIX}/sync/{account_id}",
                json={"shop_id": shop_id, "sync_type": sync_type},
            )
        response.raise_for_status()
        return response.json()
