"""Resource synchronizers for time-windowed resources (orders, settlements).

WHAT:
    Each synchronizer pulls one resource for one shop into the mirror:
    - First sync: fixed historical lookback window from now
    - Incremental sync: starts one second past the newest stored event time
      (short fallback window when nothing is stored)
    - Newest-first pagination with smart-stop-early convergence
    - Dedup by natural key, batched upsert, then a last-synced stamp

WHY:
    Newest-first ordering means the first page containing an already-stored
    record marks the boundary; everything older is already mirrored. This
    keeps routine incremental syncs to one or two page fetches.

REFERENCES:
    - services/product_sync_service.py (products / performance)
    - services/sync_orchestrator.py (runs these sequentially per shop)
    - services/token_service.py (execute_with_refresh around every page)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shopsync.config import Settings, get_settings
from shopsync.models import TikTokShop
from shopsync.services.response_normalizer import (
    RecordPage,
    normalize_orders_page,
    normalize_statements_page,
)
from shopsync.services.shop_store import ShopDataStore, SyncResource
from shopsync.services.tiktok_shop_client import TikTokShopClient
from shopsync.services.token_service import TokenLifecycleManager
from shopsync.telemetry import capture_message
from shopsync.utils.clock import to_epoch_seconds, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

# page_token -> canonical page
PageFetcher = Callable[[Optional[str]], Awaitable[RecordPage]]


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

@dataclass
class SyncStats:
    """Outcome of one synchronizer run."""
    fetched: int = 0
    upserted: int = 0
    is_incremental: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def dedupe_by_key(records: List[Any]) -> List[Any]:
    """Keep the first occurrence of each natural key (upstream pages can overlap)."""
    seen: Set[str] = set()
    unique = []
    for record in records:
        if record.natural_key in seen:
            continue
        seen.add(record.natural_key)
        unique.append(record)
    return unique


# =============================================================================
# BASE SYNCHRONIZER
# =============================================================================

class ResourceSynchronizer:
    """Shared wiring and the pagination loop."""

    resource: SyncResource
    tag = "[RESOURCE_SYNC]"

    def __init__(
        self,
        store: ShopDataStore,
        tokens: TokenLifecycleManager,
        client: TikTokShopClient,
        settings: Optional[Settings] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tokens = tokens
        self.client = client
        self.settings = settings or get_settings()
        self.now_fn = now_fn

    async def sync(self, shop: TikTokShop, is_first_sync: bool) -> SyncStats:
        raise NotImplementedError

    async def _collect_pages(
        self,
        shop: TikTokShop,
        fetch_page: PageFetcher,
        max_pages: int,
        known_keys: Optional[Set[str]] = None,
    ) -> Tuple[List[Any], int]:
        """Walk pages in upstream order, accumulating records.

        With `known_keys`, records already stored are not accumulated and the
        walk stops right after the first page containing any of them.
        Otherwise stops on an empty page, an absent or repeated page token,
        or `max_pages`.

        Returns:
            (accumulated records, pages fetched)
        """
        accumulated: List[Any] = []
        page_token: Optional[str] = None
        pages = 0

        while True:
            if pages >= max_pages:
                logger.warning(
                    "%s Page cap (%d) reached for shop %s; keeping %d records",
                    self.tag, max_pages, shop.shop_id, len(accumulated),
                )
                capture_message(
                    f"{self.resource.value} page cap reached",
                    level="warning",
                    extra={"shop_id": shop.shop_id, "pages": pages, "records": len(accumulated)},
                )
                break

            page = await fetch_page(page_token)
            pages += 1

            if not page.records:
                logger.debug("%s Empty page %d, stopping", self.tag, pages)
                break

            existing_in_page = 0
            for record in page.records:
                if known_keys is not None and record.natural_key in known_keys:
                    existing_in_page += 1
                else:
                    accumulated.append(record)

            logger.debug(
                "%s Page %d: %d records (%d already stored)",
                self.tag, pages, len(page.records), existing_in_page,
            )

            if existing_in_page:
                logger.info("%s Converged on page %d for shop %s", self.tag, pages, shop.shop_id)
                break

            next_token = page.next_page_token
            if not next_token or next_token == page_token:
                break
            page_token = next_token

        return accumulated, pages

    def _persist(self, shop: TikTokShop, records: List[Any]) -> int:
        """Dedupe, upsert into every alias row, then stamp last-synced."""
        unique = dedupe_by_key(records)
        upserted = self.store.upsert_records(
            shop, self.resource, unique, batch_size=self.settings.UPSERT_BATCH_SIZE,
        )
        self.store.mark_synced(shop, self.resource, self.now_fn())
        return upserted


class WindowedSynchronizer(ResourceSynchronizer):
    """Time-windowed, convergent synchronizer (orders, settlements)."""

    first_sync_days: int
    fallback_days: int

    def compute_window_start(self, shop: TikTokShop, is_first_sync: bool) -> int:
        """Unix seconds the fetch window starts at (no forward limit)."""
        now_ts = to_epoch_seconds(self.now_fn())
        if is_first_sync:
            return now_ts - self.first_sync_days * SECONDS_PER_DAY

        latest = self.store.max_event_time(shop, self.resource)
        if latest is None:
            logger.info("%s No stored records for shop %s, using %d-day fallback", self.tag, shop.shop_id, self.fallback_days)
            return now_ts - self.fallback_days * SECONDS_PER_DAY
        return latest + 1

    async def _fetch(self, access_token: str, cipher: Optional[str], window_start: int, page_token: Optional[str]) -> Any:
        raise NotImplementedError

    def _normalize(self, data: Any) -> RecordPage:
        raise NotImplementedError

    async def sync(self, shop: TikTokShop, is_first_sync: bool) -> SyncStats:
        window_start = self.compute_window_start(shop, is_first_sync)
        known_keys = None if is_first_sync else self.store.existing_keys(shop, self.resource)

        logger.info(
            "%s Starting %s sync for shop %s from %d (known=%d)",
            self.tag, "first" if is_first_sync else "incremental",
            shop.shop_id, window_start, len(known_keys or ()),
        )

        async def fetch_page(page_token: Optional[str]) -> RecordPage:
            async def operation(access_token: str, cipher: Optional[str]) -> Any:
                return await self._fetch(access_token, cipher, window_start, page_token)

            data = await self.tokens.execute_with_refresh(shop, operation)
            return self._normalize(data)

        records, pages = await self._collect_pages(
            shop, fetch_page, self.settings.MAX_PAGES, known_keys,
        )
        upserted = self._persist(shop, records)

        stats = SyncStats(fetched=len(records), upserted=upserted, is_incremental=not is_first_sync)
        logger.info(
            "%s Done for shop %s: pages=%d fetched=%d upserted=%d",
            self.tag, shop.shop_id, pages, stats.fetched, stats.upserted,
        )
        return stats


# =============================================================================
# CONCRETE SYNCHRONIZERS
# =============================================================================

class OrderSynchronizer(WindowedSynchronizer):
    resource = SyncResource.orders
    tag = "[ORDER_SYNC]"

    @property
    def first_sync_days(self) -> int:
        return self.settings.ORDERS_FIRST_SYNC_DAYS

    @property
    def fallback_days(self) -> int:
        return self.settings.ORDERS_FALLBACK_DAYS

    async def _fetch(self, access_token, cipher, window_start, page_token):
        return await self.client.search_orders(
            access_token,
            cipher,
            create_time_ge=window_start,
            page_size=self.settings.PAGE_SIZE,
            page_token=page_token,
        )

    def _normalize(self, data):
        return normalize_orders_page(data)


class SettlementSynchronizer(WindowedSynchronizer):
    resource = SyncResource.settlements
    tag = "[SETTLEMENT_SYNC]"

    @property
    def first_sync_days(self) -> int:
        return self.settings.SETTLEMENTS_FIRST_SYNC_DAYS

    @property
    def fallback_days(self) -> int:
        return self.settings.SETTLEMENTS_FALLBACK_DAYS

    async def _fetch(self, access_token, cipher, window_start, page_token):
        return await self.client.get_statements(
            access_token,
            cipher,
            statement_time_ge=window_start,
            page_size=self.settings.PAGE_SIZE,
            page_token=page_token,
        )

    def _normalize(self, data):
        return normalize_statements_page(data)
