"""Product catalog and product performance synchronizers.

WHAT:
    - ProductSynchronizer: full refresh of active listings every run (no
      time window, no convergence), best-effort detail enrichment for the
      full image set, then a trailing performance merge.
    - PerformanceSynchronizer: pulls the trailing per-product analytics
      report and merges CTR / GMV / orders / units sold onto stored products.

WHY:
    Price and stock change regardless of creation time, so products can't be
    synced incrementally. Enrichment and performance are nice-to-have: their
    failures are logged and never abort the catalog sync.

REFERENCES:
    - services/resource_sync_service.py (base class, pagination loop)
    - services/shop_store.py (apply_product_performance)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, List, Optional

from shopsync.models import TikTokShop
from shopsync.services.resource_sync_service import ResourceSynchronizer, SyncStats
from shopsync.services.response_normalizer import (
    ProductRecord,
    RecordPage,
    extract_images,
    normalize_performance_page,
    normalize_products_page,
)
from shopsync.services.shop_store import SyncResource
from shopsync.telemetry import capture_exception

logger = logging.getLogger(__name__)


class PerformanceSynchronizer(ResourceSynchronizer):
    resource = SyncResource.performance
    tag = "[PERFORMANCE_SYNC]"

    def report_window(self):
        """(start_date, end_date) ISO dates; end is exclusive."""
        today = self.now_fn().date()
        start = today - timedelta(days=self.settings.PERFORMANCE_WINDOW_DAYS)
        return start.isoformat(), today.isoformat()

    async def sync(self, shop: TikTokShop, is_first_sync: bool = False) -> SyncStats:
        start_date, end_date = self.report_window()

        async def fetch_page(page_token: Optional[str]) -> RecordPage:
            async def operation(access_token: str, cipher: Optional[str]) -> Any:
                return await self.client.get_product_performance(
                    access_token,
                    cipher,
                    start_date=start_date,
                    end_date=end_date,
                    page_size=self.settings.PAGE_SIZE,
                    page_token=page_token,
                )

            data = await self.tokens.execute_with_refresh(shop, operation)
            return normalize_performance_page(data)

        records, pages = await self._collect_pages(shop, fetch_page, self.settings.PRODUCT_MAX_PAGES)
        matched, skipped = self.store.apply_product_performance(shop, records)
        self.store.mark_synced(shop, self.resource, self.now_fn())

        logger.info(
            "%s Merged performance for shop %s (%s..%s): records=%d matched=%d skipped=%d",
            self.tag, shop.shop_id, start_date, end_date, len(records), matched, skipped,
        )
        return SyncStats(fetched=len(records), upserted=matched, is_incremental=False)


class ProductSynchronizer(ResourceSynchronizer):
    resource = SyncResource.products
    tag = "[PRODUCT_SYNC]"

    def __init__(self, *args, performance: Optional[PerformanceSynchronizer] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.performance = performance or PerformanceSynchronizer(
            self.store, self.tokens, self.client, settings=self.settings, now_fn=self.now_fn,
        )

    async def _enrich_images(self, shop: TikTokShop, products: List[ProductRecord]) -> int:
        """Fill each product's full image set from the detail endpoint.

        Best-effort: a failed detail call keeps the listing fields.
        """
        enriched = 0
        for product in products:
            async def operation(access_token: str, cipher: Optional[str]) -> Any:
                return await self.client.get_product_detail(access_token, cipher, product.product_id)

            try:
                detail = await self.tokens.execute_with_refresh(shop, operation)
            except Exception as e:
                logger.warning("%s Detail fetch failed for product %s: %s", self.tag, product.product_id, e)
                continue

            images = extract_images(detail or {})
            if images:
                product.images = images
                enriched += 1
        return enriched

    async def sync(self, shop: TikTokShop, is_first_sync: bool = False) -> SyncStats:
        logger.info("%s Starting full product refresh for shop %s", self.tag, shop.shop_id)

        async def fetch_page(page_token: Optional[str]) -> RecordPage:
            async def operation(access_token: str, cipher: Optional[str]) -> Any:
                return await self.client.search_products(
                    access_token, cipher, page_size=self.settings.PAGE_SIZE, page_token=page_token,
                )

            data = await self.tokens.execute_with_refresh(shop, operation)
            return normalize_products_page(data)

        records, pages = await self._collect_pages(shop, fetch_page, self.settings.PRODUCT_MAX_PAGES)
        enriched = await self._enrich_images(shop, records)
        upserted = self._persist(shop, records)

        try:
            await self.performance.sync(shop, is_first_sync)
        except Exception as e:
            logger.warning("%s Performance merge failed for shop %s: %s", self.tag, shop.shop_id, e)
            capture_exception(e, extra={"shop_id": shop.shop_id, "resource": "performance"})

        logger.info(
            "%s Done for shop %s: pages=%d fetched=%d enriched=%d upserted=%d",
            self.tag, shop.shop_id, pages, len(records), enriched, upserted,
        )
        return SyncStats(fetched=len(records), upserted=upserted, is_incremental=False)
