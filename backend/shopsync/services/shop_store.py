"""Persistent mirror repository.

WHAT:
    All database access for the sync engine:
    - Shop lookup and alias resolution (rows sharing one external shop_id)
    - Stored natural-key sets and max event time (incremental windows)
    - Batched upsert by (shop row, natural key), fanned out to every alias row
    - Last-synced stamps, performance merge, and paginated mirror reads

WHY:
    Synchronizers stay free of SQLAlchemy details and the idempotency rules
    live in one place.

REFERENCES:
    - shopsync/models.py
    - shopsync/services/resource_sync_service.py (consumer)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopsync.config import get_settings
from shopsync.models import ShopOrder, ShopProduct, ShopSettlement, TikTokShop
from shopsync.utils.clock import utcnow

logger = logging.getLogger(__name__)


class SyncResource(str, enum.Enum):
    """Syncable resource types, in the order an orchestration run visits them."""
    orders = "orders"
    products = "products"
    settlements = "settlements"
    performance = "performance"


class ShopNotFoundError(Exception):
    """No shop row for the (account, shop) pair."""


class SyncPersistenceError(Exception):
    """A batch write failed; already-committed batches remain."""

    def __init__(self, message: str, resource: Optional[str] = None, batch_index: Optional[int] = None):
        super().__init__(message)
        self.resource = resource
        self.batch_index = batch_index


@dataclass(frozen=True)
class ResourceTable:
    model: Any
    key_column: str
    time_column: str


RESOURCE_TABLES: Dict[SyncResource, ResourceTable] = {
    SyncResource.orders: ResourceTable(ShopOrder, "order_id", "create_time"),
    SyncResource.products: ResourceTable(ShopProduct, "product_id", "create_time"),
    SyncResource.settlements: ResourceTable(ShopSettlement, "settlement_id", "statement_time"),
}

LAST_SYNCED_COLUMNS: Dict[SyncResource, str] = {
    SyncResource.orders: "orders_last_synced_at",
    SyncResource.products: "products_last_synced_at",
    SyncResource.settlements: "settlements_last_synced_at",
    SyncResource.performance: "performance_last_synced_at",
}


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ShopDataStore:
    """Repository over one SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # SHOPS
    # =========================================================================

    def get_shop(self, account_id: UUID, shop_id: Optional[str] = None) -> TikTokShop:
        """Resolve the shop row for an account (first shop when shop_id is omitted).

        Raises:
            ShopNotFoundError: No matching row
        """
        query = self.db.query(TikTokShop).filter(TikTokShop.account_id == account_id)
        if shop_id:
            query = query.filter(TikTokShop.shop_id == shop_id)
        shop = query.order_by(TikTokShop.created_at).first()
        if not shop:
            raise ShopNotFoundError(f"Shop {shop_id or '<any>'} not found for account {account_id}")
        return shop

    def list_shops(self) -> List[TikTokShop]:
        """Every connected shop row (one per account/shop pair)."""
        return self.db.query(TikTokShop).order_by(TikTokShop.created_at).all()

    def alias_rows(self, shop: TikTokShop) -> List[TikTokShop]:
        """All rows sharing this shop's external id, the given row first."""
        rows = self.db.query(TikTokShop).filter(TikTokShop.shop_id == shop.shop_id).all()
        others = [row for row in rows if row.id != shop.id]
        return [shop] + others

    # =========================================================================
    # SYNC STATE
    # =========================================================================

    def has_orders(self, shop: TikTokShop) -> bool:
        return (
            self.db.query(ShopOrder.id).filter(ShopOrder.shop_id == shop.id).first()
            is not None
        )

    def existing_keys(self, shop: TikTokShop, resource: SyncResource) -> Set[str]:
        table = RESOURCE_TABLES[resource]
        key_col = getattr(table.model, table.key_column)
        rows = self.db.query(key_col).filter(table.model.shop_id == shop.id).all()
        return {row[0] for row in rows}

    def max_event_time(self, shop: TikTokShop, resource: SyncResource) -> Optional[int]:
        table = RESOURCE_TABLES[resource]
        time_col = getattr(table.model, table.time_column)
        value = self.db.query(func.max(time_col)).filter(table.model.shop_id == shop.id).scalar()
        return int(value) if value is not None else None

    def mark_synced(self, shop: TikTokShop, resource: SyncResource, at: Optional[datetime] = None) -> None:
        """Stamp last-synced for every row aliased to this shop."""
        at = at or utcnow()
        column = LAST_SYNCED_COLUMNS[resource]
        for row in self.alias_rows(shop):
            setattr(row, column, at)
        self.db.commit()
        logger.info("[SHOP_STORE] %s last synced at %s for shop %s", resource.value, at, shop.shop_id)

    # =========================================================================
    # UPSERTS
    # =========================================================================

    def upsert_records(
        self,
        shop: TikTokShop,
        resource: SyncResource,
        records: Sequence[Any],
        batch_size: Optional[int] = None,
    ) -> int:
        """Upsert records by natural key into every alias row, in batches.

        Each batch is committed on its own. A failing batch is rolled back and
        raised as SyncPersistenceError; earlier batches stay committed.

        Returns:
            Number of records upserted (per logical shop, not per alias row)
        """
        if not records:
            return 0

        table = RESOURCE_TABLES[resource]
        key_col = getattr(table.model, table.key_column)
        batch_size = batch_size or get_settings().UPSERT_BATCH_SIZE
        targets = self.alias_rows(shop)
        upserted = 0

        for index, batch in enumerate(_chunks(list(records), batch_size)):
            keys = [record.natural_key for record in batch]
            try:
                for row in targets:
                    existing = {
                        getattr(obj, table.key_column): obj
                        for obj in self.db.query(table.model)
                        .filter(table.model.shop_id == row.id, key_col.in_(keys))
                        .all()
                    }
                    for record in batch:
                        columns = record.to_columns()
                        obj = existing.get(record.natural_key)
                        if obj is None:
                            self.db.add(table.model(shop_id=row.id, **columns))
                        else:
                            for name, value in columns.items():
                                setattr(obj, name, value)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(
                    "[SHOP_STORE] %s batch %d failed for shop %s: %s",
                    resource.value, index, shop.shop_id, e,
                )
                raise SyncPersistenceError(
                    f"Failed to persist {resource.value} batch {index}: {e}",
                    resource=resource.value,
                    batch_index=index,
                ) from e
            upserted += len(batch)

        logger.info(
            "[SHOP_STORE] Upserted %d %s into %d shop row(s) for %s",
            upserted, resource.value, len(targets), shop.shop_id,
        )
        return upserted

    def apply_product_performance(self, shop: TikTokShop, records: Sequence[Any]) -> Tuple[int, int]:
        """Merge performance metrics onto stored products by product_id.

        Records without a stored product are logged and skipped.

        Returns:
            (matched, skipped)
        """
        if not records:
            return 0, 0

        by_key = {record.product_id: record for record in records}
        matched_keys: Set[str] = set()
        try:
            for row in self.alias_rows(shop):
                products = (
                    self.db.query(ShopProduct)
                    .filter(ShopProduct.shop_id == row.id, ShopProduct.product_id.in_(list(by_key)))
                    .all()
                )
                for product in products:
                    for name, value in by_key[product.product_id].to_columns().items():
                        setattr(product, name, value)
                    if row.id == shop.id:
                        matched_keys.add(product.product_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise SyncPersistenceError(f"Failed to merge product performance: {e}", resource="performance") from e

        for missing in sorted(set(by_key) - matched_keys):
            logger.info("[SHOP_STORE] Performance for unknown product %s skipped (shop %s)", missing, shop.shop_id)

        return len(matched_keys), len(by_key) - len(matched_keys)

    # =========================================================================
    # READS
    # =========================================================================

    def fetch_synced(
        self,
        shop: TikTokShop,
        resource: SyncResource,
        page_size: Optional[int] = None,
    ) -> List[Any]:
        """Every stored row for the shop, newest first, read page by page until a short page."""
        table = RESOURCE_TABLES[resource]
        time_col = getattr(table.model, table.time_column)
        page_size = page_size or get_settings().SYNCED_READ_PAGE_SIZE

        rows: List[Any] = []
        offset = 0
        while True:
            page = (
                self.db.query(table.model)
                .filter(table.model.shop_id == shop.id)
                .order_by(time_col.desc(), table.model.id)
                .offset(offset)
                .limit(page_size)
                .all()
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return rows
