"""Tests for the mirror repository (lookups, batched upserts, reads)."""

from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW_TS
from shopsync.models import ShopOrder, ShopProduct
from shopsync.services.response_normalizer import OrderRecord, PerformanceRecord, ProductRecord
from shopsync.services.shop_store import (
    ShopDataStore,
    ShopNotFoundError,
    SyncPersistenceError,
    SyncResource,
)


def _orders(count):
    return [OrderRecord(order_id=f"o{i}", create_time=NOW_TS - i * 60) for i in range(count)]


def test_get_shop_by_account_and_external_id(db_session, make_shop):
    account_id = uuid4()
    first = make_shop(account_id=account_id, shop_id="shop-a")
    make_shop(account_id=account_id, shop_id="shop-b")
    store = ShopDataStore(db_session)

    assert store.get_shop(account_id, "shop-b").shop_id == "shop-b"
    assert store.get_shop(account_id).id == first.id

    with pytest.raises(ShopNotFoundError):
        store.get_shop(account_id, "shop-missing")
    with pytest.raises(ShopNotFoundError):
        store.get_shop(uuid4())


def test_failed_batch_rolls_back_and_keeps_earlier_batches(db_session, make_shop, monkeypatch):
    shop = make_shop()
    store = ShopDataStore(db_session)

    real_commit = db_session.commit
    commits = {"n": 0}

    def flaky_commit():
        commits["n"] += 1
        if commits["n"] == 2:
            raise OperationalError("INSERT INTO tiktok_shop_orders", {}, Exception("database is locked"))
        real_commit()

    monkeypatch.setattr(db_session, "commit", flaky_commit)

    with pytest.raises(SyncPersistenceError) as exc_info:
        store.upsert_records(shop, SyncResource.orders, _orders(5), batch_size=2)

    assert exc_info.value.batch_index == 1
    assert exc_info.value.resource == "orders"
    assert db_session.query(ShopOrder).count() == 2


def test_fetch_synced_reads_every_page_newest_first(db_session, make_shop):
    shop = make_shop()
    store = ShopDataStore(db_session)
    store.upsert_records(shop, SyncResource.orders, _orders(5))

    rows = store.fetch_synced(shop, SyncResource.orders, page_size=2)

    assert [row.order_id for row in rows] == ["o0", "o1", "o2", "o3", "o4"]


def test_fetch_synced_is_scoped_to_the_shop_row(db_session, make_shop):
    shop = make_shop(shop_id="shop-a")
    other = make_shop(shop_id="shop-b")
    store = ShopDataStore(db_session)
    store.upsert_records(shop, SyncResource.orders, _orders(2))

    assert store.fetch_synced(other, SyncResource.orders) == []
    assert store.max_event_time(shop, SyncResource.orders) == NOW_TS
    assert store.max_event_time(other, SyncResource.orders) is None
    assert store.has_orders(shop) is True
    assert store.has_orders(other) is False


def test_apply_product_performance_reports_matched_and_skipped(db_session, make_shop):
    shop = make_shop()
    store = ShopDataStore(db_session)
    store.upsert_records(shop, SyncResource.products, [ProductRecord(product_id="p1"), ProductRecord(product_id="p2")])

    matched, skipped = store.apply_product_performance(
        shop,
        [PerformanceRecord(product_id="p1", ctr=0.1, units_sold=3), PerformanceRecord(product_id="p9", ctr=0.2)],
    )

    assert (matched, skipped) == (1, 1)
    product = db_session.query(ShopProduct).filter(ShopProduct.product_id == "p1").one()
    assert product.ctr == 0.1
    assert product.units_sold == 3
    assert db_session.query(ShopProduct).count() == 2


def test_upsert_of_nothing_is_a_no_op(db_session, make_shop):
    shop = make_shop()
    assert ShopDataStore(db_session).upsert_records(shop, SyncResource.orders, []) == 0
