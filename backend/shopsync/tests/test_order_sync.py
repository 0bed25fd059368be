"""Tests for the windowed order synchronizer (windows, convergence, upserts)."""

import asyncio
from datetime import timedelta
from uuid import uuid4

from conftest import DAY, NOW, NOW_TS, expired_credentials_error, frozen_now, raw_order
from shopsync.config import Settings
from shopsync.models import ShopOrder
from shopsync.services.resource_sync_service import OrderSynchronizer
from shopsync.services.shop_store import ShopDataStore
from shopsync.services.token_service import TokenLifecycleManager


def _synchronizer(db_session, fake_client, **overrides):
    settings = Settings(**overrides)
    tokens = TokenLifecycleManager(db_session, fake_client, now_fn=frozen_now)
    return OrderSynchronizer(ShopDataStore(db_session), tokens, fake_client, settings=settings, now_fn=frozen_now)


def _stored_ids(db_session, shop):
    return {o.order_id for o in db_session.query(ShopOrder).filter(ShopOrder.shop_id == shop.id).all()}


def test_first_sync_uses_one_year_window_and_walks_every_page(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [
        [raw_order("o5", NOW_TS - 10), raw_order("o4", NOW_TS - 20)],
        [raw_order("o3", NOW_TS - 30), raw_order("o2", NOW_TS - 40)],
        [raw_order("o1", NOW_TS - 50)],
    ]

    stats = asyncio.run(_synchronizer(db_session, fake_client).sync(shop, is_first_sync=True))

    calls = fake_client.calls_to("search_orders")
    assert [c["page_token"] for c in calls] == [None, "p1", "p2"]
    assert calls[0]["create_time_ge"] == NOW_TS - 365 * DAY
    assert stats.fetched == 5
    assert stats.upserted == 5
    assert stats.is_incremental is False
    assert _stored_ids(db_session, shop) == {"o1", "o2", "o3", "o4", "o5"}
    assert shop.orders_last_synced_at == NOW


def test_resync_of_same_orders_is_idempotent(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order("o2", NOW_TS - 10), raw_order("o1", NOW_TS - 20, status="AWAITING_SHIPMENT")]]
    synchronizer = _synchronizer(db_session, fake_client)
    asyncio.run(synchronizer.sync(shop, is_first_sync=True))

    fake_client.order_pages = [[raw_order("o2", NOW_TS - 10), raw_order("o1", NOW_TS - 20, status="COMPLETED")]]
    asyncio.run(synchronizer.sync(shop, is_first_sync=True))

    rows = db_session.query(ShopOrder).filter(ShopOrder.shop_id == shop.id).all()
    assert len(rows) == 2
    assert {r.order_id: r.status for r in rows}["o1"] == "COMPLETED"


def test_incremental_sync_converges_after_first_known_page(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order("o2", NOW_TS - 3 * DAY), raw_order("o1", NOW_TS - 4 * DAY)]]
    synchronizer = _synchronizer(db_session, fake_client)
    asyncio.run(synchronizer.sync(shop, is_first_sync=True))
    fake_client.calls.clear()

    # Two pages of new orders, then a page that overlaps the stored ones
    fake_client.order_pages = [
        [raw_order("o6", NOW_TS - 10), raw_order("o5", NOW_TS - 20)],
        [raw_order("o4", NOW_TS - 30), raw_order("o3", NOW_TS - 40)],
        [raw_order("o2b", NOW_TS - 50), raw_order("o2", NOW_TS - 3 * DAY)],
        [raw_order("o1", NOW_TS - 4 * DAY)],
        [raw_order("o0", NOW_TS - 5 * DAY)],
    ]

    stats = asyncio.run(synchronizer.sync(shop, is_first_sync=False))

    calls = fake_client.calls_to("search_orders")
    assert len(calls) == 3
    assert calls[0]["create_time_ge"] == NOW_TS - 3 * DAY + 1
    assert stats.is_incremental is True
    assert stats.fetched == 5
    assert stats.upserted == 5
    assert _stored_ids(db_session, shop) == {"o1", "o2", "o2b", "o3", "o4", "o5", "o6"}


def test_incremental_sync_with_no_orders_uses_fallback_window(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order("o1", NOW_TS - 60)]]

    asyncio.run(_synchronizer(db_session, fake_client).sync(shop, is_first_sync=False))

    assert fake_client.calls_to("search_orders")[0]["create_time_ge"] == NOW_TS - 7 * DAY


def test_page_cap_stops_pagination(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order(f"o{i}", NOW_TS - i)] for i in range(5)]

    stats = asyncio.run(_synchronizer(db_session, fake_client, MAX_PAGES=2).sync(shop, is_first_sync=True))

    assert len(fake_client.calls_to("search_orders")) == 2
    assert stats.fetched == 2
    assert shop.orders_last_synced_at == NOW


def test_duplicate_orders_across_pages_are_deduped(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [
        [raw_order("o3", NOW_TS - 10), raw_order("o2", NOW_TS - 20)],
        [raw_order("o2", NOW_TS - 20), raw_order("o1", NOW_TS - 30)],
    ]

    stats = asyncio.run(_synchronizer(db_session, fake_client).sync(shop, is_first_sync=True))

    assert stats.fetched == 4
    assert stats.upserted == 3
    assert _stored_ids(db_session, shop) == {"o1", "o2", "o3"}


def test_expired_token_mid_pagination_refreshes_and_continues(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order("o2", NOW_TS - 10)], [raw_order("o1", NOW_TS - 20)]]
    fake_client.failures["search_orders"] = [expired_credentials_error()]

    stats = asyncio.run(_synchronizer(db_session, fake_client).sync(shop, is_first_sync=True))

    assert stats.upserted == 2
    assert len(fake_client.refresh_calls) == 1
    tokens_used = [c["access_token"] for c in fake_client.calls_to("search_orders")]
    assert tokens_used == ["access-initial", "access-refreshed-1", "access-refreshed-1"]


def test_orders_fan_out_to_aliased_shop_rows(db_session, fake_client, make_shop):
    primary = make_shop(account_id=uuid4())
    alias = make_shop(account_id=uuid4(), created_at=NOW + timedelta(minutes=1))
    fake_client.order_pages = [[raw_order("o1", NOW_TS - 10)]]

    stats = asyncio.run(_synchronizer(db_session, fake_client).sync(primary, is_first_sync=True))

    assert stats.upserted == 1
    assert _stored_ids(db_session, primary) == {"o1"}
    assert _stored_ids(db_session, alias) == {"o1"}
    db_session.refresh(alias)
    assert alias.orders_last_synced_at == NOW


def test_order_columns_are_normalized(db_session, fake_client, make_shop):
    shop = make_shop()
    fake_client.order_pages = [[raw_order("o1", NOW_TS - 10, amount="42.50")]]

    asyncio.run(_synchronizer(db_session, fake_client).sync(shop, is_first_sync=True))

    order = db_session.query(ShopOrder).one()
    assert float(order.total_amount) == 42.5
    assert order.currency == "USD"
    assert order.create_time == NOW_TS - 10
    assert order.buyer_user_id == "buyer-o1"
    assert order.line_item_count == 1
    assert order.details["id"] == "o1"
