"""Tests for per-shop orchestration and the scheduled sweep."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import DAY, NOW, NOW_TS, frozen_now, raw_order, raw_product, raw_statement
from shopsync.config import Settings
from shopsync.models import ShopOrder, TikTokShop
from shopsync.services.shop_store import SyncResource
from shopsync.services.sync_orchestrator import SyncOrchestrator, parse_resources, run_scheduled_sync
from shopsync.services.tiktok_shop_client import TikTokShopAPIError
from shopsync.services.token_service import TokenRefreshError


def _orchestrator(db_session, fake_client):
    return SyncOrchestrator(db_session, fake_client, settings=Settings(), now_fn=frozen_now)


def _seed_upstream(fake_client):
    fake_client.order_pages = [[raw_order("o1", NOW_TS - 60)]]
    fake_client.product_pages = [[raw_product("p1")]]
    fake_client.statement_pages = [[raw_statement("s1", NOW_TS - DAY)]]


# =============================================================================
# parse_resources
# =============================================================================

def test_parse_resources_aliases_and_order():
    assert parse_resources() == [SyncResource.orders, SyncResource.products, SyncResource.settlements]
    assert parse_resources("all") == [SyncResource.orders, SyncResource.products, SyncResource.settlements]
    assert parse_resources("finance") == [SyncResource.settlements]
    assert parse_resources("Orders") == [SyncResource.orders]
    assert parse_resources(resources=["performance", "orders"]) == [SyncResource.orders, SyncResource.performance]


def test_parse_resources_rejects_unknown_names():
    with pytest.raises(ValueError):
        parse_resources("customers")


# =============================================================================
# SyncOrchestrator
# =============================================================================

def test_first_sync_runs_every_default_resource(db_session, fake_client, make_shop):
    shop = make_shop()
    _seed_upstream(fake_client)

    result = asyncio.run(_orchestrator(db_session, fake_client).sync(shop))

    assert result.success is True
    assert result.is_first_sync is True
    assert set(result.stats) == {"orders", "products", "settlements"}
    assert fake_client.calls_to("search_orders")[0]["create_time_ge"] == NOW_TS - 365 * DAY
    assert fake_client.calls_to("get_statements")[0]["statement_time_ge"] == NOW_TS - 30 * DAY
    methods = [c["method"] for c in fake_client.calls if c["method"] in ("search_orders", "search_products", "get_statements")]
    assert methods == ["search_orders", "search_products", "get_statements"]


def test_second_run_is_incremental(db_session, fake_client, make_shop):
    shop = make_shop()
    _seed_upstream(fake_client)
    orchestrator = _orchestrator(db_session, fake_client)
    asyncio.run(orchestrator.sync(shop))

    result = asyncio.run(orchestrator.sync(shop, [SyncResource.orders]))

    assert result.is_first_sync is False
    assert result.stats["orders"].is_incremental is True
    assert result.stats["orders"].fetched == 0
    assert fake_client.calls_to("search_orders")[-1]["create_time_ge"] == NOW_TS - 60 + 1


def test_failing_resource_does_not_stop_the_others(db_session, fake_client, make_shop):
    shop = make_shop()
    _seed_upstream(fake_client)
    fake_client.failures["search_products"] = [TikTokShopAPIError("Internal error", code=36009003)]

    result = asyncio.run(_orchestrator(db_session, fake_client).sync(shop))

    assert result.success is False
    assert "products" in result.errors
    assert result.stats["orders"].upserted == 1
    assert result.stats["settlements"].upserted == 1
    assert shop.products_last_synced_at is None
    assert shop.orders_last_synced_at == NOW

    payload = result.to_dict()
    assert payload["errors"]["products"] == "Internal error"
    assert payload["stats"]["orders"] == {"fetched": 1, "upserted": 1, "is_incremental": False}


def test_unrefreshable_token_aborts_before_any_resource(db_session, fake_client, make_shop):
    shop = make_shop(expires_in=timedelta(minutes=-5), refresh_token="refresh-revoked")
    fake_client.bad_refresh_tokens.add("refresh-revoked")

    with pytest.raises(TokenRefreshError):
        asyncio.run(_orchestrator(db_session, fake_client).sync(shop))

    assert fake_client.calls_to("search_orders") == []


# =============================================================================
# run_scheduled_sync
# =============================================================================

def test_sweep_isolates_failing_shops(db_session, session_factory, fake_client, make_shop):
    make_shop(shop_id="shop-good")
    make_shop(shop_id="shop-bad", expires_in=timedelta(minutes=-1), refresh_token="refresh-revoked")
    fake_client.bad_refresh_tokens.add("refresh-revoked")
    _seed_upstream(fake_client)

    results = asyncio.run(
        run_scheduled_sync(session_factory, client=fake_client, settings=Settings(SWEEP_MAX_CONCURRENT_SHOPS=1), now_fn=frozen_now)
    )

    by_shop = {r["shop_id"]: r for r in results}
    assert by_shop["shop-good"]["status"] == "success"
    assert by_shop["shop-bad"]["status"] == "failed"
    assert "refresh" in by_shop["shop-bad"]["error"].lower()


def test_sweep_syncs_aliased_shop_once_through_oldest_row(db_session, session_factory, fake_client, make_shop):
    oldest = make_shop(account_id=uuid4(), shop_id="shop-shared", created_at=NOW - timedelta(days=2))
    newer = make_shop(account_id=uuid4(), shop_id="shop-shared", created_at=NOW - timedelta(days=1))
    _seed_upstream(fake_client)

    results = asyncio.run(
        run_scheduled_sync(session_factory, client=fake_client, settings=Settings(SWEEP_MAX_CONCURRENT_SHOPS=1), now_fn=frozen_now)
    )

    assert results == [{"shop_id": "shop-shared", "status": "success"}]
    assert len(fake_client.calls_to("search_orders")) == 1
    for row in (oldest, newer):
        assert db_session.query(ShopOrder).filter(ShopOrder.shop_id == row.id).count() == 1


def test_sweep_falls_back_to_alias_row_when_oldest_token_is_dead(db_session, session_factory, fake_client, make_shop):
    dead = make_shop(
        account_id=uuid4(),
        shop_id="shop-shared",
        created_at=NOW - timedelta(days=2),
        expires_in=timedelta(minutes=-1),
        refresh_token="refresh-revoked",
    )
    alive = make_shop(
        account_id=uuid4(),
        shop_id="shop-shared",
        created_at=NOW - timedelta(days=1),
        access_token="access-alive",
    )
    fake_client.bad_refresh_tokens.add("refresh-revoked")
    _seed_upstream(fake_client)

    results = asyncio.run(
        run_scheduled_sync(session_factory, client=fake_client, settings=Settings(SWEEP_MAX_CONCURRENT_SHOPS=1), now_fn=frozen_now)
    )

    assert results == [{"shop_id": "shop-shared", "status": "success"}]
    assert fake_client.refresh_calls == ["refresh-revoked"]
    assert [c["access_token"] for c in fake_client.calls_to("search_orders")] == ["access-alive"]
    for row in (dead, alive):
        assert db_session.query(ShopOrder).filter(ShopOrder.shop_id == row.id).count() == 1


def test_sweep_fails_when_no_alias_row_has_a_usable_token(session_factory, fake_client, make_shop):
    for days, refresh_token in ((2, "refresh-revoked-1"), (1, "refresh-revoked-2")):
        make_shop(
            account_id=uuid4(),
            shop_id="shop-shared",
            created_at=NOW - timedelta(days=days),
            expires_in=timedelta(minutes=-1),
            refresh_token=refresh_token,
        )
        fake_client.bad_refresh_tokens.add(refresh_token)

    results = asyncio.run(run_scheduled_sync(session_factory, client=fake_client, now_fn=frozen_now))

    assert results[0]["status"] == "failed"
    assert fake_client.refresh_calls == ["refresh-revoked-1", "refresh-revoked-2"]
    assert fake_client.calls_to("search_orders") == []


def test_sweep_reports_resource_errors_as_failed(db_session, session_factory, fake_client, make_shop):
    make_shop(shop_id="shop-partial")
    _seed_upstream(fake_client)
    fake_client.failures["get_statements"] = [TikTokShopAPIError("Finance API down", code=50001)]

    results = asyncio.run(run_scheduled_sync(session_factory, client=fake_client, now_fn=frozen_now))

    assert results[0]["status"] == "failed"
    assert "settlements" in results[0]["error"]
    db_session.expire_all()
    shop = db_session.query(TikTokShop).filter(TikTokShop.shop_id == "shop-partial").one()
    assert shop.orders_last_synced_at == NOW


def test_sweep_with_no_shops_returns_empty(session_factory, fake_client):
    assert asyncio.run(run_scheduled_sync(session_factory, client=fake_client, now_fn=frozen_now)) == []
