"""Pytest configuration for shopsync tests

WHAT: Shared fixtures: file-backed SQLite sessions, a frozen clock, a fake
      TikTok Shop client serving canned pages, and a shop factory
WHY: Synchronizers, the orchestrator and the router all run against a real
     SQLAlchemy session; only the upstream API is faked
REFERENCES:
    - shopsync/database.py: Database configuration
    - shopsync/services/tiktok_shop_client.py: Client surface faked here
"""

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (shopsync.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("TIKTOK_SHOP_APP_KEY", "test-app-key")
os.environ.setdefault("TIKTOK_SHOP_APP_SECRET", "test-app-secret")
os.environ.pop("SENTRY_DSN", None)

from shopsync.models import Base, TikTokShop  # noqa: E402
from shopsync.services.tiktok_shop_client import TikTokShopAPIError  # noqa: E402
from shopsync.services.token_service import store_shop_tokens  # noqa: E402
from shopsync.utils.clock import to_epoch_seconds  # noqa: E402


NOW = datetime(2025, 6, 1, 12, 0, 0)
NOW_TS = to_epoch_seconds(NOW)
DAY = 86400
EXPIRED_CODE = 105002


def frozen_now() -> datetime:
    return NOW


def expired_credentials_error() -> TikTokShopAPIError:
    return TikTokShopAPIError("Access token is expired", code=EXPIRED_CODE, expired_code=EXPIRED_CODE)


# ============================================================================
# Raw upstream payload builders
# ============================================================================

def raw_order(order_id: str, create_time: int, amount: str = "10.00", status: str = "COMPLETED") -> Dict[str, Any]:
    return {
        "id": order_id,
        "status": status,
        "create_time": create_time,
        "update_time": create_time + 60,
        "user_id": f"buyer-{order_id}",
        "payment": {"total_amount": amount, "currency": "USD"},
        "line_items": [{"id": f"{order_id}-li-1"}],
    }


def raw_product(product_id: str, title: str = "Mug", price: str = "19.99", images: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "id": product_id,
        "title": title,
        "status": "ACTIVATE",
        "create_time": NOW_TS - 30 * DAY,
        "update_time": NOW_TS - DAY,
        "main_images": [{"urls": [url]} for url in (images or [f"https://img.example/{product_id}-thumb.jpg"])],
        "skus": [
            {
                "id": f"{product_id}-sku",
                "price": {"sale_price": price, "currency": "USD"},
                "inventory": [{"quantity": 5}, {"quantity": 3}],
            }
        ],
    }


def raw_statement(statement_id: str, statement_time: int, revenue: str = "100.00", net: str = "80.00") -> Dict[str, Any]:
    return {
        "id": statement_id,
        "statement_time": statement_time,
        "payment_status": "PAID",
        "revenue_amount": revenue,
        "settlement_amount": net,
        "fee_amount": "-20.00",
        "adjustment_amount": "0",
        "currency": "USD",
    }


def raw_performance(product_id: str, ctr: str = "2.5%", gmv: str = "500.00", orders: int = 10, units: int = 12) -> Dict[str, Any]:
    return {
        "id": product_id,
        "performance": {
            "intervals": [
                {"click_through_rate": ctr, "gmv": {"amount": gmv, "currency": "USD"}, "orders": orders, "units_sold": units}
            ]
        },
    }


# ============================================================================
# Fake upstream client
# ============================================================================

class FakeShopClient:
    """Serves canned pages by page token ("p1", "p2", ...) and records calls.

    `failures[method]` is a list of exceptions raised (one per call) before
    the method starts answering normally.
    """

    def __init__(self):
        self.order_pages: List[List[Dict[str, Any]]] = []
        self.statement_pages: List[List[Dict[str, Any]]] = []
        self.product_pages: List[List[Dict[str, Any]]] = []
        self.performance_pages: List[List[Dict[str, Any]]] = []
        self.product_details: Dict[str, Any] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.bad_refresh_tokens = set()
        self.calls: List[Dict[str, Any]] = []
        self.refresh_calls: List[str] = []

    def _record(self, method: str, **kwargs) -> None:
        self.calls.append({"method": method, **kwargs})
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    @staticmethod
    def _serve(pages: List[List[Dict[str, Any]]], list_key: str, page_token: Optional[str]) -> Dict[str, Any]:
        index = 0 if page_token is None else int(page_token[1:])
        if index >= len(pages):
            return {list_key: []}
        data: Dict[str, Any] = {list_key: pages[index], "total_count": sum(len(p) for p in pages)}
        if index + 1 < len(pages):
            data["next_page_token"] = f"p{index + 1}"
        return data

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        self.refresh_calls.append(refresh_token)
        self._record("refresh_access_token", refresh_token=refresh_token)
        if refresh_token in self.bad_refresh_tokens:
            raise TikTokShopAPIError("refresh token is invalid", code=36004004)
        n = len(self.refresh_calls)
        return {
            "access_token": f"access-refreshed-{n}",
            "access_token_expire_in": 2 * 3600,
            "refresh_token": f"refresh-rotated-{n}",
            "refresh_token_expire_in": 30 * DAY,
        }

    async def search_orders(self, access_token, shop_cipher, create_time_ge, page_size=100, page_token=None):
        self._record("search_orders", access_token=access_token, create_time_ge=create_time_ge, page_token=page_token)
        return self._serve(self.order_pages, "orders", page_token)

    async def get_statements(self, access_token, shop_cipher, statement_time_ge, page_size=100, page_token=None):
        self._record("get_statements", access_token=access_token, statement_time_ge=statement_time_ge, page_token=page_token)
        return self._serve(self.statement_pages, "statements", page_token)

    async def search_products(self, access_token, shop_cipher, page_size=100, page_token=None):
        self._record("search_products", access_token=access_token, page_token=page_token)
        return self._serve(self.product_pages, "products", page_token)

    async def get_product_detail(self, access_token, shop_cipher, product_id):
        self._record("get_product_detail", product_id=product_id)
        detail = self.product_details.get(product_id, {})
        if isinstance(detail, Exception):
            raise detail
        return detail

    async def get_product_performance(self, access_token, shop_cipher, start_date, end_date, page_size=100, page_token=None):
        self._record("get_product_performance", start_date=start_date, end_date=end_date, page_token=page_token)
        return self._serve(self.performance_pages, "shop_products", page_token)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """File-backed SQLite engine (shared across sessions and threads)."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'shopsync_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def fake_client() -> FakeShopClient:
    return FakeShopClient()


@pytest.fixture
def make_shop(db_session):
    """Create a connected shop with encrypted tokens.

    `expires_in=None` stores no access-token expiry.
    """

    def _make(
        account_id=None,
        shop_id: str = "7495000000000000001",
        expires_in: Optional[timedelta] = timedelta(hours=2),
        access_token: str = "access-initial",
        refresh_token: str = "refresh-initial",
        created_at: datetime = NOW,
    ) -> TikTokShop:
        shop = TikTokShop(
            account_id=account_id or uuid4(),
            shop_id=shop_id,
            shop_cipher=f"cipher-{shop_id}",
            shop_name="Test Shop",
            region="US",
            created_at=created_at,
        )
        store_shop_tokens(
            db_session,
            shop,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=NOW + expires_in if expires_in is not None else None,
            refresh_expires_at=NOW + timedelta(days=30),
        )
        db_session.commit()
        return shop

    return _make
