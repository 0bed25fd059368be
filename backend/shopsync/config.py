"""Application settings.

WHAT:
    Pydantic settings for the TikTok Shop sync engine: upstream credentials,
    sync windows, pagination caps, staleness thresholds and worker knobs.

WHY:
    - One place for every tunable the synchronizers, token manager and
      staleness evaluator read.
    - Services import this module without touching the database engine, so
      they stay importable in unit tests.

REFERENCES:
    - shopsync/deps.py (FastAPI dependency wrappers)
    - shopsync/services/resource_sync_service.py (window / page settings)
    - shopsync/services/cache_staleness.py (thresholds)
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    REDIS_URL: str = "redis://localhost:6379/0"

    # TikTok Shop Open API
    TIKTOK_SHOP_APP_KEY: str = ""
    TIKTOK_SHOP_APP_SECRET: str = ""
    TIKTOK_SHOP_API_BASE: str = "https://open-api.tiktokglobalshop.com"
    TIKTOK_AUTH_BASE: str = "https://auth.tiktok-shops.com"
    TIKTOK_SHOP_API_VERSION: str = "202309"

    # Upstream error code for "expired credentials"
    EXPIRED_CREDENTIALS_CODE: int = 105002

    # Refresh access tokens this many seconds before they expire
    TOKEN_EXPIRY_BUFFER_SECONDS: int = 300

    # Time windows (days)
    ORDERS_FIRST_SYNC_DAYS: int = 365
    ORDERS_FALLBACK_DAYS: int = 7
    SETTLEMENTS_FIRST_SYNC_DAYS: int = 30
    SETTLEMENTS_FALLBACK_DAYS: int = 365
    PERFORMANCE_WINDOW_DAYS: int = 30

    # Pagination and persistence
    PAGE_SIZE: int = 100
    MAX_PAGES: int = 500
    PRODUCT_MAX_PAGES: int = 50
    UPSERT_BATCH_SIZE: int = 20
    SYNCED_READ_PAGE_SIZE: int = 1000

    # Staleness thresholds
    PROMPT_THRESHOLD_MINUTES: int = 30
    AUTO_SYNC_THRESHOLD_HOURS: int = 24

    # Finance estimate: share of (order revenue - settled revenue) expected to land
    UNSETTLED_REVENUE_FACTOR: float = 0.85

    # Scheduled sweep
    SWEEP_MAX_CONCURRENT_SHOPS: int = 4
    CRON_SECRET: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
