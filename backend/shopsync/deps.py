"""Dependency providers for FastAPI routes."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from .config import Settings, get_settings
from .database import get_db  # noqa: F401
from .services.tiktok_shop_client import TikTokShopClient


def get_tiktok_client() -> TikTokShopClient:
    """Upstream client; overridden in tests with a fake."""
    return TikTokShopClient()


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>` when a secret is configured."""
    if not settings.CRON_SECRET:
        return
    if authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")
