"""Token lifecycle for TikTok Shop connections.

WHAT:
    Encrypts/persists shop tokens and guarantees a usable access token before
    any upstream call:
    - Proactive refresh when the token expires within the safety buffer
    - Reactive refresh on the "expired credentials" error code, with exactly
      one retry of the failed operation

WHY:
    - Keeps encryption and refresh logic out of synchronizers and routers.
    - A single, bounded retry policy for token failures; nothing here loops.

REFERENCES:
    - shopsync/security.py (encrypt_secret / decrypt_secret)
    - shopsync/services/tiktok_shop_client.py (refresh_access_token, error codes)
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from sqlalchemy.orm import Session

from shopsync.config import get_settings
from shopsync.models import TikTokShop
from shopsync.utils.clock import utcnow
from shopsync.security import encrypt_secret, decrypt_secret
from shopsync.services.response_normalizer import normalize_token_grant
from shopsync.services.tiktok_shop_client import TikTokShopAPIError, TikTokShopClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (access_token, shop_cipher) -> awaitable result
ShopOperation = Callable[[str, Optional[str]], Awaitable[T]]


class TokenRefreshError(Exception):
    """Refreshing a shop's access token failed."""

    def __init__(self, message: str, shop_id: Optional[str] = None):
        super().__init__(message)
        self.shop_id = shop_id


def _label(shop: TikTokShop) -> str:
    return f"tiktok_shop:{shop.shop_id}"


def store_shop_tokens(
    db: Session,
    shop: TikTokShop,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    refresh_expires_at: Optional[datetime] = None,
) -> TikTokShop:
    """Encrypt and persist tokens on the shop row.

    A missing refresh token keeps the stored one (TikTok may omit it when it
    has not rotated).
    """
    label = _label(shop)
    if access_token:
        shop.access_token_enc = encrypt_secret(access_token, context=f"{label}:access")
        shop.token_expires_at = expires_at
    if refresh_token:
        shop.refresh_token_enc = encrypt_secret(refresh_token, context=f"{label}:refresh")
        shop.refresh_token_expires_at = refresh_expires_at

    db.add(shop)
    logger.info("[TOKEN_SERVICE] Stored encrypted tokens for %s (expires_at=%s)", label, shop.token_expires_at)
    return shop


def get_decrypted_token(shop: TikTokShop, token_type: str = "access") -> Optional[str]:
    """Decrypt the shop's access or refresh token; None if absent or unreadable."""
    label = _label(shop)
    if token_type not in ("access", "refresh"):
        logger.error("[TOKEN_SERVICE] Invalid token_type: %s", token_type)
        return None
    ciphertext = shop.access_token_enc if token_type == "access" else shop.refresh_token_enc
    if not ciphertext:
        logger.warning("[TOKEN_SERVICE] No %s token for %s", token_type, label)
        return None

    try:
        return decrypt_secret(ciphertext, context=f"{label}:{token_type}")
    except ValueError as e:
        logger.error("[TOKEN_SERVICE] Failed to decrypt %s token for %s: %s", token_type, label, e)
        return None


class TokenLifecycleManager:
    """Keeps one shop's access token valid across a sync run.

    Usage:
        tokens = TokenLifecycleManager(db, client)
        data = await tokens.execute_with_refresh(
            shop, lambda token, cipher: client.search_orders(token, cipher, since)
        )
    """

    def __init__(
        self,
        db: Session,
        client: TikTokShopClient,
        buffer_seconds: Optional[int] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.client = client
        self.buffer = timedelta(
            seconds=buffer_seconds if buffer_seconds is not None else get_settings().TOKEN_EXPIRY_BUFFER_SECONDS
        )
        self.now_fn = now_fn

    def needs_refresh(self, shop: TikTokShop) -> bool:
        """True when the token is missing or expires within the buffer."""
        if not shop.access_token_enc or shop.token_expires_at is None:
            return True
        return shop.token_expires_at - self.now_fn() < self.buffer

    def is_expired(self, shop: TikTokShop) -> bool:
        return shop.token_expires_at is not None and shop.token_expires_at <= self.now_fn()

    async def refresh(self, shop: TikTokShop) -> str:
        """Call the refresh endpoint and persist the new token pair.

        Raises:
            TokenRefreshError: No refresh token, or the upstream refresh failed
        """
        refresh_token = get_decrypted_token(shop, "refresh")
        if not refresh_token:
            raise TokenRefreshError("No refresh token stored for shop", shop_id=shop.shop_id)

        logger.info("[TOKEN_SERVICE] Refreshing access token for %s", _label(shop))
        try:
            payload = await self.client.refresh_access_token(refresh_token)
            grant = normalize_token_grant(payload, now=self.now_fn())
        except (TikTokShopAPIError, ValueError) as e:
            logger.error("[TOKEN_SERVICE] Token refresh failed for %s: %s", _label(shop), e)
            raise TokenRefreshError(f"Failed to refresh access token: {e}", shop_id=shop.shop_id) from e

        store_shop_tokens(
            self.db,
            shop,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.access_token_expires_at,
            refresh_expires_at=grant.refresh_token_expires_at,
        )
        self.db.commit()
        return grant.access_token

    async def ensure_valid_token(self, shop: TikTokShop, force_refresh: bool = False) -> Tuple[str, Optional[str]]:
        """Return (access_token, shop_cipher), refreshing first when needed."""
        if force_refresh or self.needs_refresh(shop):
            access_token = await self.refresh(shop)
        else:
            access_token = get_decrypted_token(shop, "access")
            if not access_token:
                access_token = await self.refresh(shop)
        return access_token, shop.shop_cipher

    async def execute_with_refresh(self, shop: TikTokShop, operation: ShopOperation) -> T:
        """Run `operation`; on expired credentials refresh once and retry once.

        Any other error, or a second failure, propagates.
        """
        access_token, cipher = await self.ensure_valid_token(shop)
        try:
            return await operation(access_token, cipher)
        except TikTokShopAPIError as e:
            if not e.is_expired_credentials:
                raise
            logger.warning("[TOKEN_SERVICE] Expired credentials for %s, refreshing and retrying once", _label(shop))

        access_token, cipher = await self.ensure_valid_token(shop, force_refresh=True)
        return await operation(access_token, cipher)
