"""TikTok Shop Open API client.

WHAT:
    Async wrapper for the TikTok Shop Open API (202309 endpoints) with:
    - Request signing (HMAC-SHA256 keyed by the app secret)
    - Envelope handling ({code, message, request_id, data})
    - Bounded waits on HTTP 429; 5xx and transport errors fail fast

WHY:
    Encapsulates all upstream interaction for the synchronizers. Methods return
    the raw `data` object; shape differences between endpoint versions are
    resolved by services/response_normalizer.py, never here.

REFERENCES:
    - https://partner.tiktokshop.com/docv2/page/sign-your-api-request
    - https://partner.tiktokshop.com/docv2/page/refresh-access-token
    - services/token_service.py (expired-credentials handling)
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from shopsync.config import get_settings

logger = logging.getLogger(__name__)

# Parameters never included in the signature base string
EXCLUDED_SIGN_KEYS = ("sign", "access_token")


class TikTokShopAPIError(Exception):
    """Upstream call failed (non-zero envelope code, HTTP or transport error)."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        expired_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.request_id = request_id
        self._expired_code = expired_code if expired_code is not None else get_settings().EXPIRED_CREDENTIALS_CODE

    @property
    def is_expired_credentials(self) -> bool:
        """True when TikTok rejected the access token as expired."""
        return self.code is not None and self.code == self._expired_code


def generate_signature(
    app_secret: str,
    path: str,
    params: Dict[str, Any],
    body: str = "",
) -> str:
    """Sign a request the way TikTok Shop expects.

    Base string: secret + path + sorted(key + value) + body + secret,
    hashed with HMAC-SHA256 using the app secret. `sign` and
    `access_token` are excluded.
    """
    pieces = [path]
    for key in sorted(params):
        if key in EXCLUDED_SIGN_KEYS:
            continue
        pieces.append(f"{key}{params[key]}")
    if body:
        pieces.append(body)
    base = app_secret + "".join(pieces) + app_secret
    return hmac.new(app_secret.encode("utf-8"), base.encode("utf-8"), hashlib.sha256).hexdigest()


class TikTokShopClient:
    """Client for TikTok Shop Open API.

    Usage:
        client = TikTokShopClient()
        data = await client.search_orders(token, cipher, create_time_ge=1700000000)
    """

    def __init__(
        self,
        app_key: Optional[str] = None,
        app_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        auth_base: Optional[str] = None,
        api_version: Optional[str] = None,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.app_key = app_key if app_key is not None else settings.TIKTOK_SHOP_APP_KEY
        self.app_secret = app_secret if app_secret is not None else settings.TIKTOK_SHOP_APP_SECRET
        self.api_base = (api_base or settings.TIKTOK_SHOP_API_BASE).rstrip("/")
        self.auth_base = (auth_base or settings.TIKTOK_AUTH_BASE).rstrip("/")
        self.api_version = api_version or settings.TIKTOK_SHOP_API_VERSION
        self.expired_code = settings.EXPIRED_CREDENTIALS_CODE
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self._transport = transport

    def _validate_credentials(self) -> None:
        if not self.app_key or not self.app_secret:
            raise TikTokShopAPIError("TikTok Shop API credentials not configured")

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _unwrap(self, payload: Dict[str, Any], path: str) -> Any:
        code = payload.get("code", 0)
        if code not in (0, "0", None):
            message = payload.get("message") or "unknown error"
            logger.warning("[TIKTOK_CLIENT] %s failed: code=%s message=%s", path, code, message)
            raise TikTokShopAPIError(
                f"API request failed: {message}",
                code=int(code),
                request_id=payload.get("request_id"),
                expired_code=self.expired_code,
            )
        return payload.get("data") or {}

    async def _send(
        self,
        method: str,
        url: str,
        path: str,
        retry_rate_limit: bool = True,
        **kwargs,
    ) -> Dict[str, Any]:
        """Send a single request.

        HTTP 429 is waited out and re-sent (at most `retries` attempts) when
        `retry_rate_limit` is set. 5xx responses and transport errors raise
        TikTokShopAPIError on the first failure; envelope error codes are
        handled by the token lifecycle manager.
        """
        attempts = self.retries if retry_rate_limit else 1

        for attempt in range(attempts):
            try:
                async with self._http() as http:
                    response = await http.request(method, url, **kwargs)
            except httpx.RequestError as e:
                logger.warning("[TIKTOK_CLIENT] Request error on %s: %s", path, e)
                raise TikTokShopAPIError(f"Request to {path} failed: {e}") from e

            if response.status_code == 429:
                logger.warning(
                    "[TIKTOK_CLIENT] Rate limited on %s (attempt %d/%d)", path, attempt + 1, attempts,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(float(response.headers.get("Retry-After", self.backoff_seconds * 2)))
                continue

            if response.status_code >= 500:
                logger.warning("[TIKTOK_CLIENT] HTTP %s on %s", response.status_code, path)
                raise TikTokShopAPIError(
                    f"HTTP {response.status_code} from {path}", status_code=response.status_code,
                )

            # 4xx responses may still carry a JSON envelope with a code
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if response.status_code >= 400 and not (isinstance(payload, dict) and payload.get("code")):
                raise TikTokShopAPIError(
                    f"HTTP {response.status_code} from {path}", status_code=response.status_code,
                )
            if not isinstance(payload, dict):
                raise TikTokShopAPIError(f"Malformed response from {path}", status_code=response.status_code)
            return payload

        raise TikTokShopAPIError(f"Rate limited on {path} after {attempts} attempts", status_code=429)

    async def request(
        self,
        method: str,
        path: str,
        access_token: str,
        shop_cipher: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make a signed request and return the envelope's `data`."""
        self._validate_credentials()

        query: Dict[str, Any] = {"app_key": self.app_key, "timestamp": str(int(time.time()))}
        if shop_cipher:
            query["shop_cipher"] = shop_cipher
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value

        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        query["sign"] = generate_signature(self.app_secret, path, query, body_text)

        headers = {
            "x-tts-access-token": access_token,
            "Content-Type": "application/json",
        }

        logger.debug("[TIKTOK_CLIENT] %s %s", method, path)
        payload = await self._send(
            method,
            f"{self.api_base}{path}",
            path,
            params=query,
            headers=headers,
            content=body_text if body is not None else None,
        )
        return self._unwrap(payload, path)

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new access/refresh token pair.

        Returns the raw token payload (access_token, access_token_expire_in,
        refresh_token, refresh_token_expire_in, ...).
        """
        self._validate_credentials()
        path = "/api/v2/token/refresh"
        params = {
            "app_key": self.app_key,
            "app_secret": self.app_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        # A failed refresh is final; no retry at this layer
        payload = await self._send("GET", f"{self.auth_base}{path}", path, retry_rate_limit=False, params=params)
        return self._unwrap(payload, path)

    # =========================================================================
    # ORDERS / PRODUCTS / FINANCE
    # =========================================================================

    async def search_orders(
        self,
        access_token: str,
        shop_cipher: str,
        create_time_ge: int,
        page_size: int = 100,
        page_token: Optional[str] = None,
    ) -> Any:
        """One page of orders, newest first, created at or after create_time_ge."""
        return await self.request(
            "POST",
            f"/order/{self.api_version}/orders/search",
            access_token,
            shop_cipher,
            params={
                "page_size": page_size,
                "page_token": page_token,
                "sort_field": "create_time",
                "sort_order": "DESC",
            },
            body={"create_time_ge": create_time_ge},
        )

    async def search_products(
        self,
        access_token: str,
        shop_cipher: str,
        page_size: int = 100,
        page_token: Optional[str] = None,
    ) -> Any:
        """One page of active product listings."""
        return await self.request(
            "POST",
            f"/product/{self.api_version}/products/search",
            access_token,
            shop_cipher,
            params={"page_size": page_size, "page_token": page_token},
            body={"status": "ACTIVATE"},
        )

    async def get_product_detail(self, access_token: str, shop_cipher: str, product_id: str) -> Any:
        return await self.request(
            "GET",
            f"/product/{self.api_version}/products/{product_id}",
            access_token,
            shop_cipher,
        )

    async def get_statements(
        self,
        access_token: str,
        shop_cipher: str,
        statement_time_ge: int,
        page_size: int = 100,
        page_token: Optional[str] = None,
    ) -> Any:
        """One page of finance statements, newest first."""
        return await self.request(
            "GET",
            f"/finance/{self.api_version}/statements",
            access_token,
            shop_cipher,
            params={
                "statement_time_ge": statement_time_ge,
                "page_size": page_size,
                "page_token": page_token,
                "sort_field": "statement_time",
                "sort_order": "DESC",
            },
        )

    async def get_product_performance(
        self,
        access_token: str,
        shop_cipher: str,
        start_date: str,
        end_date: str,
        page_size: int = 100,
        page_token: Optional[str] = None,
    ) -> Any:
        """Per-product analytics (CTR, GMV, orders, units) for [start_date, end_date)."""
        return await self.request(
            "GET",
            "/analytics/202405/shop_products/performance",
            access_token,
            shop_cipher,
            params={
                "start_date_ge": start_date,
                "end_date_lt": end_date,
                "page_size": page_size,
                "page_token": page_token,
            },
        )
