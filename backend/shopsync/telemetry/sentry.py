"""
Sentry Error Tracking
=====================

Centralized error tracking for the sync engine.

Related files:
- shopsync/main.py: Initializes Sentry on app startup
- shopsync/workers/arq_worker.py: Initializes Sentry on worker startup
- shopsync/services/sync_orchestrator.py: Reports isolated resource/shop failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def is_enabled() -> bool:
    return bool(get_sentry_dsn())


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once during application or worker startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug("[SENTRY] Initialized for %s environment", environment)
        return True
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def set_shop_context(shop_id: str, account_id: Optional[str] = None) -> None:
    """Tag subsequent events with the shop being synced."""
    if not is_enabled():
        return

    sentry_sdk.set_tag("shop_id", shop_id)
    if account_id:
        sentry_sdk.set_tag("account_id", account_id)


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture an exception that was caught and handled.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            stats = await synchronizer.sync(shop, is_first_sync)
        except Exception as e:
            capture_exception(e, extra={"resource": "orders", "shop_id": shop.shop_id})
    """
    if not is_enabled():
        logger.debug("[SENTRY] Disabled, not capturing %r", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a noteworthy non-exception event (e.g., a page cap was hit).

    Args:
        message: The message to capture
        level: Severity level (debug, info, warning, error, fatal)
        extra: Additional context to attach
    """
    if not is_enabled():
        logger.log(logging.getLevelName(level.upper()), "Message (Sentry disabled): %s", message)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
