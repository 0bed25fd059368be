"""
Telemetry Module
================

Observability for the sync engine. Logging uses stdlib module loggers with
bracketed component tags; errors that are caught and isolated are reported
to Sentry.

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name

Usage:
    from shopsync.telemetry import init_observability, capture_exception

    init_observability()
"""

import logging

from shopsync.telemetry.sentry import (
    init_sentry,
    set_shop_context,
    capture_exception,
    capture_message,
)

logger = logging.getLogger(__name__)


def init_observability() -> dict:
    """Initialize observability tools; returns what was enabled."""
    status = {"sentry": init_sentry()}
    logger.info("[TELEMETRY] Observability initialized: %s", status)
    return status


__all__ = [
    "init_observability",
    "init_sentry",
    "set_shop_context",
    "capture_exception",
    "capture_message",
]
