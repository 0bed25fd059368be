"""Tests for Sentry capture helpers."""

import pytest
import sentry_sdk

from shopsync.telemetry import sentry


@pytest.fixture
def sent_events(monkeypatch):
    events = []

    def keep(event, hint):
        events.append(event)
        return None

    sentry_sdk.init(dsn="https://public@sentry.example/1", default_integrations=False, before_send=keep)
    monkeypatch.setattr(sentry, "is_enabled", lambda: True)
    yield events
    sentry_sdk.init()


def test_capture_exception_attaches_extras(sent_events):
    sentry.capture_exception(RuntimeError("upstream down"), extra={"shop_id": "shop-1", "source": "scheduled_sync"})

    assert len(sent_events) == 1
    assert sent_events[0]["extra"]["shop_id"] == "shop-1"
    assert sent_events[0]["extra"]["source"] == "scheduled_sync"


def test_capture_extras_do_not_leak_between_events(sent_events):
    sentry.capture_exception(RuntimeError("first"), extra={"shop_id": "shop-1"})
    sentry.capture_message("page cap reached", level="warning", extra={"resource": "orders"})

    assert len(sent_events) == 2
    assert "resource" not in sent_events[0]["extra"]
    assert "shop_id" not in sent_events[1].get("extra", {})
    assert sent_events[1]["level"] == "warning"


def test_capture_is_a_noop_when_disabled(monkeypatch):
    monkeypatch.setattr(sentry, "is_enabled", lambda: False)

    sentry.capture_exception(RuntimeError("ignored"))
