"""Tests for cache staleness classification."""

from datetime import timedelta

from conftest import NOW
from shopsync.services.cache_staleness import cache_status_to_dict, evaluate_cache_status


def _status(**ages):
    last_synced = {name: (NOW - age if age is not None else None) for name, age in ages.items()}
    return evaluate_cache_status(last_synced, now=NOW)


def test_never_synced_prompts_but_does_not_auto_sync():
    info = _status(orders=None).resources["orders"]
    assert info.should_prompt is True
    assert info.should_auto_sync is False


def test_two_hours_old_prompts_only():
    info = _status(orders=timedelta(hours=2)).resources["orders"]
    assert info.should_prompt is True
    assert info.should_auto_sync is False


def test_twenty_five_hours_old_prompts_and_auto_syncs():
    info = _status(orders=timedelta(hours=25)).resources["orders"]
    assert info.should_prompt is True
    assert info.should_auto_sync is True


def test_ten_minutes_old_is_fresh():
    info = _status(orders=timedelta(minutes=10)).resources["orders"]
    assert info.should_prompt is False
    assert info.should_auto_sync is False


def test_aggregates_ignore_performance():
    status = _status(
        orders=timedelta(minutes=5),
        products=timedelta(minutes=5),
        settlements=timedelta(minutes=5),
        performance=timedelta(days=3),
    )

    assert status.resources["performance"].should_auto_sync is True
    assert status.should_prompt_user is False
    assert status.should_auto_sync is False


def test_aggregates_are_any_over_core_resources():
    status = _status(
        orders=timedelta(minutes=5),
        products=timedelta(hours=30),
        settlements=None,
    )

    assert status.should_prompt_user is True
    assert status.should_auto_sync is True


def test_missing_resources_count_as_never_synced():
    status = evaluate_cache_status({}, now=NOW)

    assert set(status.resources) == {"orders", "products", "settlements", "performance"}
    assert status.should_prompt_user is True
    assert status.should_auto_sync is False


def test_custom_thresholds():
    status = evaluate_cache_status(
        {"orders": NOW - timedelta(minutes=20)},
        now=NOW,
        prompt_threshold=timedelta(minutes=15),
        auto_sync_threshold=timedelta(minutes=18),
    )

    assert status.resources["orders"].should_prompt is True
    assert status.resources["orders"].should_auto_sync is True


def test_wire_shape_uses_iso_timestamps():
    last = NOW - timedelta(hours=1)
    payload = cache_status_to_dict(evaluate_cache_status({"orders": last}, now=NOW))

    assert payload["resources"]["orders"] == {
        "last_synced_at": last.isoformat(),
        "should_prompt": True,
        "should_auto_sync": False,
    }
    assert payload["resources"]["products"]["last_synced_at"] is None
    assert payload["should_prompt_user"] is True
