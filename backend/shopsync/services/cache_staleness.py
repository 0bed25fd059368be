"""Cache staleness evaluation.

WHAT:
    Classifies each resource's last-synced instant against two thresholds:
    - prompt threshold (30 min): ask the user whether to refresh
    - auto-sync threshold (24 h): refresh silently in the background

WHY:
    A resource that never synced is flagged for prompting but never for a
    silent auto-sync, so a first sync is always visible to the user.
    Performance is reported but does not feed the aggregate flags.

REFERENCES:
    - routers/shop_sync.py (GET /cache-status)
    - services/client_sync_coordinator.py (consumer)
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from shopsync.config import get_settings
from shopsync.utils.clock import utcnow

AGGREGATED_RESOURCES = ("orders", "products", "settlements")
REPORTED_RESOURCES = AGGREGATED_RESOURCES + ("performance",)


@dataclass
class ResourceStaleness:
    last_synced_at: Optional[datetime]
    should_prompt: bool
    should_auto_sync: bool


@dataclass
class CacheStatus:
    resources: Dict[str, ResourceStaleness] = field(default_factory=dict)
    should_prompt_user: bool = False
    should_auto_sync: bool = False


def classify(
    last_synced_at: Optional[datetime],
    now: datetime,
    prompt_threshold: timedelta,
    auto_sync_threshold: timedelta,
) -> ResourceStaleness:
    if last_synced_at is None:
        return ResourceStaleness(None, should_prompt=True, should_auto_sync=False)
    age = now - last_synced_at
    return ResourceStaleness(
        last_synced_at,
        should_prompt=age > prompt_threshold,
        should_auto_sync=age > auto_sync_threshold,
    )


def evaluate_cache_status(
    last_synced: Mapping[str, Optional[datetime]],
    now: Optional[datetime] = None,
    prompt_threshold: Optional[timedelta] = None,
    auto_sync_threshold: Optional[timedelta] = None,
) -> CacheStatus:
    """Per-resource staleness plus OR-aggregates over orders/products/settlements."""
    settings = get_settings()
    now = now or utcnow()
    prompt_threshold = prompt_threshold or timedelta(minutes=settings.PROMPT_THRESHOLD_MINUTES)
    auto_sync_threshold = auto_sync_threshold or timedelta(hours=settings.AUTO_SYNC_THRESHOLD_HOURS)

    status = CacheStatus()
    for name in REPORTED_RESOURCES:
        status.resources[name] = classify(last_synced.get(name), now, prompt_threshold, auto_sync_threshold)

    status.should_prompt_user = any(status.resources[name].should_prompt for name in AGGREGATED_RESOURCES)
    status.should_auto_sync = any(status.resources[name].should_auto_sync for name in AGGREGATED_RESOURCES)
    return status


def cache_status_to_dict(status: CacheStatus) -> Dict[str, Any]:
    """Wire shape shared by GET /cache-status and the in-process backend."""
    return {
        "resources": {
            name: {
                "last_synced_at": info.last_synced_at.isoformat() if info.last_synced_at else None,
                "should_prompt": info.should_prompt,
                "should_auto_sync": info.should_auto_sync,
            }
            for name, info in status.resources.items()
        },
        "should_prompt_user": status.should_prompt_user,
        "should_auto_sync": status.should_auto_sync,
    }
