"""Client sync coordinator: tiered cache, refresh prompts, and sync progress.

WHAT:
    Drives what a dashboard client shows for a shop:
    - Tiered in-memory cache per shop (fresh <5 min, moderately stale
      5-30 min, stale >30 min) held in an injected CacheStore
    - Refresh prompts with a 30-minute dismissal cooldown
    - First-time auto sync on an empty mirror, silent auto sync past 24h
    - A cancellable progress state machine:
      idle -> orders/products/settlements -> complete -> idle

WHY:
    The engine talks to storage and the upstream API through a backend
    (in-process or HTTP, see services/sync_backends.py) so the same policy
    runs inside tests, workers and remote clients. Failures never blank the
    screen: the last good snapshot stays visible with an inline message.

REFERENCES:
    - services/cache_staleness.py (server-side staleness flags)
    - services/sync_backends.py (LocalSyncBackend, HttpSyncBackend)
    - services/finance_service.py (metrics on every snapshot)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from shopsync.services.finance_service import ShopMetrics, compute_shop_metrics
from shopsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

INLINE_ERROR_MESSAGE = "We're having trouble fetching some data."

FRESH_CACHE_AGE = timedelta(minutes=5)
STALE_CACHE_AGE = timedelta(minutes=30)
PROMPT_DISMISS_COOLDOWN = timedelta(minutes=30)

COMPLETE_DISPLAY_SECONDS = 1.0
CANCEL_DISPLAY_SECONDS = 1.5


class SyncStep(str, enum.Enum):
    idle = "idle"
    orders = "orders"
    products = "products"
    settlements = "settlements"
    complete = "complete"


class CacheTier(str, enum.Enum):
    fresh = "fresh"
    moderately_stale = "moderately_stale"
    stale = "stale"


SYNC_STEPS = (SyncStep.orders, SyncStep.products, SyncStep.settlements)

SYNC_TYPE_STEPS: Dict[str, tuple] = {
    "all": SYNC_STEPS,
    "orders": (SyncStep.orders,),
    "products": (SyncStep.products,),
    "settlements": (SyncStep.settlements,),
    "finance": (SyncStep.settlements,),
}

STEP_LABELS = {
    SyncStep.orders: ("Orders", "Syncing orders..."),
    SyncStep.products: ("Products", "Syncing products..."),
    SyncStep.settlements: ("Financial data", "Syncing financial data..."),
}


# =============================================================================
# STATE
# =============================================================================

@dataclass
class ShopSnapshot:
    """Rows as served by the synced-read endpoints (serialized dicts)."""
    products: List[Dict[str, Any]] = field(default_factory=list)
    orders: List[Dict[str, Any]] = field(default_factory=list)
    statements: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.products and not self.orders


@dataclass
class SyncProgress:
    current_step: SyncStep = SyncStep.idle
    is_active: bool = False
    is_first_sync: bool = False
    cancelled: bool = False
    message: str = ""
    orders_complete: bool = False
    products_complete: bool = False
    settlements_complete: bool = False
    orders_fetched: int = 0
    products_fetched: int = 0
    settlements_fetched: int = 0

    def mark_complete(self, step: SyncStep, fetched: int) -> None:
        setattr(self, f"{step.value}_complete", True)
        setattr(self, f"{step.value}_fetched", fetched)


@dataclass
class CacheMetadata:
    last_synced: Dict[str, Optional[str]] = field(default_factory=dict)
    last_prompt_dismissed_at: Optional[datetime] = None
    last_sync_stats: Optional[Dict[str, Any]] = None
    is_first_sync: bool = False


@dataclass
class CacheEntry:
    snapshot: ShopSnapshot
    metrics: ShopMetrics
    captured_at: datetime
    metadata: CacheMetadata = field(default_factory=CacheMetadata)


class CacheStore:
    """In-memory cache entries keyed by shop id; owned by one coordinator."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, shop_id: str) -> Optional[CacheEntry]:
        return self._entries.get(shop_id)

    def put(self, shop_id: str, entry: CacheEntry) -> None:
        self._entries[shop_id] = entry

    def invalidate(self, shop_id: str) -> None:
        self._entries.pop(shop_id, None)

    def __contains__(self, shop_id: str) -> bool:
        return shop_id in self._entries


def classify_cache_age(age: timedelta) -> CacheTier:
    if age < FRESH_CACHE_AGE:
        return CacheTier.fresh
    if age < STALE_CACHE_AGE:
        return CacheTier.moderately_stale
    return CacheTier.stale


class SyncBackend:
    """What the coordinator needs from storage + engine."""

    async def get_cache_status(self, account_id: str, shop_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def load_snapshot(self, account_id: str, shop_id: str) -> ShopSnapshot:
        raise NotImplementedError

    async def sync(self, account_id: str, shop_id: str, sync_type: str) -> Dict[str, Any]:
        raise NotImplementedError


# =============================================================================
# COORDINATOR
# =============================================================================

class ClientSyncCoordinator:
    """Client-side cache/prompt/sync policy for one viewer.

    Events (register with `on`): "refresh_prompt", "progress", "error",
    "data_loaded". Listeners receive a single payload argument.
    """

    def __init__(
        self,
        backend: SyncBackend,
        cache: Optional[CacheStore] = None,
        now_fn: Callable[[], datetime] = utcnow,
        complete_display_seconds: float = COMPLETE_DISPLAY_SECONDS,
        cancel_display_seconds: float = CANCEL_DISPLAY_SECONDS,
    ):
        self.backend = backend
        self.cache = cache if cache is not None else CacheStore()
        self.now_fn = now_fn
        self.complete_display_seconds = complete_display_seconds
        self.cancel_display_seconds = cancel_display_seconds

        self.current_account_id: Optional[str] = None
        self.current_shop_id: Optional[str] = None
        self.snapshot = ShopSnapshot()
        self.metrics = ShopMetrics()
        self.captured_at: Optional[datetime] = None
        self.metadata = CacheMetadata()

        self.error: Optional[str] = None
        self.show_refresh_prompt = False
        self.is_syncing = False
        self.progress = SyncProgress()
        self.last_sync_error: Optional[BaseException] = None

        self._cancel_requested = False
        self._dismissed_at: Dict[str, datetime] = {}
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}
        self._background_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Callable[[Any], None]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def _emit(self, event: str, payload: Any = None) -> None:
        for callback in list(self._listeners.get(event, ())):
            callback(payload)

    # -------------------------------------------------------------------------
    # Snapshot / cache helpers
    # -------------------------------------------------------------------------

    def _set_snapshot(self, snapshot: ShopSnapshot, captured_at: datetime) -> None:
        self.snapshot = snapshot
        self.metrics = compute_shop_metrics(snapshot.orders, snapshot.products, snapshot.statements)
        self.captured_at = captured_at

    def _reset_view(self) -> None:
        """Drop the previous shop's data before an uncached shop loads."""
        self.snapshot = ShopSnapshot()
        self.metrics = ShopMetrics()
        self.captured_at = None
        self.metadata = CacheMetadata()
        self.show_refresh_prompt = False

    def _save_current_to_cache(self) -> None:
        if not self.current_shop_id or self.captured_at is None:
            return
        self.cache.put(
            self.current_shop_id,
            CacheEntry(
                snapshot=self.snapshot,
                metrics=self.metrics,
                captured_at=self.captured_at,
                metadata=self.metadata,
            ),
        )
        logger.debug("[SYNC_COORDINATOR] Cached snapshot for shop %s", self.current_shop_id)

    def _prompt_allowed(self, shop_id: str) -> bool:
        dismissed = self._dismissed_at.get(shop_id)
        return dismissed is None or self.now_fn() - dismissed > PROMPT_DISMISS_COOLDOWN

    def _raise_prompt(self, shop_id: str) -> None:
        if not self._prompt_allowed(shop_id):
            logger.debug("[SYNC_COORDINATOR] Prompt recently dismissed for shop %s", shop_id)
            return
        self.show_refresh_prompt = True
        self._emit("refresh_prompt", shop_id)

    def _report_error(self, exc: BaseException) -> None:
        self.error = INLINE_ERROR_MESSAGE
        self._emit("error", exc)

    def dismiss_refresh_prompt(self) -> None:
        self.show_refresh_prompt = False
        if self.current_shop_id:
            self._dismissed_at[self.current_shop_id] = self.now_fn()
            self.metadata.last_prompt_dismissed_at = self._dismissed_at[self.current_shop_id]

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    async def fetch_shop_data(
        self,
        account_id: str,
        shop_id: str,
        force_refresh: bool = False,
        skip_sync_check: bool = False,
    ) -> Optional[CacheTier]:
        """Show data for a shop, from cache when possible.

        Returns the cache tier served, or None when storage was read.
        """
        switching = shop_id != self.current_shop_id
        if switching and self.current_shop_id:
            self._save_current_to_cache()

        self.current_account_id = account_id
        self.current_shop_id = shop_id
        self.error = None

        entry = None if force_refresh else self.cache.get(shop_id)
        if entry is not None:
            return self._serve_cached(shop_id, entry, skip_sync_check)

        if switching:
            self._reset_view()

        await self._load_from_storage(account_id, shop_id, force_refresh, skip_sync_check)
        return None

    def _serve_cached(self, shop_id: str, entry: CacheEntry, skip_sync_check: bool) -> CacheTier:
        self.snapshot = entry.snapshot
        self.metrics = entry.metrics
        self.captured_at = entry.captured_at
        self.metadata = entry.metadata
        self._emit("data_loaded", shop_id)

        tier = classify_cache_age(self.now_fn() - entry.captured_at)
        logger.info("[SYNC_COORDINATOR] Cache hit for shop %s (%s)", shop_id, tier.value)

        if tier == CacheTier.stale and not skip_sync_check:
            self._raise_prompt(shop_id)
        return tier

    async def _load_from_storage(
        self,
        account_id: str,
        shop_id: str,
        force_refresh: bool,
        skip_sync_check: bool,
    ) -> None:
        try:
            status: Optional[Dict[str, Any]] = None
            if not skip_sync_check:
                status = await self.backend.get_cache_status(account_id, shop_id)

            snapshot = await self.backend.load_snapshot(account_id, shop_id)
            self._set_snapshot(snapshot, self.now_fn())
            if status is not None:
                self.metadata.last_synced = {
                    name: info.get("last_synced_at") for name, info in status.get("resources", {}).items()
                }
            self._emit("data_loaded", shop_id)
            logger.info(
                "[SYNC_COORDINATOR] Loaded shop %s from storage: products=%d orders=%d statements=%d",
                shop_id, len(snapshot.products), len(snapshot.orders), len(snapshot.statements),
            )

            if skip_sync_check or self.is_syncing:
                return

            if snapshot.is_empty:
                logger.info("[SYNC_COORDINATOR] No data for shop %s, starting first sync", shop_id)
                await self.sync_data(account_id, shop_id, "all")
                return

            if status and status.get("should_auto_sync"):
                logger.info("[SYNC_COORDINATOR] Shop %s past auto-sync threshold, syncing in background", shop_id)
                self.start_background_sync(account_id, shop_id, "all")
            elif status and (status.get("should_prompt_user") or force_refresh):
                self._raise_prompt(shop_id)

        except Exception as e:
            logger.warning("[SYNC_COORDINATOR] Failed to load shop %s: %s", shop_id, e)
            self._report_error(e)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def _initial_message(self, steps, is_first_sync: bool) -> str:
        if is_first_sync:
            return "First time syncing! This may take a few minutes..."
        return STEP_LABELS[steps[0]][1]

    def _step_done_message(self, step: SyncStep, next_step: Optional[SyncStep]) -> str:
        label = STEP_LABELS[step][0]
        if next_step is None:
            return f"{label} synced successfully!"
        return f"{label} synced! {STEP_LABELS[next_step][1]}"

    async def sync_data(self, account_id: str, shop_id: str, sync_type: str = "all") -> Optional[Dict[str, Any]]:
        """Run the requested steps in order; returns per-step stats, or None if cancelled.

        Raises:
            ValueError: Unknown sync type
            Exception: Whatever the backend raised (after updating state)
        """
        steps = SYNC_TYPE_STEPS.get(sync_type)
        if not steps:
            raise ValueError(f"Unknown sync type: {sync_type}")

        is_first_sync = self.snapshot.is_empty
        self._cancel_requested = False
        self.is_syncing = True
        self.progress = SyncProgress(
            current_step=steps[0],
            is_active=True,
            is_first_sync=is_first_sync,
            message=self._initial_message(steps, is_first_sync),
            orders_complete=SyncStep.orders not in steps,
            products_complete=SyncStep.products not in steps,
            settlements_complete=SyncStep.settlements not in steps,
        )
        self._emit("progress", self.progress)

        stats: Dict[str, Any] = {}
        first_sync_flag: Optional[bool] = None
        try:
            for index, step in enumerate(steps):
                if self._cancel_requested:
                    return None

                result = await self.backend.sync(account_id, shop_id, step.value)

                if self._cancel_requested:
                    logger.info("[SYNC_COORDINATOR] Sync cancelled after %s for shop %s", step.value, shop_id)
                    return None

                if first_sync_flag is None:
                    first_sync_flag = bool(result.get("is_first_sync"))
                step_stats = (result.get("stats") or {}).get(step.value) or {}
                stats[step.value] = step_stats
                if result.get("errors"):
                    logger.warning("[SYNC_COORDINATOR] %s reported errors: %s", step.value, result["errors"])
                    self.error = INLINE_ERROR_MESSAGE
                    self._emit("error", result["errors"])

                next_step = steps[index + 1] if index + 1 < len(steps) else None
                self.progress.mark_complete(step, int(step_stats.get("fetched") or 0))
                self.progress.current_step = next_step or SyncStep.complete
                self.progress.message = self._step_done_message(step, next_step)
                self._emit("progress", self.progress)

            self.progress.current_step = SyncStep.complete
            self.progress.message = "Updating display..."
            self._emit("progress", self.progress)

            sync_error = self.error
            await self.fetch_shop_data(account_id, shop_id, force_refresh=True, skip_sync_check=True)
            self.error = self.error or sync_error
            self.cache.invalidate(shop_id)

            self.metadata.last_sync_stats = stats
            self.metadata.is_first_sync = bool(first_sync_flag)
            self.show_refresh_prompt = False
            self._dismissed_at[shop_id] = self.now_fn()
            self.progress.message = "Sync complete!"
            self._emit("progress", self.progress)

            await asyncio.sleep(self.complete_display_seconds)
            if not self._cancel_requested and self.progress.current_step == SyncStep.complete:
                self.progress = SyncProgress()
                self._emit("progress", self.progress)
            return stats

        except Exception as e:
            logger.warning("[SYNC_COORDINATOR] Sync failed for shop %s: %s", shop_id, e)
            self.last_sync_error = e
            self.progress = SyncProgress(message=f"Sync failed: {e}")
            self._report_error(e)
            self._emit("progress", self.progress)
            raise
        finally:
            self.is_syncing = False

    def start_background_sync(self, account_id: str, shop_id: str, sync_type: str = "all") -> asyncio.Task:
        """Spawn sync_data as a task; failures land in `last_sync_error` and the task resolves to None."""

        async def runner() -> Optional[Dict[str, Any]]:
            try:
                return await self.sync_data(account_id, shop_id, sync_type)
            except Exception as e:
                self.last_sync_error = e
                return None

        self.last_sync_error = None
        self._background_task = asyncio.create_task(runner())
        return self._background_task

    def request_cancel(self) -> None:
        """Stop advancing to the next step; data already persisted stays."""
        self._cancel_requested = True
        self.is_syncing = False
        self.progress = SyncProgress(cancelled=True, message="Sync cancelled")
        if self.current_shop_id:
            self.cache.invalidate(self.current_shop_id)
        self._emit("progress", self.progress)

    async def cancel_sync(self) -> None:
        """Cancel, then clear the cancelled message after the display delay."""
        self.request_cancel()
        await asyncio.sleep(self.cancel_display_seconds)
        if self.progress.cancelled:
            self.progress.message = ""
            self._emit("progress", self.progress)
