"""In-memory weather data cache with stale-while-revalidate.

Lookups fall into three windows, measured against the entry's category TTL:

  fresh   now < expires_at                     value returned
  grace   expires_at <= now < expires_at+grace stale value returned, refresh scheduled
  expired beyond grace                         entry dropped, miss

The table is the single authority; snapshots are a best-effort copy written in
the background after every change and read once at startup. Snapshot failures
never cross the CacheStore boundary.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from pydantic import ValidationError

from weathercache.analytics import AnalyticsRecorder
from weathercache.errors import ErrorCode, WeatherCacheError
from weathercache.models.cache import (
    CacheEntry,
    CachedResponse,
    CacheStats,
    Category,
    TTLConfig,
)
from weathercache.refresh import RefreshCoordinator
from weathercache.snapshot import NullSnapshotStore, SnapshotWriter

if TYPE_CHECKING:
    from collections.abc import Callable

    from weathercache.clock import Clock, TimerHandle
    from weathercache.config import CacheSettings
    from weathercache.refresh import FetchFn
    from weathercache.snapshot import SnapshotStore

log = structlog.get_logger()

T = TypeVar("T")


class _Freshness(Enum):
    FRESH = "fresh"
    GRACE = "grace"
    EXPIRED = "expired"


class CacheStore:
    """Key → CacheEntry table with per-category TTLs."""

    def __init__(
        self,
        clock: Clock,
        settings: CacheSettings,
        *,
        analytics: AnalyticsRecorder | None = None,
        coordinator: RefreshCoordinator | None = None,
        snapshot_store: SnapshotStore | None = None,
    ) -> None:
        self._clock = clock
        self._settings = settings
        self._ttl = settings.ttl
        self._analytics = analytics or AnalyticsRecorder(clock)
        self._coordinator = coordinator or RefreshCoordinator(
            clock, self._analytics, timeout_seconds=settings.refresh_timeout_seconds
        )
        self._snapshot_store = snapshot_store or NullSnapshotStore()
        self._writer = SnapshotWriter(self._snapshot_store, self._serialize, "cache")
        self._entries: dict[str, CacheEntry] = {}
        # Last fetch function seen per key; lets plain get() revalidate.
        self._fetchers: dict[str, tuple[str, FetchFn[Any]]] = {}
        self._sweep_timer: TimerHandle | None = None

    @property
    def analytics(self) -> AnalyticsRecorder:
        return self._analytics

    @property
    def coordinator(self) -> RefreshCoordinator:
        return self._coordinator

    # ------------------------------------------------------------------
    # TTL configuration
    # ------------------------------------------------------------------

    @property
    def ttl_config(self) -> TTLConfig:
        return self._ttl

    def update_ttl_config(self, **overrides: float) -> TTLConfig:
        """Merge ``overrides`` into the TTL config. Existing entries keep their expiry."""
        self._ttl = self._ttl.merged(**overrides)
        log.info("cache_ttl_updated", **self._ttl.model_dump())
        return self._ttl

    def grace_period(self, category: str) -> float:
        return self._ttl.ttl_for(category) * self._settings.grace_fraction

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        key: str,
        category: str = Category.DEFAULT,
        fetch_fn: FetchFn[Any] | None = None,
    ) -> Any | None:
        """Return the cached value, a stale one inside the grace window, or ``None``."""
        entry, _ = self._lookup(key, category, fetch_fn)
        return entry.data if entry is not None else None

    def peek(self, key: str) -> CacheEntry | None:
        """Raw entry, ignoring expiry. No analytics, no refresh."""
        return self._entries.get(key)

    def is_stale(self, key: str) -> bool:
        """True when no fresh value is held for ``key``."""
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self._freshness(entry) is not _Freshness.FRESH

    def keys(self) -> list[str]:
        return list(self._entries)

    def get_stats(self) -> CacheStats:
        return CacheStats(size=len(self._entries), keys=list(self._entries))

    def _lookup(
        self, key: str, category: str, fetch_fn: FetchFn[Any] | None
    ) -> tuple[CacheEntry | None, _Freshness]:
        entry = self._entries.get(key)
        if entry is None:
            self._analytics.record_miss(key)
            return None, _Freshness.EXPIRED

        freshness = self._freshness(entry)
        if freshness is _Freshness.FRESH:
            self._analytics.record_hit(key)
            return entry, freshness

        if freshness is _Freshness.GRACE:
            log.debug("cache_stale_serve", key=key, category=str(category))
            self._analytics.record_hit(key)
            self._analytics.record_stale_serve(key)
            self._revalidate(key, category, fetch_fn)
            return entry, freshness

        del self._entries[key]
        self._fetchers.pop(key, None)
        self._analytics.record_miss(key)
        self._writer.schedule()
        return None, freshness

    def _freshness(self, entry: CacheEntry) -> _Freshness:
        now = self._clock.now()
        if now < entry.expires_at:
            return _Freshness.FRESH
        if now < entry.expires_at + self.grace_period(entry.category):
            return _Freshness.GRACE
        return _Freshness.EXPIRED

    def _revalidate(self, key: str, category: str, fetch_fn: FetchFn[Any] | None) -> bool:
        if fetch_fn is None:
            registered = self._fetchers.get(key)
            if registered is None:
                return False
            category, fetch_fn = registered
        return self._coordinator.trigger_background_refresh(
            key, str(category), fetch_fn, self._setter(key, category)
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, data: Any, category: str = Category.DEFAULT) -> CacheEntry:
        now = self._clock.now()
        entry = CacheEntry(
            data=data,
            stored_at=now,
            expires_at=now + self._ttl.ttl_for(category),
            category=str(category),
        )
        self._entries[key] = entry
        self._writer.schedule()
        return entry

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        self._fetchers.pop(key, None)
        self._writer.schedule()

    def clear(self) -> None:
        self._entries.clear()
        self._fetchers.clear()
        self._writer.schedule()
        log.info("cache_cleared")

    def _setter(self, key: str, category: str) -> Callable[[Any], None]:
        def store(data: Any) -> None:
            self.set(key, data, category)

        return store

    # ------------------------------------------------------------------
    # Fetch-through
    # ------------------------------------------------------------------

    async def get_or_set(
        self,
        key: str,
        fetch_fn: FetchFn[T],
        category: str = Category.DEFAULT,
        force_refresh: bool = False,
        *,
        wait: bool = True,
    ) -> T:
        response = await self.resolve(key, fetch_fn, category, force_refresh, wait=wait)
        return response.data

    async def resolve(
        self,
        key: str,
        fetch_fn: FetchFn[T],
        category: str = Category.DEFAULT,
        force_refresh: bool = False,
        *,
        wait: bool = True,
    ) -> CachedResponse[T]:
        """Return the cached value for ``key`` or fetch, store and return a new one.

        Concurrent callers for the same key share a single ``fetch_fn`` call.
        With ``wait=False`` a caller that finds a refresh in flight gets
        ``ALREADY_REFRESHING`` instead of joining it. If the fetch fails and
        any entry for the key is still held, that entry is returned as stale.
        """
        started = self._clock.monotonic()

        entry, freshness = None, _Freshness.EXPIRED
        if not force_refresh:
            entry, freshness = self._lookup(key, category, fetch_fn)
        # After the lookup: an expired entry drops the previous registration.
        self._fetchers[key] = (str(category), fetch_fn)
        if entry is not None:
            self._analytics.record_call(key, self._elapsed_ms(started), True, cached=True)
            return CachedResponse(
                data=entry.data,
                from_cache=True,
                stale=freshness is _Freshness.GRACE,
                stored_at=entry.stored_at,
                expires_at=entry.expires_at,
            )

        if not wait and self._coordinator.is_refreshing(key):
            raise WeatherCacheError(
                ErrorCode.ALREADY_REFRESHING,
                f"A refresh for {key!r} is already in progress",
                recoverable=True,
            )

        try:
            data = await self._coordinator.run(key, fetch_fn, self._setter(key, category))
        except Exception as exc:
            fallback = self._entries.get(key)
            if fallback is not None:
                log.warning(
                    "cache_serving_stale_after_error",
                    key=key,
                    error=str(exc) or type(exc).__name__,
                    stored_at=fallback.stored_at,
                )
                self._analytics.record_stale_serve(key)
                self._analytics.record_call(key, self._elapsed_ms(started), True, cached=True)
                return CachedResponse(
                    data=fallback.data,
                    from_cache=True,
                    stale=True,
                    stored_at=fallback.stored_at,
                    expires_at=fallback.expires_at,
                )
            self._fetchers.pop(key, None)
            self._analytics.record_call(key, self._elapsed_ms(started), False, cached=False)
            if isinstance(exc, WeatherCacheError):
                raise
            raise WeatherCacheError(
                ErrorCode.FETCH_FAILED,
                f"Fetching {key!r} failed: {str(exc) or type(exc).__name__}",
                recoverable=True,
            ) from exc

        self._analytics.record_call(key, self._elapsed_ms(started), True, cached=False)
        entry = self._entries.get(key)
        return CachedResponse(
            data=data,
            from_cache=False,
            stored_at=entry.stored_at if entry is not None else None,
            expires_at=entry.expires_at if entry is not None else None,
        )

    def prefetch(
        self, key: str, fetch_fn: FetchFn[Any], category: str = Category.DEFAULT
    ) -> bool:
        """Refresh ``key`` in the background if absent or near expiry.

        Returns whether a refresh was scheduled.
        """
        self._fetchers[key] = (str(category), fetch_fn)
        if self._coordinator.is_refreshing(key):
            return False
        entry = self._entries.get(key)
        threshold = self._ttl.ttl_for(category) * self._settings.prefetch_fraction
        if entry is not None and self._clock.now() - entry.stored_at <= threshold:
            return False
        return self._coordinator.trigger_background_refresh(
            key, str(category), fetch_fn, self._setter(key, category)
        )

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock.monotonic() - started) * 1000

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop entries past their grace window. Returns how many were removed.

        Fetch functions registered for keys that hold no entry and have no
        refresh in flight are dropped too.
        """
        now = self._clock.now()
        expired = [
            key
            for key, entry in self._entries.items()
            if now >= entry.expires_at + self.grace_period(entry.category)
        ]
        for key in expired:
            del self._entries[key]
        orphaned = [
            key
            for key in self._fetchers
            if key not in self._entries and not self._coordinator.is_refreshing(key)
        ]
        for key in orphaned:
            del self._fetchers[key]
        if expired:
            self._writer.schedule()
            log.info("cache_sweep_complete", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def start(self) -> None:
        """Begin periodic sweeps."""
        if self._sweep_timer is None:
            self._sweep_timer = self._clock.after(
                self._settings.sweep_interval_seconds, self._on_sweep_timer
            )

    def _on_sweep_timer(self) -> None:
        self.sweep()
        self._sweep_timer = self._clock.after(
            self._settings.sweep_interval_seconds, self._on_sweep_timer
        )

    async def aclose(self) -> None:
        """Stop sweeping, let refreshes finish, write the final snapshot."""
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        await self._coordinator.drain()
        await self._writer.flush()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        await self._writer.flush()

    async def load(self) -> int:
        """Replace the table with the stored snapshot. Returns entries loaded.

        A missing or unreadable snapshot leaves the table empty. Individual
        malformed pairs and entries already past their grace window are skipped.
        """
        payload = await self._snapshot_store.load()
        if payload is None:
            return 0
        try:
            pairs = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("cache_snapshot_invalid", exc_info=True)
            return 0
        if not isinstance(pairs, list):
            log.warning("cache_snapshot_invalid", reason="not a list")
            return 0

        now = self._clock.now()
        loaded: dict[str, CacheEntry] = {}
        skipped = 0
        for pair in pairs:
            try:
                key, raw = pair
                entry = CacheEntry.model_validate(raw)
            except (TypeError, ValueError, ValidationError):
                skipped += 1
                continue
            if not isinstance(key, str):
                skipped += 1
                continue
            if now >= entry.expires_at + self.grace_period(entry.category):
                continue
            loaded[key] = entry

        self._entries = loaded
        self._fetchers = {k: v for k, v in self._fetchers.items() if k in loaded}
        log.info("cache_snapshot_loaded", entries=len(loaded), skipped=skipped)
        return len(loaded)

    def _serialize(self) -> bytes:
        pairs = [[key, entry.model_dump(mode="json")] for key, entry in self._entries.items()]
        return json.dumps(pairs).encode("utf-8")
