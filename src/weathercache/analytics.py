"""Cache hit/miss counters and a bounded log of recent data requests.

The recorder only observes. Nothing it computes feeds back into caching
decisions; it exists so operators can judge whether cached data is being
served often enough and whether TTLs need tuning.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from weathercache.models.analytics import AnalyticsSnapshot, CallRecord
from weathercache.snapshot import NullSnapshotStore, SnapshotWriter

if TYPE_CHECKING:
    from weathercache.clock import Clock, TimerHandle
    from weathercache.snapshot import SnapshotStore

log = structlog.get_logger()

LOW_HIT_RATIO = 0.5
RECENT_RATE_LIMIT_SECONDS = 24 * 60 * 60
SLOW_CALL_MS = 2000.0

RECOMMEND_LONGER_TTLS = "Consider increasing cache TTLs to improve cache hit ratio"
RECOMMEND_PREFETCH = (
    "Consider implementing more aggressive prefetching and caching to avoid rate limits"
)
RECOMMEND_STALE_WHILE_REVALIDATE = (
    "API calls are slow. Consider enabling stale-while-revalidate to improve "
    "perceived performance"
)


class AnalyticsRecorder:
    def __init__(
        self,
        clock: Clock,
        snapshot_store: SnapshotStore | None = None,
        *,
        max_call_records: int = 100,
        flush_interval_seconds: float = 300,
    ) -> None:
        self._clock = clock
        self._max_call_records = max_call_records
        self._flush_interval = flush_interval_seconds
        self._calls: deque[CallRecord] = deque(maxlen=max_call_records)
        self._hits = 0
        self._misses = 0
        self._stale_serves = 0
        self._rate_limit_events = 0
        self._last_rate_limit_time: float | None = None
        self._snapshot_store = snapshot_store or NullSnapshotStore()
        self._writer = SnapshotWriter(self._snapshot_store, self._serialize, "analytics")
        self._flush_timer: TimerHandle | None = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_hit(self, key: str) -> None:
        self._hits += 1

    def record_miss(self, key: str) -> None:
        self._misses += 1

    def record_stale_serve(self, key: str) -> None:
        self._stale_serves += 1
        log.debug("analytics_stale_serve", key=key)

    def record_call(self, endpoint: str, duration_ms: float, success: bool, cached: bool) -> None:
        self._calls.append(
            CallRecord(
                endpoint=endpoint,
                timestamp=self._clock.now(),
                duration_ms=duration_ms,
                success=success,
                cached=cached,
            )
        )
        self._writer.schedule()

    def record_rate_limit(self, endpoint: str) -> None:
        self._rate_limit_events += 1
        self._last_rate_limit_time = self._clock.now()
        log.info("analytics_rate_limit", endpoint=endpoint, total=self._rate_limit_events)
        self._writer.schedule()

    def reset(self) -> None:
        self._calls.clear()
        self._hits = 0
        self._misses = 0
        self._stale_serves = 0
        self._rate_limit_events = 0
        self._last_rate_limit_time = None
        self._writer.schedule()

    # ------------------------------------------------------------------
    # Derived statistics
    # ------------------------------------------------------------------

    @property
    def cache_ratio(self) -> float:
        total = self._hits + self._misses
        return self._hits / total if total else 0.0

    @property
    def avg_api_call_duration_ms(self) -> float:
        durations = [c.duration_ms for c in self._calls if not c.cached]
        return sum(durations) / len(durations) if durations else 0.0

    def get_analytics(self) -> AnalyticsSnapshot:
        return AnalyticsSnapshot(
            cache_hits=self._hits,
            cache_misses=self._misses,
            cache_ratio=self.cache_ratio,
            avg_api_call_duration_ms=self.avg_api_call_duration_ms,
            rate_limit_events=self._rate_limit_events,
            last_rate_limit_time=self._last_rate_limit_time,
            stale_serves=self._stale_serves,
            api_calls=list(self._calls),
        )

    def get_recommendations(self) -> list[str]:
        recommendations: list[str] = []
        if self.cache_ratio < LOW_HIT_RATIO:
            recommendations.append(RECOMMEND_LONGER_TTLS)
        if (
            self._last_rate_limit_time is not None
            and self._clock.now() - self._last_rate_limit_time < RECENT_RATE_LIMIT_SECONDS
        ):
            recommendations.append(RECOMMEND_PREFETCH)
        if self.avg_api_call_duration_ms > SLOW_CALL_MS:
            recommendations.append(RECOMMEND_STALE_WHILE_REVALIDATE)
        return recommendations

    def get_api_call_rate(self, window_minutes: float = 60) -> float:
        """Non-cached calls per minute over the trailing window."""
        if window_minutes <= 0:
            raise ValueError("window_minutes must be positive")
        cutoff = self._clock.now() - window_minutes * 60
        count = sum(1 for c in self._calls if not c.cached and c.timestamp >= cutoff)
        return count / window_minutes

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore counters and recent calls. Malformed snapshots are ignored."""
        payload = await self._snapshot_store.load()
        if payload is None:
            return
        try:
            snapshot = AnalyticsSnapshot.model_validate_json(payload)
        except ValidationError:
            log.warning("analytics_snapshot_invalid", exc_info=True)
            return
        self._hits = snapshot.cache_hits
        self._misses = snapshot.cache_misses
        self._stale_serves = snapshot.stale_serves
        self._rate_limit_events = snapshot.rate_limit_events
        self._last_rate_limit_time = snapshot.last_rate_limit_time
        self._calls = deque(snapshot.api_calls, maxlen=self._max_call_records)
        log.info("analytics_loaded", calls=len(self._calls), hits=self._hits)

    def start(self) -> None:
        """Begin periodic flushing."""
        if self._flush_timer is None:
            self._flush_timer = self._clock.after(self._flush_interval, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._writer.schedule()
        self._flush_timer = self._clock.after(self._flush_interval, self._on_flush_timer)

    async def flush(self) -> None:
        await self._writer.flush()

    async def aclose(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        await self._writer.flush()

    def _serialize(self) -> bytes:
        return self.get_analytics().model_dump_json().encode("utf-8")
