"""Per-endpoint cooldown after an upstream rate-limit response."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import structlog

from weathercache.models.analytics import BackoffStatus

if TYPE_CHECKING:
    from weathercache.analytics import AnalyticsRecorder
    from weathercache.clock import Clock

log = structlog.get_logger()


class BackoffTracker:
    """Maps endpoint → ``until`` timestamp.

    Expired entries are dropped the next time they are looked at; an entry
    past its deadline is treated as absent whether or not it was removed.
    """

    def __init__(self, clock: Clock, analytics: AnalyticsRecorder | None = None) -> None:
        self._clock = clock
        self._analytics = analytics
        self._until: dict[str, float] = {}

    def is_in_backoff(self, endpoint: str) -> BackoffStatus:
        until = self._until.get(endpoint)
        if until is None:
            return BackoffStatus(in_backoff=False)
        now = self._clock.now()
        if now >= until:
            del self._until[endpoint]
            return BackoffStatus(in_backoff=False)
        return BackoffStatus(in_backoff=True, retry_after_seconds=math.ceil(until - now))

    def set_backoff(self, endpoint: str, seconds: float) -> None:
        until = self._clock.now() + seconds
        self._until[endpoint] = until
        log.warning("backoff_set", endpoint=endpoint, seconds=seconds)
        if self._analytics is not None:
            self._analytics.record_rate_limit(endpoint)

    def clear(self, endpoint: str | None = None) -> None:
        if endpoint is None:
            self._until.clear()
        else:
            self._until.pop(endpoint, None)

    def active(self) -> dict[str, float]:
        """Endpoints still cooling down, with their deadlines."""
        now = self._clock.now()
        return {ep: until for ep, until in self._until.items() if until > now}
