from __future__ import annotations

from pydantic import BaseModel


class CallRecord(BaseModel):
    """Outcome of one data request, cached or not."""

    endpoint: str
    timestamp: float  # epoch seconds
    duration_ms: float
    success: bool
    cached: bool


class AnalyticsSnapshot(BaseModel):
    cache_hits: int = 0
    cache_misses: int = 0
    cache_ratio: float = 0.0
    avg_api_call_duration_ms: float = 0.0
    rate_limit_events: int = 0
    last_rate_limit_time: float | None = None
    stale_serves: int = 0
    api_calls: list[CallRecord] = []


class BackoffStatus(BaseModel):
    in_backoff: bool
    retry_after_seconds: int | None = None
