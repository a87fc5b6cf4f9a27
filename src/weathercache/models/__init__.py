from __future__ import annotations

from weathercache.models.analytics import AnalyticsSnapshot, BackoffStatus, CallRecord
from weathercache.models.cache import (
    CacheEntry,
    CachedResponse,
    CacheStats,
    Category,
    TTLConfig,
)
from weathercache.models.requests import AlertsQuery, ForecastQuery, HistoryQuery, LocationQuery

__all__ = [
    # cache
    "Category",
    "TTLConfig",
    "CacheEntry",
    "CacheStats",
    "CachedResponse",
    # analytics
    "CallRecord",
    "AnalyticsSnapshot",
    "BackoffStatus",
    # requests
    "LocationQuery",
    "ForecastQuery",
    "AlertsQuery",
    "HistoryQuery",
]
