"""Data-freshness layer for weather dashboards."""

from __future__ import annotations

from weathercache.analytics import AnalyticsRecorder
from weathercache.backoff import BackoffTracker
from weathercache.cache import CacheStore
from weathercache.clock import ManualClock, SystemClock
from weathercache.errors import ErrorCode, WeatherCacheError
from weathercache.fetcher import FetchGateway
from weathercache.refresh import RefreshCoordinator

__all__ = [
    "AnalyticsRecorder",
    "BackoffTracker",
    "CacheStore",
    "ErrorCode",
    "FetchGateway",
    "ManualClock",
    "RefreshCoordinator",
    "SystemClock",
    "WeatherCacheError",
]
