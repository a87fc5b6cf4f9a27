"""Fixtures shared by unit and integration tests."""

from __future__ import annotations

import pytest

from weathercache.clock import ManualClock
from weathercache.config import CacheSettings
from weathercache.models.cache import TTLConfig


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000.0)


@pytest.fixture()
def cache_settings() -> CacheSettings:
    """Short, round TTLs so tests can reason in whole seconds."""
    return CacheSettings(
        ttl=TTLConfig(
            current_weather=100,
            forecast=200,
            alerts=40,
            search_results=1000,
            default=1,
        ),
        refresh_timeout_seconds=5,
    )
