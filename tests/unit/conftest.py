"""Unit-specific fixtures (no I/O beyond in-memory stores)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from weathercache.analytics import AnalyticsRecorder
from weathercache.backoff import BackoffTracker
from weathercache.cache import CacheStore
from weathercache.refresh import RefreshCoordinator
from weathercache.snapshot import MemorySnapshotStore

if TYPE_CHECKING:
    from weathercache.clock import ManualClock
    from weathercache.config import CacheSettings


@pytest.fixture()
def snapshot_store() -> MemorySnapshotStore:
    return MemorySnapshotStore()


@pytest.fixture()
def analytics(clock: ManualClock) -> AnalyticsRecorder:
    return AnalyticsRecorder(clock, MemorySnapshotStore())


@pytest.fixture()
def backoff(clock: ManualClock, analytics: AnalyticsRecorder) -> BackoffTracker:
    return BackoffTracker(clock, analytics)


@pytest.fixture()
def coordinator(clock: ManualClock, analytics: AnalyticsRecorder) -> RefreshCoordinator:
    return RefreshCoordinator(clock, analytics, timeout_seconds=5)


@pytest.fixture()
async def cache(
    clock: ManualClock,
    cache_settings: CacheSettings,
    analytics: AnalyticsRecorder,
    coordinator: RefreshCoordinator,
    snapshot_store: MemorySnapshotStore,
):
    """Cache store on a virtual clock; background work drained on teardown."""
    store = CacheStore(
        clock,
        cache_settings,
        analytics=analytics,
        coordinator=coordinator,
        snapshot_store=snapshot_store,
    )
    yield store
    await store.aclose()
