"""Process-wide object graph, built once at startup and passed by reference."""

from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from weathercache.analytics import AnalyticsRecorder
from weathercache.backoff import BackoffTracker
from weathercache.cache import CacheStore
from weathercache.clock import SystemClock
from weathercache.config import Settings
from weathercache.fetcher import FetchGateway, build_http_client
from weathercache.refresh import RefreshCoordinator
from weathercache.service import WeatherDataService
from weathercache.snapshot import (
    FileSnapshotStore,
    NullSnapshotStore,
    SqliteSnapshotStore,
    init_snapshot_db,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from weathercache.clock import Clock
    from weathercache.snapshot import SnapshotStore

log = structlog.get_logger()


@dataclass
class AppState:
    settings: Settings
    clock: Clock
    analytics: AnalyticsRecorder
    backoff: BackoffTracker
    coordinator: RefreshCoordinator
    cache: CacheStore
    http_client: httpx.AsyncClient
    gateway: FetchGateway
    weather: WeatherDataService


async def _open_snapshot_stores(
    settings: Settings, stack: AsyncExitStack
) -> tuple[SnapshotStore, SnapshotStore]:
    backend = settings.snapshot.backend
    if backend == "none":
        return NullSnapshotStore(), NullSnapshotStore()

    directory = Path(settings.snapshot.directory).expanduser()
    if backend == "file":
        return (
            FileSnapshotStore(directory / "cache.json"),
            FileSnapshotStore(directory / "analytics.json"),
        )

    directory.mkdir(parents=True, exist_ok=True)
    db = await stack.enter_async_context(aiosqlite.connect(directory / "snapshots.db"))
    await init_snapshot_db(db)
    return SqliteSnapshotStore(db, "cache"), SqliteSnapshotStore(db, "analytics")


@asynccontextmanager
async def create_app_state(
    settings: Settings | None = None,
    *,
    clock: Clock | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AsyncIterator[AppState]:
    """Build, load and start every component; flush and close on exit."""
    settings = settings or Settings()
    clock = clock or SystemClock()

    async with AsyncExitStack() as stack:
        cache_store, analytics_store = await _open_snapshot_stores(settings, stack)
        if http_client is None:
            http_client = await stack.enter_async_context(build_http_client(settings.fetcher))

        analytics = AnalyticsRecorder(
            clock,
            analytics_store,
            max_call_records=settings.analytics.max_call_records,
            flush_interval_seconds=settings.analytics.flush_interval_seconds,
        )
        backoff = BackoffTracker(clock, analytics)
        coordinator = RefreshCoordinator(
            clock, analytics, timeout_seconds=settings.cache.refresh_timeout_seconds
        )
        cache = CacheStore(
            clock,
            settings.cache,
            analytics=analytics,
            coordinator=coordinator,
            snapshot_store=cache_store,
        )
        gateway = FetchGateway(http_client, backoff, analytics, clock, settings.fetcher)
        weather = WeatherDataService(cache, gateway, settings.weather_api)

        await analytics.load()
        await cache.load()
        cache.start()
        analytics.start()
        log.info("weathercache_started", backend=settings.snapshot.backend)

        state = AppState(
            settings=settings,
            clock=clock,
            analytics=analytics,
            backoff=backoff,
            coordinator=coordinator,
            cache=cache,
            http_client=http_client,
            gateway=gateway,
            weather=weather,
        )
        try:
            yield state
        finally:
            await cache.aclose()
            await analytics.aclose()
            log.info("weathercache_stopped")
