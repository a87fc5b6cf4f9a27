"""Single-flight refresh coordination.

At most one refresh task exists per key at any instant. Background refreshes
are fire-and-forget: the caller gets control back immediately and failures are
logged, never raised. Foreground callers that find a refresh in flight join it
instead of starting a second fetch.

The in-flight marker lives exactly as long as its task. It is never cleared by
anything else, so a caller storing a value for the key while a refresh runs
does not open the door to a second concurrent refresh.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

if TYPE_CHECKING:
    from weathercache.analytics import AnalyticsRecorder
    from weathercache.clock import Clock

log = structlog.get_logger()

T = TypeVar("T")

FetchFn = Callable[[], Awaitable[T]]


class RefreshCoordinator:
    def __init__(
        self,
        clock: Clock,
        analytics: AnalyticsRecorder | None = None,
        *,
        timeout_seconds: float | None = 30,
    ) -> None:
        self._clock = clock
        self._analytics = analytics
        self._timeout = timeout_seconds
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def is_refreshing(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def in_flight(self) -> list[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def trigger_background_refresh(
        self,
        key: str,
        category: str,
        fetch_fn: FetchFn[T],
        on_success: Callable[[T], None],
    ) -> bool:
        """Start a refresh for ``key`` unless one is running. Returns whether one started."""
        if self.is_refreshing(key):
            log.debug("background_refresh_skipped", key=key, reason="in_flight")
            return False
        started = self._clock.monotonic()
        task = self._start(key, fetch_fn, on_success)
        task.add_done_callback(partial(self._on_background_done, key, category, started))
        log.info("background_refresh_started", key=key, category=category)
        return True

    async def run(self, key: str, fetch_fn: FetchFn[T], on_success: Callable[[T], None]) -> T:
        """Fetch in the foreground, joining the in-flight refresh for ``key`` if any.

        The shared task is shielded: cancelling one waiting caller does not
        cancel the fetch the others are waiting on.
        """
        task = self._tasks.get(key)
        if task is None or task.done():
            task = self._start(key, fetch_fn, on_success)
        else:
            log.debug("refresh_joined", key=key)
        return await asyncio.shield(task)

    async def wait(self, key: str) -> None:
        """Wait for the in-flight refresh of ``key`` to finish, ignoring its outcome."""
        task = self._tasks.get(key)
        if task is not None and not task.done():
            await asyncio.wait([task])

    async def drain(self) -> None:
        """Wait for every in-flight refresh to finish."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.wait(tasks)

    def _start(
        self, key: str, fetch_fn: FetchFn[T], on_success: Callable[[T], None]
    ) -> asyncio.Task[T]:
        task = asyncio.create_task(self._execute(fetch_fn, on_success), name=f"refresh:{key}")
        self._tasks[key] = task
        task.add_done_callback(partial(self._release, key))
        return task

    async def _execute(self, fetch_fn: FetchFn[T], on_success: Callable[[T], None]) -> T:
        if self._timeout is None:
            data = await fetch_fn()
        else:
            data = await asyncio.wait_for(fetch_fn(), timeout=self._timeout)
        on_success(data)
        return data

    def _release(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if not task.cancelled():
            # Mark the exception retrieved; whoever awaited the task already saw it.
            task.exception()

    def _on_background_done(
        self, key: str, category: str, started: float, task: asyncio.Task[Any]
    ) -> None:
        duration_ms = (self._clock.monotonic() - started) * 1000
        endpoint = f"{key}:background"
        if task.cancelled():
            log.warning("background_refresh_cancelled", key=key, category=category)
            self._record(endpoint, duration_ms, success=False)
            return
        exc = task.exception()
        if exc is not None:
            log.warning(
                "background_refresh_failed",
                key=key,
                category=category,
                error=str(exc) or type(exc).__name__,
                exc_info=exc,
            )
            self._record(endpoint, duration_ms, success=False)
            return
        log.info("background_refresh_complete", key=key, category=category)
        self._record(endpoint, duration_ms, success=True)

    def _record(self, endpoint: str, duration_ms: float, *, success: bool) -> None:
        if self._analytics is not None:
            self._analytics.record_call(endpoint, duration_ms, success, cached=False)
