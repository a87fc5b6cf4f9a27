"""Time source and timer scheduling.

Every component reads time and schedules deferred work through a ``Clock``
instead of calling ``time.time()`` or ``loop.call_later()`` directly, so the
cache can be driven by virtual time in tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from typing import Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Wall-clock reads plus one-shot timers."""

    def now(self) -> float:
        """Epoch seconds."""
        ...

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, for measuring durations."""
        ...

    def after(self, delay: float, task: Callable[[], object]) -> TimerHandle:
        """Run ``task`` once after ``delay`` seconds."""
        ...


class SystemClock:
    """Real time, timers on the running asyncio loop."""

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def after(self, delay: float, task: Callable[[], object]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, task)


class _ManualTimer:
    def __init__(self, due: float, task: Callable[[], object]) -> None:
        self.due = due
        self.task = task
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Virtual clock: time only moves when ``advance()`` is called.

    Timers that fall due during an advance run synchronously, in due order,
    with ``now()`` set to their due time. A timer scheduled by another timer
    runs in the same advance if it falls inside the window.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._origin = start
        self._timers: list[tuple[float, int, _ManualTimer]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._now - self._origin

    def after(self, delay: float, task: Callable[[], object]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(delay, 0.0), task)
        heapq.heappush(self._timers, (timer.due, next(self._seq), timer))
        return timer

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            due, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, due)
            timer.task()
        self._now = target

    @property
    def pending(self) -> int:
        """Number of scheduled, not yet cancelled timers."""
        return sum(1 for _, _, t in self._timers if not t.cancelled)
