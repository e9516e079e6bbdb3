"""
nafflesync.engine.clock — Clock & Timer Facade
===============================================

The engine, policy layer, and monitor never call ``time.time()`` or
``loop.call_later()`` directly.  They receive a :class:`Clock` and a
:class:`Timers` so tests can drive time by hand::

    clock = ManualClock(1_000.0)
    engine = SyncEngine(..., clock=clock, timers=timers)
    clock.advance(5)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class Clock:
    """Wall-clock time source in seconds since the epoch."""

    def now(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return int(self.now() * 1000)


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class Timers:
    """Schedules one-shot coroutines on the running event loop.

    Spawned tasks are tracked so shutdown can wait for them, and handles
    for timers that haven't fired yet are cancelled on :meth:`cancel_all`.
    """

    def __init__(self) -> None:
        self._handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()

    def call_later(
        self, delay: float, callback: Callable[[], Awaitable[object]]
    ) -> asyncio.TimerHandle:
        """Run ``await callback()`` after *delay* seconds."""
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._handles.discard(handle)
            self.spawn(callback())

        handle = loop.call_later(delay, _fire)
        self._handles.add(handle)
        return handle

    def spawn(self, coro: Awaitable[object]) -> asyncio.Task:
        """Start *coro* as a tracked background task."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def cancel_all(self) -> None:
        """Cancel timers that haven't fired yet.  Running tasks are left alone."""
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()

    async def drain(self) -> None:
        """Wait for every tracked task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._handles)
