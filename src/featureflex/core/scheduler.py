"""
Clock and timer service used for retries, feature timers and the health sweep.

``AsyncioScheduler`` drives callbacks from the running event loop.
``ManualScheduler`` keeps a virtual clock that only moves when ``advance`` is
awaited, which lets retry/backoff timing be exercised deterministically.
Callbacks may be plain callables or coroutine functions.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


Callback = Callable[[], Awaitable[Any] | Any]


class TimerHandle:
    """Cancellable handle for a one-shot or repeating callback."""

    def __init__(self, callback: Callback, when: float, interval: float | None = None) -> None:
        self.callback = callback
        self.when = when
        self.interval = interval
        self._cancelled = False
        self._fired = False
        self._loop_handle: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def repeating(self) -> bool:
        return self.interval is not None

    @property
    def active(self) -> bool:
        """True while the callback may still run."""
        return not self._cancelled and (self.repeating or not self._fired)

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None


@runtime_checkable
class Scheduler(Protocol):
    """Timer service consumed by features and the manager."""

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callback) -> TimerHandle: ...

    def call_every(self, interval: float, callback: Callback) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later`` on the running loop."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._tasks: set[asyncio.Task[Any]] = set()

    def time(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        delay = max(0.0, delay)
        handle = TimerHandle(callback, when=self.time() + delay)
        self._arm(handle, delay)
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(callback, when=self.time() + interval, interval=interval)
        self._arm(handle, interval)
        return handle

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    async def drain(self) -> None:
        """Wait for coroutine callbacks that are still running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _arm(self, handle: TimerHandle, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle._loop_handle = loop.call_later(delay, self._fire, handle)

    def _fire(self, handle: TimerHandle) -> None:
        if handle.cancelled:
            return
        if handle.interval is not None:
            handle.when = self.time() + handle.interval
            self._arm(handle, handle.interval)
        else:
            handle._fired = True
            handle._loop_handle = None
        try:
            result = handle.callback()
        except Exception:
            logger.exception("Scheduled callback %s failed", handle.callback)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled coroutine failed", exc_info=exc)


class ManualScheduler:
    """Virtual-clock scheduler; time only moves inside ``advance``."""

    def __init__(self, *, start: float | None = None) -> None:
        self._now = time.time() if start is None else start
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()

    def time(self) -> float:
        return self._now

    @property
    def pending(self) -> int:
        """Number of callbacks still due to run."""
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def call_later(self, delay: float, callback: Callback) -> TimerHandle:
        handle = TimerHandle(callback, when=self._now + max(0.0, delay))
        self._push(handle)
        return handle

    def call_every(self, interval: float, callback: Callback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(callback, when=self._now + interval, interval=interval)
        self._push(handle)
        return handle

    async def sleep(self, delay: float) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        self.call_later(delay, _wake)
        await future

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, running every callback that falls due in order."""
        target = self._now + max(0.0, seconds)
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            if handle.interval is not None:
                handle.when = self._now + handle.interval
                self._push(handle)
            else:
                handle._fired = True
            await self._run(handle)
            # let tasks woken by the callback (sleepers, listeners) make progress
            await asyncio.sleep(0)
        self._now = target

    async def _run(self, handle: TimerHandle) -> None:
        try:
            result = handle.callback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Scheduled callback %s failed", handle.callback)

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._queue, (handle.when, next(self._sequence), handle))


__all__ = ["AsyncioScheduler", "Callback", "ManualScheduler", "Scheduler", "TimerHandle"]
