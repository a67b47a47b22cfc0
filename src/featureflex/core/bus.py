"""
Publish/subscribe channel used by features, the registry and the manager.

Dispatch is synchronous: ``emit`` walks a snapshot of the listeners registered
for a type, in registration order, before returning. Listeners may be plain
callables or coroutine functions; awaitable results are scheduled on the
running loop and their failures are logged. A failing listener never prevents
the remaining listeners from running and never reaches the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .contracts import Event

logger = logging.getLogger(__name__)


Listener = Callable[[Event], Awaitable[None] | None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class Subscription:
    """Handle for an event type subscription."""

    event_type: str
    listener: Listener


class EventBus:
    """Type-agnostic event channel with per-listener failure isolation."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._refcounts: dict[tuple[str, Listener], int] = {}
        self._listener_tasks: set[asyncio.Task[Any]] = set()
        self._clock = clock or time.time
        self._emitted_total = 0
        self._listener_failures = 0

    @property
    def emitted_total(self) -> int:
        return self._emitted_total

    @property
    def listener_failures(self) -> int:
        return self._listener_failures

    def on(self, event_type: str, listener: Listener) -> Unsubscribe:
        """
        Register ``listener`` and return an idempotent unsubscribe callable.

        Registering the same listener twice delivers each event once; the
        listener stays attached until every returned handle has been called.
        """
        key = (event_type, listener)
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        listeners = self._listeners.setdefault(event_type, [])
        if listener not in listeners:
            listeners.append(listener)
            logger.debug("Subscribed listener %s to %s", listener, event_type)

        active = True

        def _unsubscribe() -> None:
            nonlocal active
            if active:
                active = False
                self._release(event_type, listener)

        return _unsubscribe

    def subscribe(self, event_type: str, listener: Listener) -> Subscription:
        """Register ``listener`` and return a handle usable with ``unsubscribe``."""
        self.on(event_type, listener)
        return Subscription(event_type=event_type, listener=listener)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered subscription."""
        self._release(subscription.event_type, subscription.listener)

    def off(self, event_type: str, listener: Listener) -> None:
        """Remove ``listener`` outright, whatever its registration count."""
        self._refcounts.pop((event_type, listener), None)
        listeners = self._listeners.get(event_type)
        if not listeners or listener not in listeners:
            return
        listeners.remove(listener)
        if not listeners:
            del self._listeners[event_type]
        logger.debug("Unsubscribed listener %s from %s", listener, event_type)

    def _release(self, event_type: str, listener: Listener) -> None:
        key = (event_type, listener)
        remaining = self._refcounts.get(key, 0) - 1
        if remaining > 0:
            self._refcounts[key] = remaining
            return
        self.off(event_type, listener)

    def once(self, event_type: str, listener: Listener) -> Unsubscribe:
        """Register ``listener`` for the next emit of ``event_type`` only."""

        def _once(event: Event) -> Awaitable[None] | None:
            unsubscribe()
            return listener(event)

        unsubscribe = self.on(event_type, _once)
        return unsubscribe

    def emit(
        self, event_type: str, payload: dict[str, Any] | None = None, source: str = "unknown"
    ) -> None:
        """Deliver an event to every listener currently registered for ``event_type``."""
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        snapshot = list(listeners)
        event = Event(
            type=event_type,
            payload=dict(payload or {}),
            timestamp=self._clock(),
            source=source,
        )
        self._emitted_total += 1
        for listener in snapshot:
            try:
                result = listener(event)
            except Exception:
                self._listener_failures += 1
                logger.exception("Event listener failed on %s", event_type)
                continue
            if inspect.isawaitable(result):
                self._track(event_type, result)

    def clear(self) -> None:
        """Drop every registered listener."""
        self._listeners.clear()
        self._refcounts.clear()

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    async def drain(self) -> None:
        """Wait for asynchronous listener work scheduled by previous emits."""
        while self._listener_tasks:
            pending = list(self._listener_tasks)
            await asyncio.gather(*pending, return_exceptions=True)

    def _track(self, event_type: str, awaitable: Awaitable[Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._listener_failures += 1
            logger.error("No running event loop for async listener on %s; dropping it", event_type)
            close = getattr(awaitable, "close", None)
            if close is not None:
                close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._listener_tasks.add(task)

        def _on_done(t: asyncio.Task[Any], _event_type: str = event_type) -> None:
            self._listener_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._listener_failures += 1
                logger.error("Async event listener failed on %s", _event_type, exc_info=exc)

        task.add_done_callback(_on_done)


__all__ = ["EventBus", "Listener", "Subscription", "Unsubscribe"]
