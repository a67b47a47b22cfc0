"""
Base class for pluggable features and their lifecycle state machine.

Subclasses implement the ``on_init``/``on_start``/``on_stop``/``on_destroy``
hooks (plain or ``async``). The public ``init``/``start``/``stop``/``destroy``
methods guard the allowed source states, track the state, and route hook
failures through ``handle_error`` which applies the feature's
``ErrorRecoveryPolicy``: a linear-backoff retry, the cleaned-up fallback
state, or ``disabled``.

Timers, external resources, bus subscriptions and ad-hoc cleanup callbacks
registered through the helpers below are owned by the feature and released on
``stop``, ``destroy`` and fallback entry.
"""

from __future__ import annotations

import abc
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from .contracts import (
    FEATURE_ERROR,
    FEATURE_FALLBACK,
    FEATURE_STATE_CHANGED,
    FeatureConfig,
    FeatureContext,
    FeatureErrorRecord,
    FeaturePhase,
    FeatureState,
)
from .matching import evaluate_matcher
from .scheduler import AsyncioScheduler, Callback, Scheduler, TimerHandle

if TYPE_CHECKING:
    from .bus import EventBus, Listener

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INIT_SOURCES = frozenset({FeatureState.IDLE, FeatureState.ERROR})
_START_SOURCES = frozenset({FeatureState.INITIALIZED, FeatureState.STOPPED, FeatureState.ERROR})
_STOP_SOURCES = frozenset({FeatureState.RUNNING, FeatureState.ERROR})
_TERMINAL_STATES = frozenset({FeatureState.DISABLED, FeatureState.FALLBACK})
_RETRIED_PHASES = frozenset({FeaturePhase.INIT, FeaturePhase.START})


async def _call_hook(hook: Callable[..., Any], *args: Any) -> None:
    """Invoke a hook that may be sync or async and await it when needed."""
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class Feature(abc.ABC):
    """
    Abstract feature managed by the ``FeatureManager``.

    The registry holds a reference but never mutates the state directly;
    every transition happens inside this class.
    """

    def __init__(
        self,
        config: FeatureConfig | Mapping[str, Any],
        *,
        overrides: Mapping[str, Any] | None = None,
        bus: EventBus | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        if not isinstance(config, FeatureConfig):
            config = FeatureConfig.model_validate(dict(config))
        if overrides:
            config = config.with_overrides(overrides)
        self._config = config
        self._state = FeatureState.IDLE
        self._last_error: FeatureErrorRecord | None = None
        self._retry_count = 0
        self._failed_phase: FeaturePhase | None = None
        self._bus = bus
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self._context_provider: Callable[[], FeatureContext | None] | None = None
        self._context: FeatureContext | None = None
        self._timers: set[TimerHandle] = set()
        self._intervals: set[TimerHandle] = set()
        self._resources: dict[str, Any] = {}
        self._cleanup_tasks: list[Callable[[], Any]] = []
        self.logger = logging.getLogger(f"featureflex.features.{config.name}")

    # -- identity and observable state -------------------------------------------------

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> FeatureConfig:
        return self._config

    @property
    def state(self) -> FeatureState:
        return self._state

    @property
    def last_error(self) -> FeatureErrorRecord | None:
        return self._last_error

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"Feature {self.name} has not been attached to an EventBus.")
        return self._bus

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus."""
        self._bus = bus

    def set_scheduler(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler

    def set_context_provider(self, provider: Callable[[], FeatureContext | None]) -> None:
        """Supply the context used when a scheduled retry re-enters a phase."""
        self._context_provider = provider

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} state={self._state.value}>"

    # -- hooks ---------------------------------------------------------------------------

    @abc.abstractmethod
    def on_init(self, context: FeatureContext) -> Awaitable[None] | None:
        """Prepare the feature for the given context."""

    @abc.abstractmethod
    def on_start(self, context: FeatureContext) -> Awaitable[None] | None:
        """Begin doing work."""

    def on_stop(self) -> Awaitable[None] | None:
        """Stop doing work; owned resources are released afterwards."""
        return None

    def on_destroy(self) -> Awaitable[None] | None:
        """Final teardown before the feature returns to idle."""
        return None

    # -- lifecycle -----------------------------------------------------------------------

    async def init(self, context: FeatureContext) -> None:
        if self._state not in _INIT_SOURCES:
            self.logger.warning("Cannot init feature in state %s", self._state.value)
            return
        if self._state is FeatureState.ERROR:
            self._safe_cleanup()
        await self._safe_execute(FeaturePhase.INIT, self._run_init, context)

    async def start(self, context: FeatureContext) -> None:
        if self._state not in _START_SOURCES:
            self.logger.warning("Cannot start feature in state %s", self._state.value)
            return
        if self._state is FeatureState.ERROR:
            self._safe_cleanup()
        await self._safe_execute(FeaturePhase.START, self._run_start, context)

    async def stop(self) -> None:
        if self._state not in _STOP_SOURCES:
            self.logger.warning("Cannot stop feature in state %s", self._state.value)
            return
        await self._safe_execute(FeaturePhase.STOP, self._run_stop)

    async def destroy(self) -> None:
        await self._safe_execute(FeaturePhase.DESTROY, self._run_destroy)

    async def _run_init(self, context: FeatureContext) -> None:
        self._context = context
        self._set_state(FeatureState.INITIALIZING)
        await _call_hook(self.on_init, context)
        self._phase_succeeded(FeaturePhase.INIT)
        self._set_state(FeatureState.INITIALIZED)
        self.logger.info("Feature initialized")

    async def _run_start(self, context: FeatureContext) -> None:
        self._context = context
        self._set_state(FeatureState.STARTING)
        await _call_hook(self.on_start, context)
        self._phase_succeeded(FeaturePhase.START)
        self._set_state(FeatureState.RUNNING)
        self.logger.info("Feature started")

    async def _run_stop(self) -> None:
        self._set_state(FeatureState.STOPPING)
        await _call_hook(self.on_stop)
        self._safe_cleanup()
        self._phase_succeeded(FeaturePhase.STOP)
        self._set_state(FeatureState.STOPPED)
        self.logger.info("Feature stopped")

    async def _run_destroy(self) -> None:
        if self._state is FeatureState.RUNNING:
            try:
                await self.stop()
            except Exception:
                self.logger.warning("Stop failed during destroy; continuing teardown")
        try:
            await _call_hook(self.on_destroy)
        finally:
            self._safe_cleanup()
            self._context = None
        self._phase_succeeded(FeaturePhase.DESTROY)
        if self._state not in _TERMINAL_STATES:
            self._set_state(FeatureState.IDLE)
        self.logger.info("Feature destroyed")

    async def _safe_execute(
        self, phase: FeaturePhase, operation: Callable[..., Awaitable[None]], *args: Any
    ) -> None:
        try:
            await operation(*args)
        except Exception as exc:
            self.handle_error(exc, phase)
            raise

    def _phase_succeeded(self, phase: FeaturePhase) -> None:
        if self._failed_phase is None or self._failed_phase is phase:
            self._retry_count = 0
            self._failed_phase = None

    # -- error handling and recovery ---------------------------------------------------

    def can_retry(self) -> bool:
        return self._retry_count <= self._config.error_recovery.max_retries

    def handle_error(self, error: BaseException, phase: FeaturePhase | str) -> None:
        """Record a failure and apply the recovery policy."""
        phase = FeaturePhase(phase)
        policy = self._config.error_recovery
        record = FeatureErrorRecord(
            feature_name=self.name,
            phase=phase,
            error=error,
            timestamp=self._scheduler.time(),
            context=self._context.snapshot() if self._context is not None else None,
        )
        self._last_error = record
        self._retry_count += 1
        self._failed_phase = phase
        self.logger.error(
            "Error in %s (attempt %d/%d): %s",
            phase.value,
            self._retry_count,
            policy.max_retries + 1,
            record.message,
            exc_info=error,
        )
        self._emit(
            FEATURE_ERROR,
            {"feature": self.name, "error": record, "canRetry": self.can_retry()},
        )
        self._set_state(FeatureState.ERROR)

        if self.can_retry():
            self._schedule_retry(phase)
        elif policy.fallback_mode:
            self._enter_fallback()
        else:
            self._set_state(FeatureState.DISABLED)
            self.logger.warning("Feature disabled after %d failures", self._retry_count)

    def reset(self) -> None:
        """Clear the failure bookkeeping; leaves ``error`` for ``idle``."""
        self._retry_count = 0
        self._last_error = None
        self._failed_phase = None
        if self._state is FeatureState.ERROR:
            self._safe_cleanup()
            self._set_state(FeatureState.IDLE)

    def _schedule_retry(self, phase: FeaturePhase) -> None:
        if phase not in _RETRIED_PHASES:
            self.logger.debug("Phase %s is not retried automatically", phase.value)
            return
        delay = self._config.error_recovery.retry_delay * self._retry_count
        self.logger.info("Scheduling retry of %s in %.3fs", phase.value, delay)
        handle: TimerHandle | None = None

        async def _retry() -> None:
            self._timers.discard(handle)  # type: ignore[arg-type]
            context = self._current_context()
            if context is None:
                self.logger.warning("No context available to retry %s", phase.value)
                return
            try:
                if phase is FeaturePhase.INIT:
                    await self.init(context)
                else:
                    await self.start(context)
            except Exception:
                self.logger.warning("Retry of %s failed", phase.value)

        handle = self._scheduler.call_later(delay, _retry)
        self._timers.add(handle)

    def _enter_fallback(self) -> None:
        self._safe_cleanup()
        self._set_state(FeatureState.FALLBACK)
        self.logger.warning("Entering fallback mode")
        self._emit(FEATURE_FALLBACK, {"feature": self.name, "reason": "max_retries_exceeded"})

    def _current_context(self) -> FeatureContext | None:
        if self._context_provider is not None:
            context = self._context_provider()
            if context is not None:
                return context
        return self._context

    def _set_state(self, new_state: FeatureState) -> None:
        old_state = self._state
        self._state = new_state
        self._emit(
            FEATURE_STATE_CHANGED,
            {
                "feature": self.name,
                "oldState": old_state,
                "newState": new_state,
                "retryCount": self._retry_count,
                "lastError": self._last_error,
            },
        )
        self.logger.debug("State changed: %s -> %s", old_state.value, new_state.value)

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._bus is None:
            return
        self._bus.emit(event_type, payload, self.name)

    # -- activation ----------------------------------------------------------------------

    def should_activate(self, context: FeatureContext) -> bool:
        if self._state is FeatureState.DISABLED or not self._config.enabled:
            return False
        if self._state is FeatureState.ERROR and not self.can_retry():
            return False
        if self._config.should_activate is not None:
            try:
                return bool(self._config.should_activate(context))
            except Exception:
                self.logger.warning("Activation predicate failed", exc_info=True)
                return False
        for matcher in self._config.matches:
            try:
                if evaluate_matcher(matcher, context):
                    return True
            except Exception:
                self.logger.warning("Match rule %r failed", matcher, exc_info=True)
        return False

    # -- owned resources -----------------------------------------------------------------

    def set_timeout(self, callback: Callback, delay: float) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds; failures go to ``handle_error``."""
        handle: TimerHandle | None = None

        async def _wrapped() -> None:
            self._timers.discard(handle)  # type: ignore[arg-type]
            await self._run_guarded(callback, FeaturePhase.TIMER)

        handle = self._scheduler.call_later(delay, _wrapped)
        self._timers.add(handle)
        return handle

    def set_interval(self, callback: Callback, interval: float) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cleared or cleaned up."""

        async def _wrapped() -> None:
            await self._run_guarded(callback, FeaturePhase.INTERVAL)

        handle = self._scheduler.call_every(interval, _wrapped)
        self._intervals.add(handle)
        return handle

    def clear_timer(self, handle: TimerHandle) -> None:
        handle.cancel()
        self._timers.discard(handle)
        self._intervals.discard(handle)

    async def _run_guarded(self, callback: Callback, phase: FeaturePhase) -> None:
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.handle_error(exc, phase)

    def add_resource(self, key: str, resource: Any) -> None:
        """Track an external resource released during cleanup."""
        previous = self._resources.pop(key, None)
        if previous is not None and previous is not resource:
            self._release_resource(key, previous)
        self._resources[key] = resource

    def get_resource(self, key: str) -> Any | None:
        return self._resources.get(key)

    def remove_resource(self, key: str) -> bool:
        resource = self._resources.pop(key, None)
        if resource is None:
            return False
        self._release_resource(key, resource)
        return True

    def add_cleanup_task(self, task: Callable[[], Any]) -> None:
        self._cleanup_tasks.append(task)

    def emit_event(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        try:
            self.bus.emit(event_type, payload or {}, self.name)
        except Exception:
            self.logger.warning("Failed to emit %s", event_type, exc_info=True)

    def on_event(self, event_type: str, listener: Listener) -> Callable[[], None]:
        """Subscribe for the lifetime of the current activation."""
        unsubscribe = self.bus.on(event_type, listener)
        self._cleanup_tasks.append(unsubscribe)
        return unsubscribe

    async def wait_for(
        self,
        predicate: Callable[[], T | None],
        *,
        timeout: float = 15.0,
        interval: float = 0.1,
    ) -> T | None:
        """Poll ``predicate`` until it returns a truthy value or ``timeout`` elapses."""
        deadline = self._scheduler.time() + timeout
        while True:
            value = predicate()
            if value:
                return value
            if self._scheduler.time() >= deadline:
                return None
            await self._scheduler.sleep(interval)

    def _release_resource(self, key: str, resource: Any) -> None:
        for attr in ("close", "remove"):
            release = getattr(resource, attr, None)
            if callable(release):
                release()
                return
        if callable(resource):
            resource()

    def _safe_cleanup(self) -> None:
        for handle in list(self._timers) + list(self._intervals):
            handle.cancel()
        self._timers.clear()
        self._intervals.clear()

        resources = list(self._resources.items())
        self._resources.clear()
        for key, resource in resources:
            try:
                self._release_resource(key, resource)
            except Exception:
                self.logger.warning("Failed to release resource %s", key, exc_info=True)

        tasks = list(self._cleanup_tasks)
        self._cleanup_tasks.clear()
        for task in tasks:
            try:
                task()
            except Exception:
                self.logger.warning("Cleanup task %s failed", task, exc_info=True)


__all__ = ["Feature"]
