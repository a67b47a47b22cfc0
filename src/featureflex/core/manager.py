"""
Top-level coordinator for feature lifecycles.

The manager owns the activation context, drives activation, deactivation and
reloads over the registry's dependency order, turns feature events into
registry bookkeeping, and runs the periodic health sweep that gives
retry-eligible features another chance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .bus import EventBus, Unsubscribe
from .contracts import (
    FEATURE_ERROR,
    FEATURE_FALLBACK,
    FEATURE_STATE_CHANGED,
    MANAGER_EMERGENCY_STOP,
    MANAGER_FEATURE_DISABLED,
    MANAGER_FEATURE_FALLBACK,
    MANAGER_FEATURES_ACTIVATED,
    MANAGER_FEATURES_DEACTIVATED,
    MANAGER_HEALTH_CHECK,
    MANAGER_INITIALIZED,
    ErrorSummary,
    Event,
    FeatureContext,
    FeatureCounts,
    FeatureErrorRecord,
    FeatureState,
    ManagerStatus,
)
from .feature import Feature
from .registry import DEFAULT_ERROR_HISTORY_LIMIT, DEFAULT_RECENT_ERROR_WINDOW, FeatureRegistry
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_CHECK_INTERVAL = 30.0
DEFAULT_INITIAL_HEALTH_CHECK_DELAY = 5.0
SOURCE = "manager"

_AT_REST = frozenset({FeatureState.IDLE, FeatureState.FALLBACK})


class DependencyValidationError(RuntimeError):
    """Raised by ``initialize`` when the dependency graph is invalid."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = tuple(errors)
        super().__init__(f"Dependency validation failed: {', '.join(self.errors)}")


class SkipReason(StrEnum):
    """Why ``activate_features`` left a feature alone."""

    ERROR_UNRETRYABLE = "error-unretryable"
    DISABLED = "disabled"
    FALLBACK = "fallback"
    ALREADY_RUNNING = "already-running"
    CONTEXT_MISMATCH = "context-mismatch"


@dataclass
class ActivationSummary:
    """Result of one activation pass."""

    activated: list[str] = field(default_factory=list)
    skipped: dict[str, SkipReason] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.activated) + len(self.skipped) + len(self.errors)


class FeatureManager:
    """Drive every registered feature through its lifecycle."""

    def __init__(
        self,
        features: Iterable[Feature] = (),
        *,
        bus: EventBus | None = None,
        scheduler: Scheduler | None = None,
        registry: FeatureRegistry | None = None,
        url: str = "",
        document: Any = None,
        client_identity: str = "featureflex",
        context_factory: Callable[[], FeatureContext] | None = None,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        initial_health_check_delay: float = DEFAULT_INITIAL_HEALTH_CHECK_DELAY,
        error_history_limit: int = DEFAULT_ERROR_HISTORY_LIMIT,
        recent_error_window: float = DEFAULT_RECENT_ERROR_WINDOW,
    ) -> None:
        self.bus = bus or EventBus()
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.registry = registry or FeatureRegistry(
            self.bus,
            error_history_limit=error_history_limit,
            recent_error_window=recent_error_window,
            clock=self.scheduler.time,
        )
        self._pending: list[Feature] = list(features)
        self._url = url
        self._document = document
        self._client_identity = client_identity
        self._context_factory = context_factory
        self._context: FeatureContext | None = None
        self._initialized = False
        self._error_count = 0
        self._health_interval = health_check_interval
        self._initial_health_delay = initial_health_check_delay
        self._health_handles: list[TimerHandle] = []
        self._unsubscribers: list[Unsubscribe] = []
        self._activation_order: list[str] = []

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def context(self) -> FeatureContext | None:
        return self._context

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def activation_order(self) -> list[str]:
        """Names of features in the order they last reached ``running``."""
        return list(self._activation_order)

    def add_feature(self, feature: Feature) -> None:
        """Queue a feature for registration; registers immediately once initialized."""
        if self._initialized:
            self._attach(feature)
            self.registry.register(feature)
            return
        self._pending.append(feature)

    def current_context(self) -> FeatureContext | None:
        return self._context

    # -- lifecycle -----------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("FeatureManager already initialized")
            return
        logger.info("Initializing FeatureManager...")
        self._context = self._build_context()

        pending, self._pending = self._pending, []
        for feature in pending:
            if feature.name in self.registry:
                logger.warning("Feature %s is already registered", feature.name)
                continue
            self._attach(feature)
            self.registry.register(feature)
        for feature in self.registry.get_all():
            self._attach(feature)

        report = self.registry.validate_dependencies()
        if not report.valid:
            logger.error("Dependency validation failed: %s", list(report.errors))
            raise DependencyValidationError(report.errors)

        self._subscribe()
        self._start_health_monitoring()
        self._initialized = True
        logger.info("FeatureManager initialized with %d features", len(self.registry))
        self.bus.emit(
            MANAGER_INITIALIZED,
            {
                "featureCount": len(self.registry),
                "healthyFeatures": len(self.registry.get_healthy_features()),
                "problematicFeatures": len(self.registry.get_problematic_features()),
            },
            SOURCE,
        )

    async def activate_features(self) -> ActivationSummary:
        summary = ActivationSummary()
        if not self._initialized or self._context is None:
            logger.error("FeatureManager not initialized")
            return summary

        logger.info("Activating features...")
        features = self.registry.get_sorted_features()
        for feature in features:
            reason = self._skip_reason(feature)
            if reason is not None:
                summary.skipped[feature.name] = reason
                logger.debug("Skipped feature %s (%s)", feature.name, reason.value)
                continue
            try:
                await self._activate(feature)
            except Exception:
                summary.errors.append(feature.name)
                logger.error("Failed to activate feature %s", feature.name)
                continue
            if feature.state is FeatureState.RUNNING:
                summary.activated.append(feature.name)
            else:
                summary.errors.append(feature.name)

        logger.info(
            "Feature activation complete: %d activated, %d skipped, %d errors",
            len(summary.activated),
            len(summary.skipped),
            len(summary.errors),
        )
        self.bus.emit(
            MANAGER_FEATURES_ACTIVATED,
            {
                "activated": len(summary.activated),
                "skipped": len(summary.skipped),
                "errors": len(summary.errors),
                "total": len(features),
            },
            SOURCE,
        )
        return summary

    async def deactivate_features(self) -> int:
        """Stop and destroy running features in reverse activation order."""
        if not self._initialized:
            logger.warning("FeatureManager not initialized")
            return 0
        logger.info("Deactivating features...")
        position = {name: index for index, name in enumerate(self._activation_order)}
        running = sorted(
            self.registry.get_by_state(FeatureState.RUNNING),
            key=lambda feature: position.get(feature.name, -1),
            reverse=True,
        )
        deactivated = 0
        errors = 0
        for feature in running:
            try:
                await feature.stop()
                await feature.destroy()
            except Exception:
                errors += 1
                logger.error("Failed to deactivate feature %s", feature.name)
                continue
            deactivated += 1
            logger.debug("Deactivated feature %s", feature.name)

        logger.info(
            "Feature deactivation complete: %d deactivated, %d errors", deactivated, errors
        )
        self.bus.emit(
            MANAGER_FEATURES_DEACTIVATED,
            {"deactivated": deactivated, "errors": errors},
            SOURCE,
        )
        return deactivated

    async def reload_features(self) -> ActivationSummary:
        logger.info("Reloading features...")
        await self.deactivate_features()
        self._context = self._build_context()
        self._error_count = 0
        return await self.activate_features()

    async def reload_feature(self, name: str) -> bool:
        """Tear one feature down and reactivate it if it still matches the context."""
        logger.info("Reloading feature %s", name)
        feature = self.registry.get(name)
        if feature is None:
            logger.error("Feature %s not found", name)
            return False
        try:
            if feature.state is FeatureState.RUNNING:
                await feature.stop()
            await feature.destroy()
            feature.reset()
            if self._context is not None and feature.should_activate(self._context):
                await self._activate(feature)
                logger.info("Feature %s reloaded", name)
                return feature.state is FeatureState.RUNNING
            logger.info("Feature %s not activated (context mismatch)", name)
        except Exception:
            logger.error("Failed to reload feature %s", name)
        return False

    async def navigate(self, url: str) -> bool:
        """Record a location change and reload every feature when it differs."""
        if url == self._url:
            return False
        logger.debug("Location changed to %s; reloading features", url)
        self._url = url
        if self._initialized:
            await self.reload_features()
        return True

    async def emergency_stop(self, reason: str = "manual_trigger") -> None:
        logger.warning("Emergency stop initiated")
        try:
            await self._teardown()
        except Exception:
            logger.exception("Error during emergency stop")
        self.bus.emit(
            MANAGER_EMERGENCY_STOP,
            {"timestamp": self.scheduler.time(), "reason": reason},
            SOURCE,
        )

    async def shutdown(self) -> None:
        """Deactivate everything and stop background work."""
        if not self._initialized:
            return
        await self._teardown()
        logger.info("FeatureManager stopped.")

    async def _teardown(self) -> None:
        try:
            await self.deactivate_features()
            await self._destroy_leftovers()
        finally:
            self._stop_health_monitoring()
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers.clear()
            self._initialized = False

    async def _destroy_leftovers(self) -> None:
        # Features that never reached running may still own timers and resources.
        for feature in self.registry.get_all():
            if feature.state in _AT_REST:
                continue
            try:
                await feature.destroy()
            except Exception:
                logger.error("Failed to tear down feature %s", feature.name)

    # -- status and errors ---------------------------------------------------------------

    def get_status(self) -> ManagerStatus:
        stats = self.registry.get_error_stats()
        return ManagerStatus(
            initialized=self._initialized,
            features=FeatureCounts(
                total=len(self.registry),
                by_state={
                    state.value: len(self.registry.get_by_state(state)) for state in FeatureState
                },
                healthy=len(self.registry.get_healthy_features()),
                problematic=len(self.registry.get_problematic_features()),
            ),
            errors=ErrorSummary(
                total=stats.total_errors,
                recent=len(stats.recent_errors),
                by_feature=stats.errors_by_feature,
            ),
            error_count=self._error_count,
            context=self._context,
        )

    def clear_all_errors(self) -> None:
        self.registry.clear_all_errors()
        self._error_count = 0
        logger.info("Cleared all feature errors")

    def perform_health_check(self) -> list[str]:
        """Run one health sweep; returns the names of features that were reset."""
        stats = self.registry.get_error_stats()
        healthy = self.registry.get_healthy_features()
        problematic = self.registry.get_problematic_features()
        logger.debug(
            "Health check: %d healthy, %d problematic features", len(healthy), len(problematic)
        )
        self.bus.emit(
            MANAGER_HEALTH_CHECK,
            {
                "timestamp": self.scheduler.time(),
                "healthy": len(healthy),
                "problematic": len(problematic),
                "totalErrors": stats.total_errors,
                "recentErrors": len(stats.recent_errors),
                "errorsByFeature": stats.errors_by_feature,
            },
            SOURCE,
        )
        rescued: list[str] = []
        for feature in problematic:
            if feature.state is FeatureState.ERROR and feature.can_retry():
                feature.reset()
                rescued.append(feature.name)
                logger.info("Reset feature %s for potential retry", feature.name)
        return rescued

    # -- internals -----------------------------------------------------------------------

    async def _activate(self, feature: Feature) -> None:
        context = self._context
        if context is None:
            raise RuntimeError("FeatureManager context not initialized")
        await feature.init(context)
        await feature.start(context)
        logger.debug("Activated feature %s", feature.name)

    def _skip_reason(self, feature: Feature) -> SkipReason | None:
        state = feature.state
        if state is FeatureState.ERROR and not feature.can_retry():
            return SkipReason.ERROR_UNRETRYABLE
        if state is FeatureState.DISABLED:
            return SkipReason.DISABLED
        if state is FeatureState.FALLBACK:
            return SkipReason.FALLBACK
        if state is FeatureState.RUNNING:
            return SkipReason.ALREADY_RUNNING
        if self._context is None or not feature.should_activate(self._context):
            return SkipReason.CONTEXT_MISMATCH
        return None

    def _attach(self, feature: Feature) -> None:
        feature.set_bus(self.bus)
        feature.set_scheduler(self.scheduler)
        feature.set_context_provider(self.current_context)

    def _build_context(self) -> FeatureContext:
        if self._context_factory is not None:
            return self._context_factory()
        return FeatureContext(
            url=self._url,
            document=self._document,
            client_identity=self._client_identity,
            timestamp=self.scheduler.time(),
        )

    def _subscribe(self) -> None:
        self._unsubscribers = [
            self.bus.on(FEATURE_ERROR, self._on_feature_error),
            self.bus.on(FEATURE_FALLBACK, self._on_feature_fallback),
            self.bus.on(FEATURE_STATE_CHANGED, self._on_state_changed),
        ]

    def _on_feature_error(self, event: Event) -> None:
        record = event.payload.get("error")
        if not isinstance(record, FeatureErrorRecord):
            return
        self.registry.record_error(record)
        self._error_count += 1
        logger.warning(
            "Feature %s encountered an error in %s: %s",
            record.feature_name,
            record.phase.value,
            record.message,
        )

    def _on_feature_fallback(self, event: Event) -> None:
        feature = event.payload.get("feature")
        reason = event.payload.get("reason")
        logger.warning("Feature %s entered fallback mode: %s", feature, reason)
        self.bus.emit(MANAGER_FEATURE_FALLBACK, {"feature": feature, "reason": reason}, SOURCE)

    def _on_state_changed(self, event: Event) -> None:
        name = event.payload.get("feature")
        new_state = event.payload.get("newState")
        if new_state is FeatureState.RUNNING:
            if name in self._activation_order:
                self._activation_order.remove(name)
            self._activation_order.append(name)
        elif new_state is FeatureState.DISABLED:
            last_error = event.payload.get("lastError")
            self.bus.emit(
                MANAGER_FEATURE_DISABLED,
                {
                    "feature": name,
                    "reason": "max_retries_exceeded",
                    "error": last_error.message if last_error is not None else None,
                },
                SOURCE,
            )

    def _start_health_monitoring(self) -> None:
        self._health_handles = [
            self.scheduler.call_later(self._initial_health_delay, self.perform_health_check),
            self.scheduler.call_every(self._health_interval, self.perform_health_check),
        ]

    def _stop_health_monitoring(self) -> None:
        for handle in self._health_handles:
            handle.cancel()
        self._health_handles.clear()


__all__ = [
    "ActivationSummary",
    "DependencyValidationError",
    "FeatureManager",
    "SkipReason",
]
