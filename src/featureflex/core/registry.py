"""
Feature registry: registration, activation ordering and error bookkeeping.
"""

from __future__ import annotations

import heapq
import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .contracts import (
    FEATURE_REGISTERED,
    FEATURE_UNREGISTERED,
    PROBLEMATIC_STATES,
    FeatureErrorRecord,
    FeatureState,
)

if TYPE_CHECKING:
    from .bus import EventBus
    from .feature import Feature

logger = logging.getLogger(__name__)

DEFAULT_ERROR_HISTORY_LIMIT = 100
DEFAULT_RECENT_ERROR_WINDOW = 5 * 60.0


@dataclass(frozen=True)
class DependencyReport:
    """Outcome of ``FeatureRegistry.validate_dependencies``."""

    valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ErrorStats:
    """Aggregate view over the recorded error history."""

    total_errors: int
    errors_by_feature: dict[str, int] = field(default_factory=dict)
    recent_errors: tuple[FeatureErrorRecord, ...] = ()


class FeatureRegistry:
    """Holds every registered feature keyed by its unique name."""

    def __init__(
        self,
        bus: EventBus | None = None,
        *,
        error_history_limit: int = DEFAULT_ERROR_HISTORY_LIMIT,
        recent_error_window: float = DEFAULT_RECENT_ERROR_WINDOW,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if error_history_limit <= 0:
            raise ValueError("error_history_limit must be positive")
        self._bus = bus
        self._features: dict[str, Feature] = {}
        self._errors: deque[FeatureErrorRecord] = deque(maxlen=error_history_limit)
        self._recent_error_window = recent_error_window
        self._clock = clock or time.time

    def __contains__(self, name: object) -> bool:
        return name in self._features

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(list(self._features.values()))

    def register(self, feature: Feature) -> None:
        if feature.name in self._features:
            logger.warning("Feature %s is already registered", feature.name)
            return
        self._features[feature.name] = feature
        logger.debug("Registered feature %s", feature.name)
        self._emit(
            FEATURE_REGISTERED,
            {
                "name": feature.name,
                "priority": feature.config.priority,
                "dependencies": list(feature.config.dependencies),
            },
        )

    def unregister(self, name: str) -> None:
        if self._features.pop(name, None) is None:
            logger.warning("Feature %s is not registered", name)
            return
        removed = self._purge_errors(name)
        if removed:
            logger.debug("Removed %d errors for feature %s", removed, name)
        logger.debug("Unregistered feature %s", name)
        self._emit(FEATURE_UNREGISTERED, {"name": name})

    def get(self, name: str) -> Feature | None:
        return self._features.get(name)

    def get_all(self) -> list[Feature]:
        return list(self._features.values())

    def get_by_state(self, state: FeatureState) -> list[Feature]:
        return [feature for feature in self._features.values() if feature.state is state]

    def get_errors(self) -> list[FeatureErrorRecord]:
        return list(self._errors)

    def get_sorted_features(self) -> list[Feature]:
        """
        Return features with every dependency ahead of its dependents.

        Among features whose order is not constrained, higher priority comes
        first and registration order breaks remaining ties. Features that sit
        on (or behind) a dependency cycle are appended afterwards in a
        best-effort depth-first order.
        """
        features = list(self._features.values())
        index_of = {feature.name: index for index, feature in enumerate(features)}

        def _key(feature: Feature) -> tuple[int, int]:
            return (-feature.config.priority, index_of[feature.name])

        # Only registered dependencies constrain ordering.
        deps: dict[str, set[str]] = {
            feature.name: {dep for dep in feature.config.dependencies if dep in self._features}
            for feature in features
        }
        dependents: dict[str, list[str]] = {feature.name: [] for feature in features}
        for name, names in deps.items():
            for dep in names:
                dependents[dep].append(name)
        incoming = {name: len(names) for name, names in deps.items()}

        ready = [(_key(feature), feature.name) for feature in features if incoming[feature.name] == 0]
        heapq.heapify(ready)
        order: list[Feature] = []
        placed: set[str] = set()
        while ready:
            _, name = heapq.heappop(ready)
            order.append(self._features[name])
            placed.add(name)
            for dependent in dependents[name]:
                incoming[dependent] -= 1
                if incoming[dependent] == 0:
                    heapq.heappush(ready, (_key(self._features[dependent]), dependent))

        if len(order) == len(features):
            return order

        remaining = sorted((f for f in features if f.name not in placed), key=_key)
        visiting: set[str] = set()

        def _visit(name: str) -> None:
            if name in placed:
                return
            if name in visiting:
                logger.error("Circular dependency detected involving %s", name)
                return
            visiting.add(name)
            for dep in sorted(deps[name], key=lambda n: _key(self._features[n])):
                _visit(dep)
            visiting.discard(name)
            placed.add(name)
            order.append(self._features[name])

        for feature in remaining:
            _visit(feature.name)
        return order

    def validate_dependencies(self) -> DependencyReport:
        """Report missing dependencies and dependency cycles without side effects."""
        errors: list[str] = []
        for name, feature in self._features.items():
            for dep in feature.config.dependencies:
                if dep not in self._features:
                    errors.append(f"Feature {name} depends on {dep} which is not registered")

        visited: set[str] = set()
        visiting: set[str] = set()

        def _check(name: str, path: list[str]) -> None:
            if name in visited:
                return
            if name in visiting:
                cycle = path[path.index(name) :] if name in path else path
                errors.append(f"Circular dependency: {' -> '.join([*cycle, name])}")
                return
            feature = self._features.get(name)
            if feature is None:
                return
            visiting.add(name)
            for dep in feature.config.dependencies:
                _check(dep, [*path, name])
            visiting.discard(name)
            visited.add(name)

        for name in self._features:
            _check(name, [])
        return DependencyReport(valid=not errors, errors=tuple(errors))

    def record_error(self, record: FeatureErrorRecord) -> None:
        self._errors.append(record)
        logger.debug("Recorded error for feature %s: %s", record.feature_name, record.message)

    def get_error_stats(self) -> ErrorStats:
        by_feature: dict[str, int] = {}
        for record in self._errors:
            by_feature[record.feature_name] = by_feature.get(record.feature_name, 0) + 1
        cutoff = self._clock() - self._recent_error_window
        recent = tuple(record for record in self._errors if record.timestamp > cutoff)
        return ErrorStats(
            total_errors=len(self._errors),
            errors_by_feature=by_feature,
            recent_errors=recent,
        )

    def clear_feature_errors(self, name: str) -> None:
        removed = self._purge_errors(name)
        if removed:
            logger.debug("Cleared %d errors for feature %s", removed, name)

    def clear_all_errors(self) -> None:
        count = len(self._errors)
        self._errors.clear()
        if count:
            logger.debug("Cleared all %d errors", count)

    def get_healthy_features(self) -> list[Feature]:
        return [f for f in self._features.values() if f.state not in PROBLEMATIC_STATES]

    def get_problematic_features(self) -> list[Feature]:
        return [f for f in self._features.values() if f.state in PROBLEMATIC_STATES]

    def _purge_errors(self, name: str) -> int:
        kept = [record for record in self._errors if record.feature_name != name]
        removed = len(self._errors) - len(kept)
        if removed:
            self._errors.clear()
            self._errors.extend(kept)
        return removed

    def _emit(self, event_type: str, payload: dict[str, object]) -> None:
        if self._bus is not None:
            self._bus.emit(event_type, payload, "registry")


__all__ = [
    "DEFAULT_ERROR_HISTORY_LIMIT",
    "DEFAULT_RECENT_ERROR_WINDOW",
    "DependencyReport",
    "ErrorStats",
    "FeatureRegistry",
]
