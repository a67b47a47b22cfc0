"""
Contracts and data models shared by the featureflex core.

Features, the registry and the manager exchange these strongly typed
structures: lifecycle states, the error-recovery policy, per-feature
configuration, the activation context, error records and bus events.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FEATURE_STATE_CHANGED = "feature:state-changed"
FEATURE_ERROR = "feature:error"
FEATURE_FALLBACK = "feature:fallback"
FEATURE_REGISTERED = "feature:registered"
FEATURE_UNREGISTERED = "feature:unregistered"
MANAGER_INITIALIZED = "manager:initialized"
MANAGER_FEATURES_ACTIVATED = "manager:features-activated"
MANAGER_FEATURES_DEACTIVATED = "manager:features-deactivated"
MANAGER_HEALTH_CHECK = "manager:health-check"
MANAGER_FEATURE_DISABLED = "manager:feature-disabled"
MANAGER_FEATURE_FALLBACK = "manager:feature-fallback"
MANAGER_EMERGENCY_STOP = "manager:emergency-stop"


class FeatureState(StrEnum):
    """Lifecycle states a feature moves through."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    DISABLED = "disabled"
    FALLBACK = "fallback"


PROBLEMATIC_STATES = frozenset({FeatureState.ERROR, FeatureState.DISABLED, FeatureState.FALLBACK})


class FeaturePhase(StrEnum):
    """Phase recorded alongside a failure."""

    INIT = "init"
    START = "start"
    STOP = "stop"
    DESTROY = "destroy"
    TIMER = "timer"
    INTERVAL = "interval"


class ErrorRecoveryPolicy(BaseModel):
    """Retry and fallback behaviour applied when a lifecycle hook fails."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int = Field(
        default=3, ge=0, description="Retries allowed after the first failed attempt."
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay in seconds; scaled linearly by the attempt number.",
    )
    fallback_mode: bool = Field(
        default=True,
        description="Enter the cleaned-up fallback state instead of disabled once retries run out.",
    )


class ErrorRecoveryOverrides(BaseModel):
    """Partial policy used to override selected fields of the defaults."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_retries: int | None = Field(default=None, ge=0)
    retry_delay: float | None = Field(default=None, ge=0.0)
    fallback_mode: bool | None = None


DEFAULT_RECOVERY_POLICY = ErrorRecoveryPolicy()


def merge_recovery_policy(
    defaults: ErrorRecoveryPolicy,
    overrides: ErrorRecoveryOverrides | ErrorRecoveryPolicy | Mapping[str, Any] | None,
) -> ErrorRecoveryPolicy:
    """Return a new policy with every field set in ``overrides`` replacing ``defaults``."""
    if overrides is None:
        return defaults
    if isinstance(overrides, ErrorRecoveryPolicy):
        return overrides
    if not isinstance(overrides, ErrorRecoveryOverrides):
        overrides = ErrorRecoveryOverrides.model_validate(dict(overrides))
    return ErrorRecoveryPolicy.model_validate(
        {**defaults.model_dump(), **overrides.model_dump(exclude_none=True)}
    )


class FeatureContext(BaseModel):
    """Ambient values handed to lifecycle hooks for one activation pass."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    url: str = Field(default="", description="Identity of the current page or request.")
    document: Any = Field(default=None, description="Opaque document-like handle.")
    client_identity: str = Field(default="featureflex")
    timestamp: float = Field(default_factory=time.time)

    def snapshot(self) -> dict[str, Any]:
        """Small serialisable view stored with error records."""
        return {"url": self.url, "client_identity": self.client_identity}


def _is_matcher(value: Any) -> bool:
    return isinstance(value, str | re.Pattern) or callable(value)


class FeatureConfig(BaseModel):
    """Immutable configuration of a single feature."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(min_length=1)
    matches: tuple[Any, ...] = Field(
        default=(),
        description="Glob strings, compiled patterns or (url, context) predicates.",
    )
    priority: int = Field(default=0, description="Higher priorities activate earlier.")
    enabled: bool = Field(default=True)
    dependencies: tuple[str, ...] = Field(default=())
    should_activate: Callable[[FeatureContext], bool] | None = Field(default=None)
    error_recovery: ErrorRecoveryPolicy = Field(default=DEFAULT_RECOVERY_POLICY)
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("matches", mode="before")
    @classmethod
    def _normalise_matches(cls, value: Any) -> tuple[Any, ...]:
        if value is None:
            return ()
        if isinstance(value, str | re.Pattern) or callable(value):
            value = (value,)
        items = tuple(value)
        for item in items:
            if not _is_matcher(item):
                raise ValueError(f"Unsupported matcher {item!r}")
        return items

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalise_dependencies(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    @field_validator("error_recovery", mode="before")
    @classmethod
    def _merge_error_recovery(cls, value: Any) -> Any:
        if value is None or isinstance(value, Mapping | ErrorRecoveryOverrides):
            return merge_recovery_policy(DEFAULT_RECOVERY_POLICY, value)
        return value

    def with_overrides(self, overrides: Mapping[str, Any]) -> FeatureConfig:
        """Return a copy with ``overrides`` applied; ``error_recovery`` merges field-wise."""
        if not overrides:
            return self
        data = {key: getattr(self, key) for key in type(self).model_fields}
        for key, value in overrides.items():
            if key == "error_recovery":
                data[key] = merge_recovery_policy(self.error_recovery, value)
            elif key == "settings":
                data[key] = {**self.settings, **dict(value)}
            else:
                data[key] = value
        return FeatureConfig.model_validate(data)


@dataclass(frozen=True)
class FeatureErrorRecord:
    """A single recorded failure of a feature."""

    feature_name: str
    phase: FeaturePhase
    error: BaseException
    timestamp: float
    context: dict[str, Any] | None = field(default=None)

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__


class Event(BaseModel):
    """Envelope delivered to bus listeners."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
    source: str = Field(default="unknown")


class FeatureCounts(BaseModel):
    """Feature totals reported by the manager status."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(ge=0)
    by_state: dict[str, int] = Field(default_factory=dict)
    healthy: int = Field(ge=0)
    problematic: int = Field(ge=0)


class ErrorSummary(BaseModel):
    """Error totals reported by the manager status."""

    model_config = ConfigDict(frozen=True)

    total: int = Field(ge=0)
    recent: int = Field(ge=0)
    by_feature: dict[str, int] = Field(default_factory=dict)


class ManagerStatus(BaseModel):
    """Read-only snapshot returned by ``FeatureManager.get_status``."""

    model_config = ConfigDict(frozen=True)

    initialized: bool
    features: FeatureCounts
    errors: ErrorSummary
    error_count: int = Field(ge=0, description="Failures observed since the last reload.")
    context: FeatureContext | None = None


__all__ = [
    "DEFAULT_RECOVERY_POLICY",
    "ErrorRecoveryOverrides",
    "ErrorRecoveryPolicy",
    "ErrorSummary",
    "Event",
    "FeatureConfig",
    "FeatureContext",
    "FeatureCounts",
    "FeatureErrorRecord",
    "FeaturePhase",
    "FeatureState",
    "ManagerStatus",
    "PROBLEMATIC_STATES",
    "merge_recovery_policy",
]
