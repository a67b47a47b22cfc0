"""
Core infrastructure for featureflex.

Exposes the event bus, the feature base class and its contracts, the
registry, the manager and the configuration service.
"""

from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    ErrorRecoveryPolicy,
    Event,
    FeatureConfig,
    FeatureContext,
    FeatureErrorRecord,
    FeaturePhase,
    FeatureState,
    ManagerStatus,
    merge_recovery_policy,
)
from .feature import Feature
from .manager import ActivationSummary, DependencyValidationError, FeatureManager, SkipReason
from .matching import matches_url_pattern
from .registry import FeatureRegistry
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler, TimerHandle

__all__ = [
    "ActivationSummary",
    "AsyncioScheduler",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DependencyValidationError",
    "ErrorRecoveryPolicy",
    "Event",
    "EventBus",
    "Feature",
    "FeatureConfig",
    "FeatureContext",
    "FeatureErrorRecord",
    "FeatureManager",
    "FeaturePhase",
    "FeatureRegistry",
    "FeatureState",
    "ManagerStatus",
    "ManualScheduler",
    "Scheduler",
    "SkipReason",
    "Subscription",
    "TimerHandle",
    "matches_url_pattern",
]
