"""
featureflex - lifecycle management for pluggable features

Features register with a manager, activate against the current context in
dependency order, and recover from failures through retries and fallbacks.
"""

__version__ = "0.1.0"

from featureflex.core import Feature, FeatureConfig, FeatureContext, FeatureManager, FeatureState

__all__ = ["Feature", "FeatureConfig", "FeatureContext", "FeatureManager", "FeatureState"]
