"""
Built-in features shipped with featureflex.
"""

from .heartbeat import HeartbeatFeature

__all__ = ["HeartbeatFeature"]
