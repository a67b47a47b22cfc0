"""
Heartbeat feature that periodically announces it is alive on the bus.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..core.contracts import FeatureConfig, FeatureContext
from ..core.feature import Feature

HEARTBEAT_TICK = "heartbeat:tick"
DEFAULT_INTERVAL_SECONDS = 30.0


class HeartbeatFeature(Feature):
    """Emit ``heartbeat:tick`` every ``interval_seconds`` while running."""

    def __init__(self, config: FeatureConfig | Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        super().__init__(config or {"name": "heartbeat", "matches": ("*",)}, **kwargs)
        self._interval = DEFAULT_INTERVAL_SECONDS
        self._beats = 0

    @property
    def beats(self) -> int:
        return self._beats

    def on_init(self, context: FeatureContext) -> None:
        interval = float(self.config.settings.get("interval_seconds", DEFAULT_INTERVAL_SECONDS))
        if interval <= 0:
            raise ValueError("interval_seconds must be positive")
        self._interval = interval
        self._beats = 0

    def on_start(self, context: FeatureContext) -> None:
        self.set_interval(self._beat, self._interval)
        self.logger.info("Heartbeat every %.1fs for %s", self._interval, context.url or "<none>")

    def on_stop(self) -> None:
        self.logger.debug("Heartbeat stopped after %d beats", self._beats)

    def _beat(self) -> None:
        self._beats += 1
        context = self._current_context()
        self.emit_event(
            HEARTBEAT_TICK,
            {
                "feature": self.name,
                "count": self._beats,
                "url": context.url if context is not None else None,
            },
        )


__all__ = ["DEFAULT_INTERVAL_SECONDS", "HEARTBEAT_TICK", "HeartbeatFeature"]
