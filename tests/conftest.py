from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any

import pytest

from featureflex.core.bus import EventBus
from featureflex.core.config import ConfigService
from featureflex.core.contracts import FeatureContext
from featureflex.core.feature import Feature
from featureflex.core.scheduler import ManualScheduler


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


class ScriptedFeature(Feature):
    """Feature whose hooks fail a configurable number of times."""

    def __init__(
        self,
        name: str,
        *,
        init_failures: int = 0,
        start_failures: int = 0,
        stop_error: Exception | None = None,
        destroy_error: Exception | None = None,
        calls: list[str] | None = None,
        **config: Any,
    ) -> None:
        config.setdefault("matches", ("*",))
        super().__init__({"name": name, **config})
        self.init_failures = init_failures
        self.start_failures = start_failures
        self.stop_error = stop_error
        self.destroy_error = destroy_error
        self.calls = calls if calls is not None else []

    def on_init(self, context: FeatureContext) -> None:
        self.calls.append(f"{self.name}:init")
        if self.init_failures > 0:
            self.init_failures -= 1
            raise RuntimeError(f"{self.name} init failure")

    async def on_start(self, context: FeatureContext) -> None:
        self.calls.append(f"{self.name}:start")
        if self.start_failures > 0:
            self.start_failures -= 1
            raise RuntimeError(f"{self.name} start failure")

    def on_stop(self) -> None:
        self.calls.append(f"{self.name}:stop")
        if self.stop_error is not None:
            raise self.stop_error

    def on_destroy(self) -> None:
        self.calls.append(f"{self.name}:destroy")
        if self.destroy_error is not None:
            raise self.destroy_error


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=1_000.0)


@pytest.fixture
def bus(scheduler: ManualScheduler) -> EventBus:
    return EventBus(clock=scheduler.time)


@pytest.fixture
def context() -> FeatureContext:
    return FeatureContext(url="https://example.com/app", timestamp=1_000.0)


@pytest.fixture
def make_feature(bus: EventBus, scheduler: ManualScheduler):
    """Build ``ScriptedFeature`` instances attached to the shared bus and scheduler."""

    def _make(name: str, **kwargs: Any) -> ScriptedFeature:
        feature = ScriptedFeature(name, **kwargs)
        feature.set_bus(bus)
        feature.set_scheduler(scheduler)
        return feature

    return _make


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    log_file = tmp_path / "logs" / "featureflex.log"
    config_yaml = f"""
    manager:
      health_check_interval: 12
      initial_health_check_delay: 2
      error_history_limit: 25
      recent_error_window_seconds: 60
      client_identity: "lab-client"
      url: "https://lab.example.test/home"

    logging:
      level: debug
      file: "{log_file.as_posix()}"
      max_mb: 1
      backup_count: 2
    """
    features_yaml = """
    features:
      - feature: heartbeat
        priority: 7
        matches:
          - "*lab.example.test*"
        settings:
          interval_seconds: 0.5
        error_recovery:
          max_retries: 1
      - feature: "featureflex_missing.plugins:Nope"
        enabled: false
        depends_on:
          - heartbeat
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "features.yaml", features_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)
