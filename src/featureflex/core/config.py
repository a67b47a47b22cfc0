"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads the layered YAML files from the config
directory (``config.yaml`` for manager and logging options, ``features.yaml``
for the feature manifest), applies ``FEATUREFLEX_*`` environment overrides and
validates the merged result into a ``ConfigSnapshot``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .contracts import ErrorRecoveryOverrides


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _section_list(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    """List-aware helper for case-insensitive lookups."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        return [value]
    return []


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


CONFIG_FILENAMES = ("config.yaml", "features.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class ManagerSettings(BaseModel):
    """Options consumed by the ``FeatureManager``."""

    model_config = ConfigDict(extra="ignore")

    health_check_interval: float = Field(default=30.0, gt=0)
    initial_health_check_delay: float = Field(default=5.0, ge=0)
    error_history_limit: int = Field(default=100, gt=0)
    recent_error_window_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Errors newer than this many seconds count as recent in health reports.",
    )
    client_identity: str = Field(default="featureflex")
    url: str = Field(default="", description="Initial location handed to the activation context.")


class LoggingSettings(BaseModel):
    """Log level and optional rotating file output."""

    model_config = ConfigDict(extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: str | None = Field(default=None)
    max_mb: int = Field(default=10, gt=0)
    backup_count: int = Field(default=5, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value


class FeatureEntry(BaseModel):
    """Declarative feature entry from the ``features`` manifest list."""

    model_config = ConfigDict(extra="ignore")

    feature: str = Field(
        validation_alias=AliasChoices("feature", "module", "name"),
        description="Registered alias (e.g. heartbeat) or an import path like pkg.mod:Class.",
    )
    enabled: bool = Field(default=True)
    priority: int | None = Field(default=None)
    matches: list[str] | None = Field(default=None)
    dependencies: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("dependencies", "depends_on"),
    )
    settings: dict[str, Any] = Field(default_factory=dict)
    error_recovery: ErrorRecoveryOverrides | None = Field(default=None)

    def overrides(self) -> dict[str, Any]:
        """Translate the entry into ``FeatureConfig.with_overrides`` keys."""
        result: dict[str, Any] = {"enabled": self.enabled}
        if self.priority is not None:
            result["priority"] = self.priority
        if self.matches is not None:
            result["matches"] = tuple(self.matches)
        if self.dependencies is not None:
            result["dependencies"] = tuple(self.dependencies)
        if self.settings:
            result["settings"] = dict(self.settings)
        if self.error_recovery is not None:
            result["error_recovery"] = self.error_recovery
        return result


class ConfigSnapshot(BaseModel):
    """Validated, strongly typed view of the merged configuration."""

    model_config = ConfigDict(extra="ignore")

    manager: ManagerSettings = Field(default_factory=ManagerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    features: list[FeatureEntry] = Field(default_factory=list)

    def feature_entry(self, feature: str) -> FeatureEntry | None:
        for entry in self.features:
            if entry.feature == feature:
                return entry
        return None


class ConfigService:
    """
    Runtime facade for loading and validating configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        if settings is None:
            settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
            existing_files = [str(path) for path in settings_files if path.exists()]
            if not existing_files:
                raise ConfigError(
                    f"No configuration files found in {self._config_dir}. "
                    "Expected at least config.yaml."
                )
            settings = Dynaconf(
                envvar_prefix="FEATUREFLEX",
                settings_files=existing_files,
                load_dotenv=True,
                environments=False,
            )
        self._settings = settings
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        This does not persist the changes to disk.
        """
        raw = self._extract_snapshot_data(self._settings.as_dict())
        merged = _deep_merge(raw, changes)
        self._snapshot = self._build_snapshot(merged)
        return self._snapshot

    def _build_snapshot(self, raw: dict[str, Any] | None = None) -> ConfigSnapshot:
        data = raw if raw is not None else self._extract_snapshot_data(self._settings.as_dict())
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError("Configuration validation failed") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        return {
            "manager": _section(raw, "manager"),
            "logging": _section(raw, "logging"),
            "features": _section_list(raw, "features"),
        }


__all__ = [
    "CONFIG_FILENAMES",
    "DEFAULT_CONFIG_DIR",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "FeatureEntry",
    "LoggingSettings",
    "ManagerSettings",
]
