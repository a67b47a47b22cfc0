"""
CLI entrypoint that boots a ``FeatureManager`` from the configuration directory.

Features come from the ``features`` manifest in ``features.yaml`` plus any
``--feature`` flags. Each name is either a built-in alias (``heartbeat``) or an
import path of the form ``package.module:ClassName``.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import logging.handlers
import signal
from collections import OrderedDict
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from .core.config import ConfigError, ConfigService, ConfigSnapshot
from .core.feature import Feature
from .core.manager import DependencyValidationError, FeatureManager
from .features import HeartbeatFeature

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class FeatureLoadError(RuntimeError):
    """Raised when a feature name cannot be resolved or instantiated."""


FEATURE_REGISTRY: dict[str, type[Feature]] = {
    "featureflex.features.heartbeat:HeartbeatFeature": HeartbeatFeature,
}

FEATURE_ALIASES: dict[str, str] = {
    "heartbeat": "featureflex.features.heartbeat:HeartbeatFeature",
}


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 5,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def resolve_feature_name(label: str) -> str:
    """Return the import path for CLI-friendly aliases."""

    normalised = label.strip().lower()
    return FEATURE_ALIASES.get(normalised, label.strip())


def build_feature_sequence(
    configured: Sequence[str],
    extra_features: Sequence[str] | None,
    skip_features: Iterable[str] | None,
) -> list[str]:
    """
    Build the ordered list of feature identifiers to load.

    Ordering is stable and duplicates are dropped. Names must be a known alias,
    a registered identifier or a ``module:Class`` import path.
    """

    resolved_extras = [resolve_feature_name(name) for name in (extra_features or [])]
    resolved_skip = {resolve_feature_name(name) for name in (skip_features or [])}
    unique: OrderedDict[str, None] = OrderedDict()
    for name in [*(resolve_feature_name(n) for n in configured), *resolved_extras]:
        if name in resolved_skip:
            continue
        if name not in FEATURE_REGISTRY and ":" not in name:
            raise ValueError(f"Unknown feature '{name}'. Available: {sorted(FEATURE_ALIASES)}")
        unique.setdefault(name, None)
    return list(unique.keys())


def load_feature_class(name: str) -> type[Feature]:
    """Resolve an identifier to a ``Feature`` subclass."""

    if name in FEATURE_REGISTRY:
        return FEATURE_REGISTRY[name]
    module_name, _, attr = name.partition(":")
    if not module_name or not attr:
        raise FeatureLoadError(f"Feature '{name}' is not of the form module:Class")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise FeatureLoadError(f"Cannot import {module_name}") from exc
    feature_cls = getattr(module, attr, None)
    if not isinstance(feature_cls, type) or not issubclass(feature_cls, Feature):
        raise FeatureLoadError(f"{name} is not a Feature subclass")
    return feature_cls


def build_features(snapshot: ConfigSnapshot, feature_names: Sequence[str]) -> list[Feature]:
    """Instantiate features, applying manifest overrides; failures are skipped."""

    entries = {resolve_feature_name(entry.feature): entry for entry in snapshot.features}
    features: list[Feature] = []
    for name in feature_names:
        entry = entries.get(name)
        overrides: dict[str, Any] = entry.overrides() if entry is not None else {}
        try:
            feature_cls = load_feature_class(name)
            feature = feature_cls(overrides=overrides)
        except FeatureLoadError as exc:
            LOGGER.error("Skipping feature %s: %s", name, exc)
            continue
        except Exception:
            LOGGER.exception("Failed to construct feature %s", name)
            continue
        features.append(feature)
        LOGGER.info("Loaded feature %s", feature.name)
    return features


async def run_features(
    *,
    config_dir: Path | None,
    extra_features: Sequence[str] | None = None,
    skip_features: Iterable[str] | None = None,
    url: str | None = None,
    log_level: str | None = None,
    stop_event: asyncio.Event | None = None,
) -> FeatureManager:
    """Load features, activate them and run until ``stop_event`` is set."""

    config_service = ConfigService(config_dir=config_dir)
    snapshot = config_service.snapshot
    if log_level is None:
        logging.getLogger().setLevel(snapshot.logging.level)
    if snapshot.logging.file:
        _ensure_rotating_file_handler(
            Path(snapshot.logging.file),
            max_mb=snapshot.logging.max_mb,
            backup_count=snapshot.logging.backup_count,
        )

    names = build_feature_sequence(
        [entry.feature for entry in snapshot.features], extra_features, skip_features
    )
    features = build_features(snapshot, names)
    if not features:
        raise RuntimeError("No features were loaded; nothing to run.")

    settings = snapshot.manager
    manager = FeatureManager(
        features,
        url=url if url is not None else settings.url,
        client_identity=settings.client_identity,
        health_check_interval=settings.health_check_interval,
        initial_health_check_delay=settings.initial_health_check_delay,
        error_history_limit=settings.error_history_limit,
        recent_error_window=settings.recent_error_window_seconds,
    )

    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    await manager.initialize()
    summary = await manager.activate_features()
    LOGGER.info(
        "featureflex running with %d active features. Press Ctrl+C to stop.",
        len(summary.activated),
    )

    try:
        await stop_event.wait()
    finally:
        await manager.shutdown()
    return manager


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="featureflex feature manager runner.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/features.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Initial location used to evaluate feature match rules.",
    )
    parser.add_argument(
        "--feature",
        dest="extra_features",
        action="append",
        default=[],
        metavar="FEATURE",
        help="Additional feature to load (alias like 'heartbeat' or module:Class).",
    )
    parser.add_argument(
        "--skip-feature",
        dest="skip_features",
        action="append",
        default=[],
        metavar="FEATURE",
        help="Feature to leave out (alias or module:Class).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: logging.level from config, else INFO).",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        asyncio.run(
            run_features(
                config_dir=args.config_dir,
                extra_features=args.extra_features,
                skip_features=args.skip_features,
                url=args.url,
                log_level=args.log_level,
            )
        )
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except DependencyValidationError as exc:
        LOGGER.error("%s", exc)
        return 2
    except ValueError as exc:
        LOGGER.error("%s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("featureflex runtime crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "FEATURE_ALIASES",
    "FEATURE_REGISTRY",
    "FeatureLoadError",
    "build_feature_sequence",
    "build_features",
    "load_feature_class",
    "main",
    "run_features",
]
