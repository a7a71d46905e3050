"""Packager configuration helpers.

Configuration is sourced from (in order of precedence):

1. Explicit overrides provided to :func:`get_config` (usually CLI flags).
2. Environment variables prefixed with ``VRPKG_``.
3. ``packager.yaml`` located in the configuration directory or
   ``$VRPKG_CONFIG_DIR``.
4. Built-in defaults.

Missing configuration files simply result in the default configuration
being used.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping, MutableMapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

ENV_PREFIX = "VRPKG_"
CONFIG_FILE_NAME = "packager.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "log_level": "INFO",
    "max_workers": 4,
    "max_attempts": 3,
    "retry_backoff": 5.0,
    "request_timeout": 60.0,
    "cache_dir": "tool_cache",
    "output_dir": "packages",
    "remote_fetch_endpoint": "https://localhost:8000/",
    "frontend_port": 8000,
    "gui_port": 8889,
    "velociraptor_binary": "velociraptor",
    "report_formats": ["json", "html"],
}

KNOWN_KEYS = frozenset(DEFAULT_CONFIG)


def load_yaml(path: Path) -> dict[str, Any]:
    """Safely load YAML configuration from ``path``.

    The function returns an empty dictionary when the file does not exist
    or is empty. Parsing errors are surfaced to aid debugging.
    """

    if not path or not path.exists():
        return {}

    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if not isinstance(data, Mapping):
        raise TypeError(f"Config file must contain a mapping: {path}")

    return dict(data)


def merge_dicts(*dicts: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge mappings with later dictionaries taking precedence."""

    merged: dict[str, Any] = {}

    for current in dicts:
        for key, value in current.items():
            if (
                key in merged
                and isinstance(merged[key], MutableMapping)
                and isinstance(value, Mapping)
            ):
                merged[key] = merge_dicts(merged[key], value)  # type: ignore[arg-type]
            else:
                merged[key] = value

    return merged


def _load_env_config(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """Load configuration overrides from environment variables."""

    env_config: dict[str, Any] = {}
    prefix_len = len(prefix)

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key == f"{prefix}CONFIG_DIR":
            continue
        config_key = key[prefix_len:].lower()
        env_config[config_key] = _coerce_env_value(value)

    return env_config


def _coerce_env_value(value: str) -> Any:
    """Attempt to cast environment variable values to richer types."""

    lowered = value.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"

    if lowered.isdigit():
        return int(lowered)

    try:
        return float(lowered)
    except ValueError:
        pass

    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]

    return value


def _as_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value)
    return ()


@dataclass(frozen=True)
class PackagerConfig:
    """Strongly typed configuration representation."""

    log_level: str = DEFAULT_CONFIG["log_level"]
    max_workers: int = DEFAULT_CONFIG["max_workers"]
    max_attempts: int = DEFAULT_CONFIG["max_attempts"]
    retry_backoff: float = DEFAULT_CONFIG["retry_backoff"]
    request_timeout: float = DEFAULT_CONFIG["request_timeout"]
    cache_dir: Path = Path(DEFAULT_CONFIG["cache_dir"])
    output_dir: Path = Path(DEFAULT_CONFIG["output_dir"])
    remote_fetch_endpoint: str = DEFAULT_CONFIG["remote_fetch_endpoint"]
    frontend_port: int = DEFAULT_CONFIG["frontend_port"]
    gui_port: int = DEFAULT_CONFIG["gui_port"]
    velociraptor_binary: str = DEFAULT_CONFIG["velociraptor_binary"]
    report_formats: tuple[str, ...] = field(
        default_factory=lambda: tuple(DEFAULT_CONFIG["report_formats"])
    )
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data = {
            "log_level": self.log_level,
            "max_workers": self.max_workers,
            "max_attempts": self.max_attempts,
            "retry_backoff": self.retry_backoff,
            "request_timeout": self.request_timeout,
            "cache_dir": str(self.cache_dir),
            "output_dir": str(self.output_dir),
            "remote_fetch_endpoint": self.remote_fetch_endpoint,
            "frontend_port": self.frontend_port,
            "gui_port": self.gui_port,
            "velociraptor_binary": self.velociraptor_binary,
            "report_formats": list(self.report_formats),
        }
        data.update(self.extra)
        return data


def get_config(
    config_root: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PackagerConfig:
    """Load packager configuration.

    Args:
        config_root: Optional directory containing ``packager.yaml``.
        overrides: Explicit overrides that take highest precedence. ``None``
            values are ignored so unset CLI options do not mask lower layers.

    Returns:
        A :class:`PackagerConfig` instance.
    """

    config_root = _resolve_config_root(config_root)

    yaml_config: dict[str, Any] = {}
    if config_root:
        yaml_config = load_yaml(config_root / CONFIG_FILE_NAME)

    env_config = _load_env_config()
    explicit_overrides = {
        key: value for key, value in dict(overrides or {}).items() if value is not None
    }

    merged = merge_dicts(DEFAULT_CONFIG, yaml_config, env_config, explicit_overrides)
    extra = {k: v for k, v in merged.items() if k not in KNOWN_KEYS}

    max_workers = int(merged["max_workers"])
    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")
    max_attempts = int(merged["max_attempts"])
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    return PackagerConfig(
        log_level=str(merged["log_level"]).upper(),
        max_workers=max_workers,
        max_attempts=max_attempts,
        retry_backoff=float(merged["retry_backoff"]),
        request_timeout=float(merged["request_timeout"]),
        cache_dir=Path(merged["cache_dir"]).expanduser(),
        output_dir=Path(merged["output_dir"]).expanduser(),
        remote_fetch_endpoint=str(merged["remote_fetch_endpoint"]),
        frontend_port=int(merged["frontend_port"]),
        gui_port=int(merged["gui_port"]),
        velociraptor_binary=str(merged["velociraptor_binary"]),
        report_formats=_as_tuple(merged["report_formats"]),
        extra=extra,
    )


def _resolve_config_root(config_root: Optional[Path]) -> Optional[Path]:
    """Determine the configuration directory to use."""

    if config_root and config_root.exists():
        return config_root

    env_root = os.environ.get(f"{ENV_PREFIX}CONFIG_DIR")
    if env_root:
        candidate = Path(env_root).expanduser()
        if candidate.exists():
            return candidate

    return None


__all__ = [
    "CONFIG_FILE_NAME",
    "DEFAULT_CONFIG",
    "ENV_PREFIX",
    "PackagerConfig",
    "get_config",
    "load_yaml",
    "merge_dicts",
]
