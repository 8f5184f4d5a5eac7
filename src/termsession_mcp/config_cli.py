"""Helpers behind ``termsession config`` subcommands."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import msgspec

from termsession.config import (
    ConfigError,
    config_to_dict,
    default_config,
    load_effective_config,
)
from termsession.paths import default_config_path


def init_config(force: bool = False, path: Path | None = None) -> Path:
    """
    Write the default config file.

    Raises:
        ConfigError: If the file exists and ``force`` is not set.
    """
    config_path = path or default_config_path()
    if config_path.exists() and not force:
        raise ConfigError(f"Config file already exists: {config_path} (use --force to overwrite)")
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = config_to_dict(default_config())
    config_path.write_bytes(msgspec.json.format(msgspec.json.encode(data), indent=2) + b"\n")
    return config_path


def render_config_json(path: Path | None = None) -> str:
    """Effective config (file plus env overrides) as pretty JSON."""
    data = config_to_dict(load_effective_config(path))
    return format_value_json(data)


def get_config_value(key: str, path: Path | None = None) -> Any:
    """Look up a dotted key such as ``time_windows.max_window_minutes``."""
    value: Any = config_to_dict(load_effective_config(path))
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            raise ConfigError(f"Unknown config key: {key}")
        value = value[part]
    return value


def format_value_json(value: Any) -> str:
    return msgspec.json.format(msgspec.json.encode(value), indent=2).decode("utf-8")
