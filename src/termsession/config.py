"""
Configuration for termsession.

Settings live in ``<data dir>/config.json`` and are decoded into typed
dataclasses with msgspec. A missing file means defaults; a malformed file
raises ConfigError. A handful of environment variables override the file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path

import msgspec

from .errors import TermSessionError
from .paths import default_config_path, default_db_path

logger = logging.getLogger("termsession")

CONFIG_VERSION = 1


class ConfigError(TermSessionError):
    """Raised when the config file cannot be read or holds invalid values."""


@dataclass
class SessionConfig:
    """
    Session lifecycle settings.

    Attributes:
        inactivity_timeout_minutes: Idle time before an active session turns inactive
        check_interval_seconds: How often the inactivity monitor wakes up
        auto_reconnect: Reattach to a matching session instead of always creating one
        set_environment_variables: Export TERMSESSION_ID/TTY/USER into os.environ
    """

    inactivity_timeout_minutes: float = 60.0
    check_interval_seconds: float = 60.0
    auto_reconnect: bool = True
    set_environment_variables: bool = False

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(minutes=self.inactivity_timeout_minutes)


@dataclass
class TimeWindowConfig:
    max_window_minutes: float = 240.0
    min_window_minutes: float = 5.0
    activity_gap_minutes: float = 15.0
    auto_merge_minutes: float = 10.0
    auto_split_long_windows: bool = True
    auto_create_windows: bool = True

    @property
    def max_window_duration(self) -> timedelta:
        return timedelta(minutes=self.max_window_minutes)

    @property
    def min_window_duration(self) -> timedelta:
        return timedelta(minutes=self.min_window_minutes)

    @property
    def activity_gap_threshold(self) -> timedelta:
        return timedelta(minutes=self.activity_gap_minutes)

    @property
    def auto_merge_threshold(self) -> timedelta:
        return timedelta(minutes=self.auto_merge_minutes)


@dataclass
class RecoveryConfig:
    max_recovery_attempts: int = 5
    max_session_age_days: float = 7.0
    create_recovery_window: bool = True
    recovery_window_minutes: float = 60.0

    @property
    def max_session_age(self) -> timedelta:
        return timedelta(days=self.max_session_age_days)

    @property
    def recovery_window_duration(self) -> timedelta:
        return timedelta(minutes=self.recovery_window_minutes)


@dataclass
class StorageConfig:
    db_path: str | None = None  # None means <data dir>/sessions.db
    busy_timeout_ms: int = 5000

    def resolve_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return default_db_path()


@dataclass
class TermSessionConfig:
    version: int = CONFIG_VERSION
    session: SessionConfig = field(default_factory=SessionConfig)
    time_windows: TimeWindowConfig = field(default_factory=TimeWindowConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def default_config() -> TermSessionConfig:
    return TermSessionConfig()


def validate_config(config: TermSessionConfig) -> TermSessionConfig:
    """Reject values that would make the session machinery misbehave."""
    positive = {
        "session.inactivity_timeout_minutes": config.session.inactivity_timeout_minutes,
        "session.check_interval_seconds": config.session.check_interval_seconds,
        "time_windows.max_window_minutes": config.time_windows.max_window_minutes,
        "time_windows.activity_gap_minutes": config.time_windows.activity_gap_minutes,
        "recovery.recovery_window_minutes": config.recovery.recovery_window_minutes,
        "storage.busy_timeout_ms": config.storage.busy_timeout_ms,
    }
    for key, value in positive.items():
        if value <= 0:
            raise ConfigError(f"{key} must be positive, got {value}")
    for key in ("min_window_minutes", "auto_merge_minutes"):
        if getattr(config.time_windows, key) < 0:
            raise ConfigError(f"time_windows.{key} must not be negative")
    if config.recovery.max_recovery_attempts < 1:
        raise ConfigError("recovery.max_recovery_attempts must be at least 1")
    if config.recovery.max_session_age_days <= 0:
        raise ConfigError("recovery.max_session_age_days must be positive")
    if config.version != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version: {config.version}")
    return config


def load_config(path: Path | None = None) -> TermSessionConfig:
    """
    Load the config file without environment overrides.

    Args:
        path: Config file path (default: <data dir>/config.json)

    Returns:
        The decoded config, or defaults when the file does not exist.

    Raises:
        ConfigError: If the file is unreadable, not JSON, or has invalid values.
    """
    config_path = path or default_config_path()
    if not config_path.exists():
        return default_config()
    try:
        raw = config_path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Could not read {config_path}: {exc}") from exc
    if not raw.strip():
        return default_config()
    try:
        config = msgspec.json.decode(raw, type=TermSessionConfig)
    except msgspec.DecodeError as exc:
        # ValidationError is a DecodeError subclass.
        raise ConfigError(f"Invalid config file {config_path}: {exc}") from exc
    return validate_config(config)


def apply_env_overrides(config: TermSessionConfig) -> TermSessionConfig:
    """Return a copy of ``config`` with TERMSESSION_* environment overrides applied."""
    session = replace(
        config.session,
        inactivity_timeout_minutes=_get_float_env(
            "TERMSESSION_INACTIVITY_TIMEOUT_MINUTES",
            default=config.session.inactivity_timeout_minutes,
        ),
    )
    time_windows = replace(
        config.time_windows,
        activity_gap_minutes=_get_float_env(
            "TERMSESSION_ACTIVITY_GAP_MINUTES",
            default=config.time_windows.activity_gap_minutes,
        ),
        max_window_minutes=_get_float_env(
            "TERMSESSION_MAX_WINDOW_MINUTES",
            default=config.time_windows.max_window_minutes,
        ),
    )
    storage = config.storage
    db_path = os.getenv("TERMSESSION_DB_PATH")
    if db_path:
        storage = replace(storage, db_path=db_path)
    return replace(config, session=session, time_windows=time_windows, storage=storage)


def load_effective_config(path: Path | None = None) -> TermSessionConfig:
    """Config file plus environment overrides."""
    return apply_env_overrides(load_config(path))


def load_config_or_default(path: Path | None = None) -> TermSessionConfig:
    """Like load_effective_config(), but falls back to defaults on a bad file."""
    try:
        return load_effective_config(path)
    except ConfigError as exc:
        logger.warning("Invalid config file; using defaults: %s", exc)
        return apply_env_overrides(default_config())


def config_to_dict(config: TermSessionConfig) -> dict:
    return msgspec.to_builtins(config)


def _get_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default
    if parsed <= 0:
        logger.warning("Ignoring non-positive %s=%r", name, raw)
        return default
    return parsed
