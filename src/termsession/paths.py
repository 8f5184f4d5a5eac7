"""Filesystem locations for termsession data (database, config, logs)."""

from __future__ import annotations

import os
from pathlib import Path

DATA_DIR_ENV = "TERMSESSION_DATA_DIR"
DEFAULT_DATA_DIR = Path.home() / ".termsession"


def resolve_data_dir() -> Path:
    """Return the data directory, honouring TERMSESSION_DATA_DIR when set."""
    override = os.environ.get(DATA_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DEFAULT_DATA_DIR


def default_db_path() -> Path:
    return resolve_data_dir() / "sessions.db"


def default_config_path() -> Path:
    return resolve_data_dir() / "config.json"
