"""
Logging configuration for termsession.

The MCP server speaks its protocol over stdout, so logs go to a rotating file
under ~/.termsession/logs/ and only warnings reach stderr by default. Rotated
files are gzip-compressed.
"""

from __future__ import annotations

import gzip
import logging
from logging.handlers import RotatingFileHandler
import os
from pathlib import Path
import shutil

from termsession.paths import resolve_data_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# FastMCP and its HTTP stack log every request at INFO.
NOISY_LOGGERS = ("mcp", "httpx", "uvicorn.access")


def configure_logging(log_dir: Path | None = None) -> Path:
    """
    Route all logging to a gzip-rotating file plus a quiet stderr handler.

    Args:
        log_dir: Directory for log files (default: <data dir>/logs)

    Returns:
        Path to the active log file.
    """
    log_dir = log_dir or resolve_data_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "termsession.log"
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=_get_int_env("TERMSESSION_LOG_MAX_SIZE_MB", default=10, min_value=1) * 1024 * 1024,
        backupCount=_get_int_env("TERMSESSION_LOG_BACKUP_COUNT", default=5, min_value=1),
        encoding="utf-8",
    )
    file_handler.namer = _gzip_namer
    file_handler.rotator = _gzip_rotator
    file_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(_level_from_env("TERMSESSION_STDERR_LOG_LEVEL", logging.WARNING))
    stderr_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(_level_from_env("TERMSESSION_LOG_LEVEL", logging.INFO))
    # Reconfiguring replaces handlers instead of stacking duplicates.
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(file_handler)
    root.addHandler(stderr_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_path


def _gzip_namer(name: str) -> str:
    return f"{name}.gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    try:
        os.remove(source)
    except FileNotFoundError:
        pass


def _level_from_env(name: str, default: int) -> int:
    level = logging.getLevelName(os.getenv(name, "").strip().upper())
    return level if isinstance(level, int) else default


def _get_int_env(name: str, *, default: int, min_value: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    return parsed if parsed >= min_value else default
