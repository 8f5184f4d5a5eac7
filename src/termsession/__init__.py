"""Terminal session tracking and time-window management."""

from .config import ConfigError, TermSessionConfig, load_effective_config
from .errors import (
    NotFoundError,
    StorageError,
    TerminalUnavailableError,
    TermSessionError,
    ValidationError,
)
from .events import EventBus, SessionEvent, Subscription
from .fingerprint import TerminalDetection, detect_terminal
from .manager import SessionManager, SessionService
from .models import (
    ActivityType,
    Session,
    SessionStatus,
    TerminalFingerprint,
    TimeWindow,
    WindowStatus,
    WindowType,
)
from .storage import SessionStore
from .time_windows import WindowCriteria

__version__ = "0.1.0"

__all__ = [
    "ActivityType",
    "ConfigError",
    "EventBus",
    "NotFoundError",
    "Session",
    "SessionEvent",
    "SessionManager",
    "SessionService",
    "SessionStatus",
    "SessionStore",
    "StorageError",
    "Subscription",
    "TermSessionConfig",
    "TermSessionError",
    "TerminalDetection",
    "TerminalFingerprint",
    "TerminalUnavailableError",
    "TimeWindow",
    "ValidationError",
    "WindowCriteria",
    "WindowStatus",
    "WindowType",
    "detect_terminal",
    "load_effective_config",
]
