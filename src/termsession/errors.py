"""
Error taxonomy for terminal session tracking.

ValidationError is raised before any mutation happens. NotFoundError is raised
only by operations that need an existing target; read operations return None
or an empty result instead. StorageError wraps failures of the underlying
store and is logged at each manager boundary before being re-raised.
"""

from __future__ import annotations


class TermSessionError(Exception):
    """Base class for all termsession errors."""


class ValidationError(TermSessionError):
    """Bad input: invalid time range, too few windows, split out of bounds."""


class NotFoundError(TermSessionError):
    """A session or time window id does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class TerminalUnavailableError(TermSessionError):
    """No terminal is attached to the current process."""


class StorageError(TermSessionError):
    """Persistence or transaction failure."""
