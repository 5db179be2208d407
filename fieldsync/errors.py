"""Exception types raised by the sync engine."""

from __future__ import annotations


class SyncEngineError(RuntimeError):
    """Base class for sync engine failures."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class StorageError(SyncEngineError):
    """Raised when local persistence is unavailable or a write fails."""


class TransportError(SyncEngineError):
    """Raised when a batch could not be delivered to the remote service."""


class InvalidOperationError(SyncEngineError, ValueError):
    """Raised for malformed operations or vector clocks."""


class InvalidTransitionError(SyncEngineError):
    """Raised when a sync event is moved to a status it cannot reach."""


class ConflictNotFoundError(SyncEngineError, LookupError):
    """Raised when a manual resolution targets an unknown conflict."""


class SyncConfigError(SyncEngineError, ValueError):
    """Raised when sync options fail validation."""


__all__ = [
    "ConflictNotFoundError",
    "InvalidOperationError",
    "InvalidTransitionError",
    "StorageError",
    "SyncConfigError",
    "SyncEngineError",
    "TransportError",
]
