"""Offline-first synchronization engine for field-operations clients."""

from __future__ import annotations

from .clock import ClockOrder, DeviceClock, VectorClock, compare, merge
from .config import SyncConfig, load_config
from .conflict import ConflictResolver, ConflictStrategy, EngineHooks
from .environment import SystemEnvironment
from .errors import (
    ConflictNotFoundError,
    InvalidOperationError,
    InvalidTransitionError,
    StorageError,
    SyncConfigError,
    SyncEngineError,
    TransportError,
)
from .events import (
    ConflictResolution,
    ConflictType,
    CRDTOperation,
    OperationType,
    Priority,
    ResolutionType,
    SyncEvent,
    SyncStatus,
)
from .manager import OfflineManager
from .remote import InMemoryRemote
from .state import OfflineState
from .storage import MemoryStorage, SQLiteStorage
from .transport import BatchResult, ConflictInfo, HttpTransport, LocalTransport, OperationOutcome

__all__ = [
    "BatchResult",
    "ClockOrder",
    "ConflictInfo",
    "ConflictNotFoundError",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictStrategy",
    "ConflictType",
    "CRDTOperation",
    "DeviceClock",
    "EngineHooks",
    "HttpTransport",
    "InMemoryRemote",
    "InvalidOperationError",
    "InvalidTransitionError",
    "LocalTransport",
    "MemoryStorage",
    "OfflineManager",
    "OfflineState",
    "OperationOutcome",
    "OperationType",
    "Priority",
    "ResolutionType",
    "SQLiteStorage",
    "StorageError",
    "SyncConfig",
    "SyncConfigError",
    "SyncEngineError",
    "SyncEvent",
    "SyncStatus",
    "SystemEnvironment",
    "TransportError",
    "VectorClock",
    "compare",
    "load_config",
    "merge",
]
