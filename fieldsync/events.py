from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .clock import VectorClock
from .errors import InvalidOperationError, InvalidTransitionError


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConflictType(str, Enum):
    CONCURRENT_UPDATE = "concurrent_update"
    DELETE_UPDATE = "delete_update"
    CREATE_DUPLICATE = "create_duplicate"


class ResolutionType(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGE = "merge"
    MANUAL = "manual"


_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCING}),
    SyncStatus.SYNCING: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.PENDING}),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING}),
    SyncStatus.SYNCED: frozenset(),
}


def _coerce_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError as err:
        raise InvalidOperationError(f"unknown {label}: {value!r}") from err


@dataclass(frozen=True, slots=True)
class CRDTOperation:
    """A single local mutation. Never modified once created."""

    id: str
    type: OperationType
    entity: str
    entity_id: str
    data: Mapping[str, Any]
    timestamp: int
    device_id: str
    version: int
    vector_clock: VectorClock
    business_key: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", _coerce_enum(OperationType, self.type, "operation type"))
        if not self.id:
            raise InvalidOperationError("operation id must not be empty")
        if not self.entity or not self.entity_id:
            raise InvalidOperationError("operation requires an entity and an entity id")
        if not self.device_id:
            raise InvalidOperationError("operation requires a device id")
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 0:
            raise InvalidOperationError(f"invalid operation version: {self.version!r}")
        if not isinstance(self.vector_clock, VectorClock):
            object.__setattr__(self, "vector_clock", VectorClock.from_dict(self.vector_clock))
        object.__setattr__(self, "data", dict(self.data or {}))

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(self.data)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "entity": self.entity,
            "entityId": self.entity_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
            "deviceId": self.device_id,
            "version": self.version,
            "vectorClock": self.vector_clock.to_dict(),
        }
        if self.business_key is not None:
            payload["businessKey"] = self.business_key
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CRDTOperation:
        try:
            return cls(
                id=str(payload["id"]),
                type=payload["type"],
                entity=str(payload["entity"]),
                entity_id=str(payload["entityId"]),
                data=payload.get("data") or {},
                timestamp=int(payload["timestamp"]),
                device_id=str(payload["deviceId"]),
                version=int(payload["version"]),
                vector_clock=VectorClock.from_dict(payload.get("vectorClock")),
                business_key=payload.get("businessKey"),
            )
        except KeyError as err:
            raise InvalidOperationError(f"operation payload missing field {err.args[0]!r}") from err
        except (TypeError, ValueError) as err:
            if isinstance(err, InvalidOperationError):
                raise
            raise InvalidOperationError(f"malformed operation payload: {err}") from err


@dataclass(slots=True)
class SyncEvent:
    """Bookkeeping for one operation's delivery to the remote service."""

    operation: CRDTOperation
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    last_retry: int | None = None
    error: str | None = None
    priority: Priority = Priority.MEDIUM
    retryable: bool = True
    started_at: int | None = None
    synced_at: int | None = None
    attempts: int = 0

    @property
    def id(self) -> str:
        return self.operation.id

    def transition(self, status: SyncStatus) -> None:
        status = SyncStatus(status)
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"operation {self.id} cannot move from {self.status.value} to {status.value}",
                reason="invalid_transition",
            )
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "retryCount": self.retry_count,
            "lastRetry": self.last_retry,
            "error": self.error,
            "priority": self.priority.value,
            "retryable": self.retryable,
            "startedAt": self.started_at,
            "syncedAt": self.synced_at,
            "attempts": self.attempts,
        }

    def to_record(self) -> bytes:
        """Serialise the operation together with its event as one storage record."""

        record = {"operation": self.operation.to_dict(), "event": self.to_dict()}
        return json.dumps(record, separators=(",", ":")).encode()

    @classmethod
    def from_record(cls, raw: bytes | str) -> SyncEvent:
        record = json.loads(raw)
        event = record.get("event", {})
        return cls(
            operation=CRDTOperation.from_dict(record["operation"]),
            status=SyncStatus(event.get("status", SyncStatus.PENDING.value)),
            retry_count=int(event.get("retryCount", 0)),
            last_retry=event.get("lastRetry"),
            error=event.get("error"),
            priority=Priority(event.get("priority", Priority.MEDIUM.value)),
            retryable=bool(event.get("retryable", True)),
            started_at=event.get("startedAt"),
            synced_at=event.get("syncedAt"),
            attempts=int(event.get("attempts", 0)),
        )


@dataclass(slots=True)
class ConflictResolution:
    """A detected conflict and how it was (or will be) settled."""

    operation_id: str
    conflict_type: ConflictType
    local_version: CRDTOperation
    remote_version: CRDTOperation
    resolution: ResolutionType
    resolved_at: int | None = None
    merged_data: dict[str, Any] | None = field(default=None)

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    @property
    def entity_key(self) -> tuple[str, str]:
        return self.local_version.entity, self.local_version.entity_id

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "operationId": self.operation_id,
            "conflictType": self.conflict_type.value,
            "localVersion": self.local_version.to_dict(),
            "remoteVersion": self.remote_version.to_dict(),
            "resolution": self.resolution.value,
            "resolvedAt": self.resolved_at,
        }
        if self.merged_data is not None:
            payload["mergedData"] = self.merged_data
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConflictResolution:
        return cls(
            operation_id=str(payload["operationId"]),
            conflict_type=ConflictType(payload["conflictType"]),
            local_version=CRDTOperation.from_dict(payload["localVersion"]),
            remote_version=CRDTOperation.from_dict(payload["remoteVersion"]),
            resolution=ResolutionType(payload["resolution"]),
            resolved_at=payload.get("resolvedAt"),
            merged_data=payload.get("mergedData"),
        )


__all__ = [
    "CRDTOperation",
    "ConflictResolution",
    "ConflictType",
    "OperationType",
    "Priority",
    "ResolutionType",
    "SyncEvent",
    "SyncStatus",
]
