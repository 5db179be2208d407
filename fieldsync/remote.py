"""In-memory authoritative store used by tests, demos and the reference API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .clock import ClockOrder, VectorClock, compare
from .const import DEFAULT_PURGE_SYNCED_AFTER_MS
from .errors import ConflictNotFoundError, InvalidOperationError
from .events import ConflictType, CRDTOperation, OperationType, ResolutionType

_LOGGER = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class RemoteRecord:
    data: dict[str, Any]
    clock: VectorClock
    last_operation: CRDTOperation
    deleted: bool = False


@dataclass(slots=True)
class DeviceStatus:
    device_id: str
    last_sync: int = 0
    operation_count: int = 0
    conflict_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "lastSync": self.last_sync,
            "operationCount": self.operation_count,
            "conflictCount": self.conflict_count,
        }


@dataclass(slots=True)
class InMemoryRemote:
    """Star-topology authority that applies operations idempotently.

    Operations are keyed by ``(device_id, entity, entity_id, version)`` so a
    redelivered batch is acknowledged without being applied twice.
    """

    now: Callable[[], int] = _now_ms
    records: dict[tuple[str, str], RemoteRecord] = field(default_factory=dict)
    history: list[CRDTOperation] = field(default_factory=list)
    devices: dict[str, DeviceStatus] = field(default_factory=dict)
    conflicts: dict[str, dict[str, Any]] = field(default_factory=dict)
    _applied: dict[tuple[str, str, str, int], dict[str, Any]] = field(default_factory=dict)
    _business_keys: dict[tuple[str, str], str] = field(default_factory=dict)

    # ------------------------------------------------------------------
    def process_batch(self, operations: Sequence[Mapping[str, Any]], device_id: str) -> dict[str, Any]:
        results = []
        for payload in operations:
            try:
                operation = CRDTOperation.from_dict(payload)
            except InvalidOperationError as err:
                results.append(
                    {
                        "operationId": str(payload.get("id", "")) if isinstance(payload, Mapping) else "",
                        "success": False,
                        "error": str(err),
                        "retryable": False,
                    }
                )
                continue
            results.append(self.process_operation(operation))

        successful = sum(1 for item in results if item.get("success"))
        conflicts = sum(1 for item in results if item.get("conflict"))
        self._update_device(device_id, len(operations), conflicts)
        _LOGGER.info(
            "Processed %s operations from %s: %s applied, %s conflicts",
            len(operations),
            device_id,
            successful,
            conflicts,
        )
        return {
            "message": "Sync completed",
            "results": results,
            "summary": {
                "total": len(operations),
                "successful": successful,
                "conflicts": conflicts,
                "failures": len(results) - successful - conflicts,
            },
        }

    def process_operation(self, operation: CRDTOperation) -> dict[str, Any]:
        key = (operation.device_id, operation.entity, operation.entity_id, operation.version)
        if key in self._applied:
            return dict(self._applied[key])

        if operation.type is OperationType.UPDATE and (operation.entity, operation.entity_id) not in self.records:
            return {
                "operationId": operation.id,
                "success": False,
                "error": f"{operation.entity}/{operation.entity_id} does not exist",
                "retryable": True,
            }

        conflict = self._detect_conflict(operation)
        if conflict is not None:
            conflict_type, remote_record = conflict
            conflict_data = {
                "localOperation": operation.to_dict(),
                "remoteOperation": remote_record.last_operation.to_dict(),
                "conflictType": conflict_type.value,
            }
            self.conflicts[operation.id] = conflict_data
            _LOGGER.info(
                "Conflict %s on %s/%s from %s",
                conflict_type.value,
                operation.entity,
                operation.entity_id,
                operation.device_id,
            )
            return {
                "operationId": operation.id,
                "success": False,
                "conflict": True,
                "conflictData": conflict_data,
                "remoteVectorClock": remote_record.clock.to_dict(),
            }

        record = self._apply(operation)
        result = {
            "operationId": operation.id,
            "success": True,
            "remoteVectorClock": record.clock.to_dict(),
        }
        self._applied[key] = result
        return dict(result)

    def _detect_conflict(self, operation: CRDTOperation) -> tuple[ConflictType, RemoteRecord] | None:
        entity_key = (operation.entity, operation.entity_id)
        if operation.type is OperationType.CREATE and operation.business_key:
            owner = self._business_keys.get((operation.entity, operation.business_key))
            if owner is not None and owner != operation.entity_id:
                return ConflictType.CREATE_DUPLICATE, self.records[(operation.entity, owner)]
        record = self.records.get(entity_key)
        if record is None:
            return None
        if record.deleted:
            if operation.type is OperationType.UPDATE:
                return ConflictType.DELETE_UPDATE, record
            return None
        order = compare(operation.vector_clock, record.clock)
        if order in (ClockOrder.AFTER, ClockOrder.EQUAL):
            return None
        return ConflictType.CONCURRENT_UPDATE, record

    def _apply(self, operation: CRDTOperation) -> RemoteRecord:
        entity_key = (operation.entity, operation.entity_id)
        record = self.records.get(entity_key)
        if operation.type is OperationType.DELETE:
            data: dict[str, Any] = {}
        elif operation.type is OperationType.CREATE or record is None:
            data = dict(operation.data)
        else:
            data = {**record.data, **operation.data}
        clock = operation.vector_clock if record is None else record.clock.merge(operation.vector_clock)
        record = RemoteRecord(
            data=data,
            clock=clock,
            last_operation=operation,
            deleted=operation.type is OperationType.DELETE,
        )
        self.records[entity_key] = record
        if operation.business_key:
            self._business_keys.setdefault((operation.entity, operation.business_key), operation.entity_id)
        self.history.append(operation)
        return record

    def _update_device(self, device_id: str, operation_count: int, conflict_count: int) -> None:
        status = self.devices.setdefault(device_id, DeviceStatus(device_id))
        status.last_sync = self.now()
        status.operation_count += operation_count
        status.conflict_count += conflict_count

    # ------------------------------------------------------------------
    def resolve_conflict(self, operation_id: str, resolution: ResolutionType | str) -> bool:
        """Settle a conflict recorded by the remote.

        ``local_wins`` force-applies the local operation; any other resolution
        keeps the remote state.
        """

        conflict = self.conflicts.get(operation_id)
        if conflict is None:
            raise ConflictNotFoundError(f"conflict {operation_id} not found", reason="unknown_conflict")
        resolution = ResolutionType(resolution)
        if resolution is ResolutionType.LOCAL_WINS:
            self._apply(CRDTOperation.from_dict(conflict["localOperation"]))
        del self.conflicts[operation_id]
        _LOGGER.info("Resolved remote conflict %s with %s", operation_id, resolution.value)
        return True

    def device_status(self, device_id: str) -> dict[str, Any] | None:
        status = self.devices.get(device_id)
        return status.to_dict() if status else None

    def stats(self) -> dict[str, int]:
        return {
            "totalOperations": len(self.history),
            "activeDevices": len(self.devices),
            "pendingConflicts": len(self.conflicts),
        }

    def clear_old_operations(self, older_than_ms: int = DEFAULT_PURGE_SYNCED_AFTER_MS) -> int:
        cutoff = self.now() - older_than_ms
        kept = [operation for operation in self.history if operation.timestamp > cutoff]
        removed = len(self.history) - len(kept)
        self.history = kept
        if removed:
            _LOGGER.info("Cleared %s operations older than %sms", removed, older_than_ms)
        return removed

    def record(self, entity: str, entity_id: str) -> dict[str, Any] | None:
        record = self.records.get((entity, entity_id))
        if record is None or record.deleted:
            return None
        return dict(record.data)

    def snapshot(self) -> dict[tuple[str, str], dict[str, Any]]:
        return {key: dict(record.data) for key, record in self.records.items() if not record.deleted}


__all__ = ["DeviceStatus", "InMemoryRemote", "RemoteRecord"]
