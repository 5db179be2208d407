"""Append-only durable log of local CRDT operations."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import fields, replace
from typing import Any
from uuid import uuid4

from .clock import DeviceClock
from .const import KEY_ENTITY_INDEX, KEY_OPERATION
from .errors import InvalidOperationError, InvalidTransitionError, StorageError
from .events import CRDTOperation, OperationType, Priority, SyncEvent, SyncStatus
from .storage import KeyValueStorage

_LOGGER = logging.getLogger(__name__)

EntityKey = tuple[str, str]


def _index_key(entity: str, entity_id: str) -> str:
    return f"{KEY_ENTITY_INDEX}{entity}:{entity_id}"


class OperationLog:
    """Durable log of operations and their sync bookkeeping.

    Each operation is stored together with its ``SyncEvent`` under
    ``op:<id>`` so a status change is a single write. A per-entity index
    lists operation ids so restarts can rebuild causal chains cheaply.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        clock: DeviceClock,
        now: Callable[[], int],
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._now = now
        self._events: dict[str, SyncEvent] = {}
        self._index: dict[EntityKey, list[str]] = {}
        self._load()

    # ------------------------------------------------------------------
    @property
    def device_id(self) -> str:
        return self._clock.device_id

    @property
    def clock(self) -> DeviceClock:
        return self._clock

    def _load(self) -> None:
        loaded: list[SyncEvent] = []
        for key in self._storage.keys_with_prefix(KEY_OPERATION):
            raw = self._storage.get(key)
            if raw is None:
                continue
            try:
                loaded.append(SyncEvent.from_record(raw))
            except (InvalidOperationError, ValueError, KeyError) as err:
                _LOGGER.warning("Skipping unreadable operation record %s: %s", key, err)
        loaded.sort(key=lambda event: (event.operation.timestamp, event.operation.version, event.id))
        for event in loaded:
            self._events[event.id] = event
        stored = self._load_index()
        if loaded:
            _LOGGER.debug("Restored %s operations from storage", len(loaded))
        expected = {_index_key(*key): ids for key, ids in self._index.items()}
        if stored != expected:
            _LOGGER.warning("Entity index out of step with operation records; repairing it")
            for key in stored.keys() - expected.keys():
                self._storage.delete(key)
            for key, ids in expected.items():
                if stored.get(key) != ids:
                    self._storage.set(key, json.dumps(ids).encode())

    def _load_index(self) -> dict[str, list[str]]:
        """Rebuild causal chains from the index records.

        Ids without an operation record are dropped and operations missing
        from their entity's index are added back.
        """

        stored: dict[str, list[str]] = {}
        indexed: set[str] = set()
        for key in self._storage.keys_with_prefix(KEY_ENTITY_INDEX):
            try:
                ids = json.loads(self._storage.get(key) or b"[]")
            except ValueError:
                ids = None
            if not isinstance(ids, list):
                _LOGGER.warning("Ignoring unreadable entity index %s", key)
                stored[key] = []
                continue
            stored[key] = ids
            for op_id in ids:
                event = self._events.get(op_id) if isinstance(op_id, str) else None
                if event is None or op_id in indexed or _index_key(*self._entity_of(event)) != key:
                    continue
                indexed.add(op_id)
                self._index.setdefault(self._entity_of(event), []).append(op_id)
        for event in self._events.values():
            if event.id not in indexed:
                self._index.setdefault(self._entity_of(event), []).append(event.id)
        for ids in self._index.values():
            ids.sort(key=lambda op_id: self._events[op_id].operation.version)
        return stored

    @staticmethod
    def _entity_of(event: SyncEvent) -> EntityKey:
        return event.operation.entity, event.operation.entity_id

    # ------------------------------------------------------------------
    def append(
        self,
        entity: str,
        entity_id: str,
        op_type: OperationType | str,
        data: Mapping[str, Any] | None = None,
        priority: Priority | str = Priority.MEDIUM,
        business_key: str | None = None,
    ) -> CRDTOperation:
        """Record a local mutation and enqueue it for sync.

        A ``delete`` whose ``create`` was never attempted collapses the whole
        chain locally: the unsynced operations are pruned and the returned
        delete is never persisted.
        """

        try:
            op_type = OperationType(op_type)
            priority = Priority(priority)
        except ValueError as err:
            raise InvalidOperationError(str(err)) from err
        if op_type is OperationType.DELETE:
            if self._unattempted_create(entity, entity_id) is not None:
                return self._collapse(entity, entity_id)
        return self._append(entity, entity_id, op_type, data or {}, priority, business_key)

    def _append(
        self,
        entity: str,
        entity_id: str,
        op_type: OperationType,
        data: Mapping[str, Any],
        priority: Priority,
        business_key: str | None,
    ) -> CRDTOperation:
        clock = self._clock.peek_tick(entity, entity_id)
        operation = CRDTOperation(
            id=uuid4().hex,
            type=op_type,
            entity=entity,
            entity_id=entity_id,
            data=dict(data) if op_type is not OperationType.DELETE else {},
            timestamp=self._now(),
            device_id=self.device_id,
            version=clock[self.device_id],
            vector_clock=clock,
            business_key=business_key,
        )
        event = SyncEvent(operation=operation, priority=priority)
        entity_key = (entity, entity_id)
        index = [*self._index.get(entity_key, []), operation.id]
        self._write_all(
            {
                KEY_OPERATION + operation.id: event.to_record(),
                _index_key(entity, entity_id): json.dumps(index).encode(),
            },
            after=lambda: self._clock.tick(entity, entity_id),
        )
        self._events[operation.id] = event
        self._index[entity_key] = index
        _LOGGER.debug(
            "Appended %s %s/%s v%s (%s)",
            op_type.value,
            entity,
            entity_id,
            operation.version,
            priority.value,
        )
        return operation

    def _write_all(self, writes: Mapping[str, bytes | None], *, after: Callable[[], Any] | None = None) -> None:
        """Apply writes in order, restoring previous values if any step fails.

        A ``None`` value deletes the key.
        """

        previous: dict[str, bytes | None] = {}
        try:
            for key, value in writes.items():
                previous[key] = self._storage.get(key)
                if value is None:
                    self._storage.delete(key)
                else:
                    self._storage.set(key, value)
            if after is not None:
                after()
        except StorageError:
            for key, value in previous.items():
                try:
                    if value is None:
                        self._storage.delete(key)
                    else:
                        self._storage.set(key, value)
                except StorageError:
                    _LOGGER.warning("Rollback of %s failed", key, exc_info=True)
            raise

    def _unattempted_create(self, entity: str, entity_id: str) -> SyncEvent | None:
        for op_id in self._index.get((entity, entity_id), []):
            event = self._events[op_id]
            if (
                event.operation.type is OperationType.CREATE
                and event.status is SyncStatus.PENDING
                and event.attempts == 0
            ):
                return event
        return None

    def _collapse(self, entity: str, entity_id: str) -> CRDTOperation:
        clock = self._clock.peek_tick(entity, entity_id)
        operation = CRDTOperation(
            id=uuid4().hex,
            type=OperationType.DELETE,
            entity=entity,
            entity_id=entity_id,
            data={},
            timestamp=self._now(),
            device_id=self.device_id,
            version=clock[self.device_id],
            vector_clock=clock,
        )
        pruned = [op.id for op in self.pending_by_entity(entity, entity_id)]
        for op_id in pruned:
            self.discard(op_id, "deleted before first sync")
        _LOGGER.info(
            "Collapsed %s unsynced operations on %s/%s; nothing to sync",
            len(pruned),
            entity,
            entity_id,
        )
        return operation

    # ------------------------------------------------------------------
    def _require(self, operation_id: str) -> SyncEvent:
        event = self._events.get(operation_id)
        if event is None:
            raise KeyError(operation_id)
        return event

    def _update(self, operation_id: str, status: SyncStatus, **changes: Any) -> SyncEvent:
        event = self._require(operation_id)
        before = replace(event)
        try:
            event.transition(status)
            for key, value in changes.items():
                setattr(event, key, value)
            self._storage.set(KEY_OPERATION + operation_id, event.to_record())
        except (StorageError, InvalidTransitionError):
            for item in fields(SyncEvent):
                setattr(event, item.name, getattr(before, item.name))
            raise
        _LOGGER.debug("Operation %s -> %s", operation_id, status.value)
        return event

    def mark_syncing(self, operation_ids: Iterable[str]) -> list[SyncEvent]:
        now = self._now()
        events = []
        for op_id in operation_ids:
            event = self._require(op_id)
            events.append(self._update(op_id, SyncStatus.SYNCING, started_at=now, attempts=event.attempts + 1))
        return events

    def mark_synced(self, operation_id: str) -> SyncEvent:
        return self._update(
            operation_id,
            SyncStatus.SYNCED,
            synced_at=self._now(),
            started_at=None,
            error=None,
        )

    def mark_failed(self, operation_id: str, error: str, *, retryable: bool = True) -> SyncEvent:
        event = self._require(operation_id)
        return self._update(
            operation_id,
            SyncStatus.FAILED,
            retry_count=event.retry_count + 1,
            last_retry=self._now(),
            error=error,
            retryable=retryable,
            started_at=None,
        )

    def mark_pending(self, operation_id: str) -> SyncEvent:
        return self._update(operation_id, SyncStatus.PENDING, started_at=None)

    def reset_failed(self, operation_id: str) -> SyncEvent:
        """Return a failed operation to the queue with a fresh retry budget."""

        event = self._require(operation_id)
        if event.status is not SyncStatus.FAILED:
            raise InvalidTransitionError(
                f"operation {operation_id} is {event.status.value}, not failed",
                reason="not_failed",
            )
        return self._update(
            operation_id,
            SyncStatus.PENDING,
            retry_count=0,
            last_retry=None,
            error=None,
            retryable=True,
        )

    # ------------------------------------------------------------------
    def get(self, operation_id: str) -> CRDTOperation | None:
        event = self._events.get(operation_id)
        return event.operation if event else None

    def event(self, operation_id: str) -> SyncEvent | None:
        return self._events.get(operation_id)

    def events(self) -> list[SyncEvent]:
        return list(self._events.values())

    def unsynced(self) -> list[SyncEvent]:
        return [event for event in self._events.values() if event.status is not SyncStatus.SYNCED]

    def by_status(self, status: SyncStatus | str) -> list[SyncEvent]:
        status = SyncStatus(status)
        return [event for event in self._events.values() if event.status is status]

    def by_entity(self, entity: str, entity_id: str) -> list[CRDTOperation]:
        return [self._events[op_id].operation for op_id in self._index.get((entity, entity_id), [])]

    def by_device(self, device_id: str) -> list[CRDTOperation]:
        return [event.operation for event in self._events.values() if event.operation.device_id == device_id]

    def pending_by_entity(self, entity: str, entity_id: str) -> list[CRDTOperation]:
        """Unsynced operations on one entity in ascending version order."""

        return [
            self._events[op_id].operation
            for op_id in self._index.get((entity, entity_id), [])
            if self._events[op_id].status is not SyncStatus.SYNCED
        ]

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._events

    # ------------------------------------------------------------------
    def _remove(self, operation_id: str) -> SyncEvent:
        event = self._require(operation_id)
        entity_key = self._entity_of(event)
        index = [op_id for op_id in self._index.get(entity_key, []) if op_id != operation_id]
        self._write_all(
            {
                _index_key(*entity_key): json.dumps(index).encode() if index else None,
                KEY_OPERATION + operation_id: None,
            }
        )
        if index:
            self._index[entity_key] = index
        else:
            self._index.pop(entity_key, None)
        del self._events[operation_id]
        return event

    def discard(self, operation_id: str, reason: str) -> CRDTOperation:
        """Remove an operation from the log. Every call is logged."""

        event = self._remove(operation_id)
        entity_key = self._entity_of(event)
        _LOGGER.info(
            "Discarded %s %s/%s v%s: %s",
            event.operation.type.value,
            entity_key[0],
            entity_key[1],
            event.operation.version,
            reason,
        )
        return event.operation

    def supersede(
        self,
        operation_id: str,
        remote_clock: Mapping[str, int] | None,
        *,
        data: Mapping[str, Any] | None = None,
        entity_id: str | None = None,
    ) -> CRDTOperation:
        """Replace an operation with one whose clock dominates ``remote_clock``."""

        event = self._require(operation_id)
        old = event.operation
        target_id = entity_id or old.entity_id
        self._clock.observe(old.entity, target_id, remote_clock)
        replacement = self._append(
            old.entity,
            target_id,
            old.type,
            old.data if data is None else data,
            event.priority,
            old.business_key,
        )
        self.discard(operation_id, f"superseded by {replacement.id}")
        return replacement

    def purge_synced(self, older_than_ms: int) -> int:
        """Drop synced operations confirmed more than ``older_than_ms`` ago."""

        cutoff = self._now() - older_than_ms
        stale = [
            event.id
            for event in self._events.values()
            if event.status is SyncStatus.SYNCED and (event.synced_at or 0) < cutoff
        ]
        for op_id in stale:
            self._remove(op_id)
        if stale:
            _LOGGER.info("Purged %s synced operations", len(stale))
        return len(stale)


__all__ = ["OperationLog"]
