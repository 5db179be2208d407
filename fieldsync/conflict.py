"""Classify remote outcomes and settle conflicts."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from .clock import ClockOrder, VectorClock, compare
from .const import KEY_CONFLICT
from .errors import ConflictNotFoundError, InvalidOperationError
from .events import (
    ConflictResolution,
    ConflictType,
    CRDTOperation,
    OperationType,
    ResolutionType,
    SyncEvent,
)
from .oplog import EntityKey, OperationLog
from .storage import KeyValueStorage
from .transport import OperationOutcome

_LOGGER = logging.getLogger(__name__)


class ConflictStrategy(str, Enum):
    """How concurrent updates are settled."""

    LAST_WRITE_WINS = "last_write_wins"
    VECTOR_CLOCK = "vector_clock"
    MANUAL = "manual"


class EngineHooks:
    """Callbacks into the host application's local data layer.

    Subclass and override the methods the application cares about; the
    defaults only log.
    """

    def remove_record(self, entity: str, entity_id: str) -> None:
        _LOGGER.debug("remove_record(%s, %s) not handled", entity, entity_id)

    def remap_reference(self, entity: str, local_id: str, remote_id: str) -> None:
        _LOGGER.debug("remap_reference(%s, %s -> %s) not handled", entity, local_id, remote_id)

    def apply_remote(self, operation: CRDTOperation) -> None:
        _LOGGER.debug("apply_remote(%s/%s) not handled", operation.entity, operation.entity_id)


def _updates_disjoint(local: CRDTOperation, remote: CRDTOperation) -> bool:
    return (
        local.type is OperationType.UPDATE
        and remote.type is OperationType.UPDATE
        and not (local.fields & remote.fields)
    )


def last_writer(local: CRDTOperation, remote: CRDTOperation) -> CRDTOperation:
    """Pick the later write; ``device_id`` breaks timestamp ties."""

    if (local.timestamp, local.device_id) > (remote.timestamp, remote.device_id):
        return local
    return remote


class ConflictResolver:
    """Route each ``OperationOutcome`` to the log and settle conflicts.

    Decisions depend only on the two operations and the configured strategy,
    so every device reaches the same verdict for the same pair.
    """

    def __init__(
        self,
        log: OperationLog,
        storage: KeyValueStorage,
        now: Callable[[], int],
        *,
        strategy: ConflictStrategy | str = ConflictStrategy.VECTOR_CLOCK,
        delete_update_resolution: ResolutionType | str = ResolutionType.REMOTE_WINS,
        hooks: EngineHooks | None = None,
    ) -> None:
        self._log = log
        self._storage = storage
        self._now = now
        self.strategy = ConflictStrategy(strategy)
        self.delete_update_resolution = ResolutionType(delete_update_resolution)
        self.hooks = hooks or EngineHooks()
        self._conflicts: dict[str, ConflictResolution] = {}
        self._load()

    def _load(self) -> None:
        for key in self._storage.keys_with_prefix(KEY_CONFLICT):
            raw = self._storage.get(key)
            if raw is None:
                continue
            try:
                conflict = ConflictResolution.from_dict(json.loads(raw))
            except (InvalidOperationError, ValueError, KeyError) as err:
                _LOGGER.warning("Skipping unreadable conflict record %s: %s", key, err)
                continue
            self._conflicts[conflict.operation_id] = conflict

    def _persist(self, conflict: ConflictResolution) -> None:
        self._storage.set(
            KEY_CONFLICT + conflict.operation_id,
            json.dumps(conflict.to_dict(), separators=(",", ":")).encode(),
        )

    # ------------------------------------------------------------------
    def conflicts(self) -> list[ConflictResolution]:
        return list(self._conflicts.values())

    def unresolved(self) -> list[ConflictResolution]:
        return [item for item in self._conflicts.values() if not item.resolved]

    def blocked_entities(self) -> set[EntityKey]:
        return {item.entity_key for item in self._conflicts.values() if not item.resolved}

    def get(self, operation_id: str) -> ConflictResolution | None:
        return self._conflicts.get(operation_id)

    # ------------------------------------------------------------------
    def handle(self, event: SyncEvent, outcome: OperationOutcome) -> ResolutionType | None:
        """Apply the remote's verdict for ``event``.

        Returns the resolution taken when a conflict was settled or held.
        """

        resolution = self._handle(event, outcome)
        if resolution is not None and resolution is not ResolutionType.MANUAL:
            self._close_orphans(resolution)
        return resolution

    def _handle(self, event: SyncEvent, outcome: OperationOutcome) -> ResolutionType | None:
        op = event.operation
        if outcome.accepted:
            self._log.mark_synced(op.id)
            if outcome.remote_vector_clock:
                self._log.clock.observe(op.entity, op.entity_id, outcome.remote_vector_clock)
            return None

        if outcome.conflict is None:
            self._log.mark_failed(op.id, outcome.error or "rejected by remote", retryable=outcome.retryable)
            return None

        remote = outcome.conflict.remote_operation
        remote_clock = outcome.remote_vector_clock or remote.vector_clock
        conflict_type = outcome.conflict.conflict_type

        if conflict_type is ConflictType.DELETE_UPDATE:
            if self.delete_update_resolution is ResolutionType.MANUAL:
                return self._hold(event, conflict_type, remote, remote_clock)
            return self._remote_deleted(op, remote)

        if conflict_type is ConflictType.CREATE_DUPLICATE:
            return self._adopt_remote_id(op, remote, remote_clock)

        order = compare(op.vector_clock, remote_clock)
        if order is ClockOrder.EQUAL:
            self._log.mark_synced(op.id)
            return None
        if order is ClockOrder.BEFORE:
            return self._remote_wins(op, remote, remote_clock, conflict_type)
        if order is ClockOrder.AFTER:
            return self._local_wins(op, remote, remote_clock, conflict_type, ResolutionType.LOCAL_WINS)
        if _updates_disjoint(op, remote):
            return self._local_wins(op, remote, remote_clock, conflict_type, ResolutionType.MERGE)
        if self.strategy is ConflictStrategy.LAST_WRITE_WINS:
            if last_writer(op, remote) is op:
                return self._local_wins(op, remote, remote_clock, conflict_type, ResolutionType.LOCAL_WINS)
            return self._remote_wins(op, remote, remote_clock, conflict_type)
        return self._hold(event, conflict_type, remote, remote_clock)

    # ------------------------------------------------------------------
    def _record(
        self,
        op: CRDTOperation,
        conflict_type: ConflictType,
        remote: CRDTOperation,
        resolution: ResolutionType,
        *,
        resolved: bool = True,
    ) -> ConflictResolution:
        conflict = ConflictResolution(
            operation_id=op.id,
            conflict_type=conflict_type,
            local_version=op,
            remote_version=remote,
            resolution=resolution,
            resolved_at=self._now() if resolved else None,
        )
        self._conflicts[op.id] = conflict
        self._persist(conflict)
        return conflict

    def _restamp_chain(
        self,
        op: CRDTOperation,
        remote_clock: VectorClock,
        *,
        data: Mapping[str, Any] | None = None,
        entity_id: str | None = None,
        include_self: bool = True,
    ) -> list[CRDTOperation]:
        """Re-issue ``op`` and its later unsynced operations in version order."""

        chain = [
            item
            for item in self._log.pending_by_entity(op.entity, op.entity_id)
            if item.version > op.version or (include_self and item.id == op.id)
        ]
        replacements = []
        for item in chain:
            replacements.append(
                self._log.supersede(
                    item.id,
                    remote_clock,
                    data=data if item.id == op.id else None,
                    entity_id=entity_id,
                )
            )
        return replacements

    def _local_wins(
        self,
        op: CRDTOperation,
        remote: CRDTOperation,
        remote_clock: VectorClock,
        conflict_type: ConflictType,
        resolution: ResolutionType,
    ) -> ResolutionType:
        self._record(op, conflict_type, remote, resolution)
        self._restamp_chain(op, remote_clock)
        _LOGGER.info("Conflict on %s/%s settled as %s", op.entity, op.entity_id, resolution.value)
        return resolution

    def _remote_wins(
        self,
        op: CRDTOperation,
        remote: CRDTOperation,
        remote_clock: VectorClock,
        conflict_type: ConflictType,
    ) -> ResolutionType:
        self._record(op, conflict_type, remote, ResolutionType.REMOTE_WINS)
        self._log.discard(op.id, "remote_wins")
        self._log.clock.observe(op.entity, op.entity_id, remote_clock)
        self.hooks.apply_remote(remote)
        _LOGGER.info("Conflict on %s/%s settled as remote_wins", op.entity, op.entity_id)
        return ResolutionType.REMOTE_WINS

    def _remote_deleted(self, op: CRDTOperation, remote: CRDTOperation) -> ResolutionType:
        self._record(op, ConflictType.DELETE_UPDATE, remote, ResolutionType.REMOTE_WINS)
        for item in self._log.pending_by_entity(op.entity, op.entity_id):
            self._log.discard(item.id, "remote_wins: record deleted remotely")
        self.hooks.remove_record(op.entity, op.entity_id)
        return ResolutionType.REMOTE_WINS

    def _adopt_remote_id(
        self,
        op: CRDTOperation,
        remote: CRDTOperation,
        remote_clock: VectorClock,
    ) -> ResolutionType:
        self._record(op, ConflictType.CREATE_DUPLICATE, remote, ResolutionType.MERGE)
        self.hooks.remap_reference(op.entity, op.entity_id, remote.entity_id)
        self._restamp_chain(op, remote_clock, entity_id=remote.entity_id, include_self=False)
        self._log.discard(op.id, f"merge: duplicate of {remote.entity_id}")
        return ResolutionType.MERGE

    def _hold(
        self,
        event: SyncEvent,
        conflict_type: ConflictType,
        remote: CRDTOperation,
        remote_clock: VectorClock,
    ) -> ResolutionType:
        op = event.operation
        self._log.clock.observe(op.entity, op.entity_id, remote_clock)
        self._record(op, conflict_type, remote, ResolutionType.MANUAL, resolved=False)
        self._log.mark_pending(op.id)
        _LOGGER.info("Conflict on %s/%s needs a manual decision", op.entity, op.entity_id)
        return ResolutionType.MANUAL

    # ------------------------------------------------------------------
    def resolve_manually(
        self,
        operation_id: str,
        resolution: ResolutionType | str,
        data: Mapping[str, Any] | None = None,
    ) -> ConflictResolution:
        """Settle a held conflict and release its entity."""

        conflict = self._conflicts.get(operation_id)
        if conflict is None or conflict.resolved:
            raise ConflictNotFoundError(f"no open conflict for operation {operation_id}", reason="unknown_conflict")
        try:
            resolution = ResolutionType(resolution)
        except ValueError as err:
            raise InvalidOperationError(f"unknown resolution: {resolution!r}") from err
        if resolution is ResolutionType.MANUAL:
            raise InvalidOperationError("a manual conflict must be resolved as local_wins, remote_wins or merge")

        op = conflict.local_version
        remote = conflict.remote_version
        merged = None
        if resolution is ResolutionType.MERGE:
            merged = dict(data) if data is not None else {**remote.data, **op.data}

        conflict.resolution = resolution
        conflict.resolved_at = self._now()
        conflict.merged_data = merged
        self._persist(conflict)

        remote_clock = self._log.clock.clock_for(op.entity, op.entity_id)
        if op.id in self._log:
            if resolution is ResolutionType.REMOTE_WINS:
                self._log.discard(op.id, "remote_wins (manual)")
                self._restamp_chain(op, remote_clock, include_self=False)
                self.hooks.apply_remote(remote)
            else:
                self._restamp_chain(op, remote_clock, data=merged)
        _LOGGER.info("Conflict on %s/%s resolved manually as %s", op.entity, op.entity_id, resolution.value)
        self._close_orphans(resolution)
        return conflict

    def _close_orphans(self, resolution: ResolutionType) -> None:
        """Close open conflicts whose held operation was re-issued or discarded."""

        for conflict in self.unresolved():
            if conflict.operation_id in self._log:
                continue
            conflict.resolution = resolution
            conflict.resolved_at = self._now()
            self._persist(conflict)
            _LOGGER.info(
                "Closed conflict %s: its operation was superseded (%s)",
                conflict.operation_id,
                resolution.value,
            )


__all__ = ["ConflictResolver", "ConflictStrategy", "EngineHooks", "last_writer"]
