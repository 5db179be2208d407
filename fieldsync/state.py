"""Observable offline state published to the UI layer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .events import ConflictResolution, SyncEvent, SyncStatus

_LOGGER = logging.getLogger(__name__)

StateListener = Callable[["OfflineState"], Any]


def dispatch(listener: Callable[..., Any], *args: Any) -> None:
    """Invoke a listener, scheduling coroutine results on the running loop."""

    try:
        result = listener(*args)
    except Exception as err:  # noqa: BLE001
        _LOGGER.debug("Listener %r raised error: %s", listener, err, exc_info=True)
        return
    if asyncio.iscoroutine(result):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            result.close()
            _LOGGER.debug("Dropped coroutine listener %r outside an event loop", listener)
            return
        task = loop.create_task(result)
        task.add_done_callback(_log_task_error)


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    err = task.exception()
    if err is not None:
        _LOGGER.debug("Listener task raised error: %s", err, exc_info=err)


@dataclass(frozen=True, slots=True)
class OfflineState:
    is_online: bool
    last_sync: int | None
    pending_operations: tuple[SyncEvent, ...]
    conflict_resolution: tuple[ConflictResolution, ...]
    sync_in_progress: bool
    device_id: str
    failed_operations: tuple[SyncEvent, ...] = ()

    @property
    def pending_count(self) -> int:
        return len(self.pending_operations)

    @property
    def conflicts(self) -> tuple[ConflictResolution, ...]:
        return tuple(item for item in self.conflict_resolution if not item.resolved)

    def as_dict(self) -> dict[str, Any]:
        return {
            "isOnline": self.is_online,
            "lastSync": self.last_sync,
            "pendingOperations": [
                {"operation": event.operation.to_dict(), **event.to_dict()} for event in self.pending_operations
            ],
            "conflictResolution": [item.to_dict() for item in self.conflict_resolution],
            "syncInProgress": self.sync_in_progress,
            "deviceId": self.device_id,
            "failedOperations": [event.id for event in self.failed_operations],
        }


@dataclass(slots=True)
class OfflineStateHub:
    """Owns the mutable state fields and fans snapshots out to subscribers.

    The event lists are read from the operation log and the resolver at
    snapshot time, so only connectivity, sync progress and ``last_sync`` are
    stored here.
    """

    device_id: str
    events_source: Callable[[], list[SyncEvent]]
    conflicts_source: Callable[[], list[ConflictResolution]]
    exhausted: Callable[[SyncEvent], bool]
    is_online: bool = False
    last_sync: int | None = None
    sync_in_progress: bool = False
    _listeners: list[StateListener] = field(default_factory=list)

    def snapshot(self) -> OfflineState:
        unsynced = tuple(replace(event) for event in self.events_source())
        failed = tuple(event for event in unsynced if event.status is SyncStatus.FAILED and self.exhausted(event))
        return OfflineState(
            is_online=self.is_online,
            last_sync=self.last_sync,
            pending_operations=unsynced,
            conflict_resolution=tuple(self.conflicts_source()),
            sync_in_progress=self.sync_in_progress,
            device_id=self.device_id,
            failed_operations=failed,
        )

    def update(self, **changes: Any) -> OfflineState:
        for key, value in changes.items():
            if key not in {"is_online", "last_sync", "sync_in_progress"}:
                raise AttributeError(f"OfflineState field {key!r} is not writable")
            setattr(self, key, value)
        return self.notify()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self) -> OfflineState:
        state = self.snapshot()
        for listener in list(self._listeners):
            dispatch(listener, state)
        return state


__all__ = ["OfflineState", "OfflineStateHub", "StateListener", "dispatch"]
