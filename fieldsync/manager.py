"""Wire the sync engine together and expose it to the application."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from .clock import DeviceClock
from .collection import EntityCollection
from .config import SyncConfig
from .conflict import ConflictResolver, EngineHooks
from .environment import Environment, SystemEnvironment
from .errors import InvalidTransitionError
from .events import ConflictResolution, CRDTOperation, OperationType, Priority, ResolutionType, SyncStatus
from .oplog import OperationLog
from .queue import SyncQueue
from .scheduler import CycleReport, SyncScheduler
from .state import OfflineState, OfflineStateHub, StateListener
from .storage import KeyValueStorage
from .transport import Transport

_LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]


class OfflineManager:
    """Offline-first sync engine for one device.

    ``transport`` may be a ready transport or a factory that receives the
    persisted device id, which is how ``HttpTransport`` is usually built.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        transport: Transport | TransportFactory,
        *,
        environment: Environment | None = None,
        config: SyncConfig | None = None,
        hooks: EngineHooks | None = None,
        device_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.environment = environment or SystemEnvironment()
        self.clock = DeviceClock.load_or_create(storage, device_id_factory or (lambda: uuid4().hex))
        now = self.environment.now_ms
        self.log = OperationLog(storage, self.clock, now)
        self.resolver = ConflictResolver(
            self.log,
            storage,
            now,
            strategy=self.config.conflict_resolution_strategy,
            delete_update_resolution=self.config.delete_update_resolution,
            hooks=hooks,
        )
        self.queue = SyncQueue(
            self.log,
            batch_size=self.config.batch_size,
            max_retries=self.config.max_retries,
            retry_delay_ms=self.config.retry_delay_ms,
            max_retry_delay_ms=self.config.max_retry_delay_ms,
            priority_weights=self.config.priority_weights,
            blocked=self.resolver.blocked_entities,
        )
        self.hub = OfflineStateHub(
            device_id=self.clock.device_id,
            events_source=self.log.unsynced,
            conflicts_source=self.resolver.conflicts,
            exhausted=self.queue.is_exhausted,
            is_online=self.environment.is_online,
        )
        if not hasattr(transport, "send"):
            transport = transport(self.clock.device_id)
        self.transport = transport
        self.scheduler = SyncScheduler(
            self.log,
            self.queue,
            self.resolver,
            self.transport,
            self.hub,
            self.environment,
            self.config,
        )

    # ------------------------------------------------------------------
    @property
    def device_id(self) -> str:
        return self.clock.device_id

    @property
    def pending_count(self) -> int:
        return self.queue.pending_count

    async def async_start(self) -> None:
        removed = self.log.purge_synced(self.config.purge_synced_after_ms)
        if removed:
            _LOGGER.debug("Purged %s synced operations at start-up", removed)
        await self.scheduler.async_start()
        self._trigger()

    async def async_stop(self) -> None:
        await self.scheduler.async_stop()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return self.hub.subscribe(listener)

    def get_state(self) -> OfflineState:
        return self.hub.snapshot()

    def conflicts(self) -> list[ConflictResolution]:
        return self.resolver.unresolved()

    # ------------------------------------------------------------------
    def add_operation(
        self,
        op_type: OperationType | str,
        entity: str,
        entity_id: str,
        data: Mapping[str, Any] | None = None,
        priority: Priority | str = Priority.MEDIUM,
        business_key: str | None = None,
    ) -> CRDTOperation:
        """Record a local mutation. Storage failures raise immediately."""

        operation = self.log.append(entity, entity_id, op_type, data, priority, business_key)
        self.hub.notify()
        if Priority(priority) is Priority.CRITICAL and self.config.sync_on_critical:
            self._trigger()
        return operation

    async def trigger_sync(self) -> CycleReport | None:
        return await self.scheduler.sync_now()

    def resolve_conflict_manually(
        self,
        operation_id: str,
        resolution: ResolutionType | str,
        data: Mapping[str, Any] | None = None,
    ) -> ConflictResolution:
        conflict = self.resolver.resolve_manually(operation_id, resolution, data)
        self.hub.notify()
        self._trigger()
        return conflict

    def retry_failed(self, operation_id: str) -> None:
        """Give a permanently failed operation a fresh retry budget."""

        self.log.reset_failed(operation_id)
        self.hub.notify()
        self._trigger()

    def dismiss_failed(self, operation_id: str) -> CRDTOperation:
        event = self.log.event(operation_id)
        if event is None:
            raise KeyError(operation_id)
        if event.status is not SyncStatus.FAILED:
            raise InvalidTransitionError(
                f"operation {operation_id} is {event.status.value}, only failed operations can be dismissed",
                reason="not_failed",
            )
        operation = self.log.discard(operation_id, "dismissed by user")
        self.hub.notify()
        return operation

    def purge_synced(self, older_than_ms: int | None = None) -> int:
        return self.log.purge_synced(self.config.purge_synced_after_ms if older_than_ms is None else older_than_ms)

    def collection(self, entity: str) -> EntityCollection:
        return EntityCollection(self, entity)

    def status(self) -> dict[str, Any]:
        state = self.hub.snapshot()
        return {
            "device_id": self.device_id,
            "is_online": state.is_online,
            "last_sync": state.last_sync,
            "sync_in_progress": state.sync_in_progress,
            "pending_count": state.pending_count,
            "failed_count": len(state.failed_operations),
            "conflicts": len(state.conflicts),
            "scheduler": self.scheduler.status(),
        }

    # ------------------------------------------------------------------
    def _trigger(self) -> asyncio.Task[CycleReport] | None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            _LOGGER.debug("No running event loop; sync will start with the scheduler")
            return None
        return self.scheduler.trigger()


__all__ = ["OfflineManager"]
