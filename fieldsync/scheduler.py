"""Drive sync cycles: periodic, connectivity and manual triggers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import SyncConfig
from .conflict import ConflictResolver
from .environment import Environment
from .errors import StorageError, TransportError
from .events import ResolutionType, SyncEvent, SyncStatus
from .oplog import OperationLog
from .queue import SyncQueue
from .state import OfflineStateHub
from .transport import Transport

_LOGGER = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"


@dataclass(slots=True)
class CycleReport:
    """Counters collected over one sync cycle."""

    started_at: int
    finished_at: int | None = None
    batches: int = 0
    sent: int = 0
    synced: int = 0
    failed: int = 0
    conflicts: int = 0
    held: int = 0
    transport_error: str | None = None
    resolutions: list[ResolutionType] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.transport_error is None


class SyncScheduler:
    """Run at most one sync cycle at a time against the transport."""

    def __init__(
        self,
        log: OperationLog,
        queue: SyncQueue,
        resolver: ConflictResolver,
        transport: Transport,
        hub: OfflineStateHub,
        environment: Environment,
        config: SyncConfig,
    ) -> None:
        self._log = log
        self._queue = queue
        self._resolver = resolver
        self._transport = transport
        self._hub = hub
        self._env = environment
        self._config = config
        self.state = SchedulerState.IDLE
        self.last_report: CycleReport | None = None
        self.last_error: str | None = None
        self._cycle_task: asyncio.Task[CycleReport] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._remove_listener = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    async def async_start(self) -> None:
        if self._loop_task is not None:
            return
        self._queue.reclaim_abandoned(self._env.now_ms())
        self._loop = asyncio.get_running_loop()
        self._remove_listener = self._env.add_listener(self._on_connectivity)
        self._hub.update(is_online=self._env.is_online)
        self._loop_task = asyncio.create_task(self._run_periodic())
        _LOGGER.debug("Sync scheduler started (interval %sms)", self._config.sync_interval_ms)

    async def async_stop(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        tasks = [task for task in (self._loop_task, self._cycle_task) if task is not None and not task.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._loop_task = None
        self._cycle_task = None
        _LOGGER.debug("Sync scheduler stopped")

    def trigger(self) -> asyncio.Task[CycleReport] | None:
        """Start a cycle, or return the one already in flight.

        Returns ``None`` while offline.
        """

        if not self._env.is_online:
            _LOGGER.debug("Sync requested while offline; skipping")
            return None
        if self.running:
            return self._cycle_task
        self._cycle_task = asyncio.get_running_loop().create_task(self._run_cycle())
        self._cycle_task.add_done_callback(self._cycle_done)
        return self._cycle_task

    def _cycle_done(self, task: asyncio.Task[CycleReport]) -> None:
        if task.cancelled():
            _LOGGER.debug("Sync cycle cancelled")
            return
        err = task.exception()
        if err is not None:
            self.last_error = str(err)
            _LOGGER.error("Sync cycle aborted: %s", err, exc_info=err)

    async def sync_now(self) -> CycleReport | None:
        task = self.trigger()
        if task is None:
            return None
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def wake(self) -> None:
        """Re-evaluate the periodic timer, e.g. after new retries were scheduled."""

        self._wake.set()

    def _on_connectivity(self, online: bool) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not self._loop:
            # Flips reported from another thread are handled on the scheduler's loop.
            if self._loop is None or self._loop.is_closed():
                _LOGGER.warning("Connectivity changed while the scheduler loop is gone; ignoring")
                return
            self._loop.call_soon_threadsafe(self._on_connectivity, online)
            return
        self._hub.update(is_online=online)
        if online:
            self.trigger()
            return
        if self.running:
            _LOGGER.info("Connectivity lost; cancelling sync cycle in flight")
            self._cycle_task.cancel()

    # ------------------------------------------------------------------
    def _next_delay(self) -> float:
        delay_ms = self._config.sync_interval_ms
        retry_at = self._queue.next_retry_at()
        if retry_at is not None:
            delay_ms = min(delay_ms, max(0, retry_at - self._env.now_ms()))
        return delay_ms / 1000

    async def _run_periodic(self) -> None:
        while True:
            woke = False
            try:
                async with asyncio.timeout(self._next_delay()):
                    await self._wake.wait()
                    woke = True
            except TimeoutError:
                pass
            self._wake.clear()
            if woke:
                continue
            task = self.trigger()
            if task is not None:
                await asyncio.wait({task})

    async def _run_cycle(self) -> CycleReport:
        now = self._env.now_ms()
        report = CycleReport(started_at=now)
        self._queue.reclaim_abandoned(now, self._config.syncing_timeout_ms)
        self._queue.requeue_failed(now)
        self.state = SchedulerState.RUNNING
        self._hub.update(sync_in_progress=True)
        completed = False
        try:
            for _ in range(self._config.max_batches_per_cycle):
                batch = self._queue.next_batch()
                if not batch:
                    break
                report.batches += 1
                if not await self._send_batch(batch, report):
                    break
            completed = True
        finally:
            report.finished_at = self._env.now_ms()
            self.last_report = report
            self.state = SchedulerState.IDLE if report.ok else SchedulerState.BACKOFF
            changes: dict[str, Any] = {"sync_in_progress": False}
            if completed and report.ok:
                changes["last_sync"] = report.finished_at
            self._hub.update(**changes)
        if report.ok:
            self.last_error = None
            _LOGGER.info(
                "Sync cycle finished: %s sent, %s synced, %s failed, %s conflicts",
                report.sent,
                report.synced,
                report.failed,
                report.conflicts,
            )
        else:
            self.last_error = report.transport_error
        if report.failed:
            self.wake()
        return report

    async def _send_batch(self, batch: list[SyncEvent], report: CycleReport) -> bool:
        """Transmit one batch. Returns False on a transport-level failure."""

        events = self._log.mark_syncing(event.id for event in batch)
        report.sent += len(events)
        try:
            async with asyncio.timeout(self._config.batch_timeout_ms / 1000):
                result = await self._transport.send(events)
        except asyncio.CancelledError:
            self._release(events)
            raise
        except (TransportError, TimeoutError) as err:
            message = str(err) or "batch timed out"
            _LOGGER.warning("Sync batch of %s operations failed: %s", len(events), message)
            report.transport_error = message
            for event in events:
                self._fail(event, message, report)
            return False

        outcomes = result.by_operation()
        missing = False
        for event in events:
            current = self._log.event(event.id)
            if current is None or current.status is not SyncStatus.SYNCING:
                continue
            outcome = outcomes.get(event.id)
            if outcome is None:
                missing = True
                self._fail(current, "no outcome returned by remote", report)
                continue
            resolution = self._resolver.handle(current, outcome)
            if outcome.accepted:
                report.synced += 1
            elif outcome.conflict is not None:
                report.conflicts += 1
                if resolution is not None:
                    report.resolutions.append(resolution)
                if resolution is ResolutionType.MANUAL:
                    report.held += 1
            elif current.status is SyncStatus.FAILED:
                report.failed += 1
                self._warn_if_exhausted(current)
        if missing:
            report.transport_error = "incomplete batch result"
            _LOGGER.warning("Remote returned an incomplete result for %s operations", len(events))
        return not missing

    def _release(self, events: list[SyncEvent]) -> None:
        """Return a cancelled batch to the queue ahead of anything appended since."""

        released = 0
        for event in events:
            current = self._log.event(event.id)
            if current is None or current.status is not SyncStatus.SYNCING:
                continue
            try:
                self._log.mark_pending(current.id)
            except StorageError:
                _LOGGER.warning("Could not requeue operation %s; it waits for reclaim", current.id, exc_info=True)
                continue
            released += 1
        if released:
            _LOGGER.info("Returned %s in-flight operations to the queue", released)

    def _fail(self, event: SyncEvent, message: str, report: CycleReport) -> None:
        current = self._log.event(event.id)
        if current is None or current.status is not SyncStatus.SYNCING:
            return
        self._log.mark_failed(current.id, message, retryable=True)
        report.failed += 1
        self._warn_if_exhausted(current)

    def _warn_if_exhausted(self, event: SyncEvent) -> None:
        if self._queue.is_exhausted(event):
            _LOGGER.warning(
                "Operation %s on %s/%s failed permanently after %s attempts: %s",
                event.id,
                event.operation.entity,
                event.operation.entity_id,
                event.retry_count,
                event.error,
            )

    # ------------------------------------------------------------------
    def status(self) -> dict[str, Any]:
        report = self.last_report
        return {
            "state": self.state.value,
            "running": self.running,
            "last_error": self.last_error,
            "next_retry_at": self._queue.next_retry_at(),
            "last_cycle": None
            if report is None
            else {
                "started_at": report.started_at,
                "finished_at": report.finished_at,
                "batches": report.batches,
                "sent": report.sent,
                "synced": report.synced,
                "failed": report.failed,
                "conflicts": report.conflicts,
            },
        }


__all__ = ["CycleReport", "SchedulerState", "SyncScheduler"]
