"""Priority ordered, retry aware view over unconfirmed operations."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from .events import Priority, SyncEvent, SyncStatus
from .oplog import EntityKey, OperationLog

_LOGGER = logging.getLogger(__name__)


class SyncQueue:
    """Select batches from the operation log and schedule retries.

    The queue keeps no state of its own; every decision is derived from the
    event bookkeeping in the log, so it survives restarts unchanged.
    """

    def __init__(
        self,
        log: OperationLog,
        *,
        batch_size: int,
        max_retries: int,
        retry_delay_ms: int,
        max_retry_delay_ms: int,
        priority_weights: Mapping[str, int],
        blocked: Callable[[], set[EntityKey]] | None = None,
    ) -> None:
        self._log = log
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.max_retry_delay_ms = max_retry_delay_ms
        self._weights = {Priority(key): int(value) for key, value in priority_weights.items()}
        self._blocked = blocked or (lambda: set())

    # ------------------------------------------------------------------
    def weight(self, priority: Priority | str) -> int:
        return self._weights.get(Priority(priority), max(self._weights.values(), default=0) + 1)

    def backoff_ms(self, retry_count: int) -> int:
        """Delay before the next attempt after ``retry_count`` failures."""

        if retry_count <= 0:
            return 0
        delay = self.retry_delay_ms * (2 ** (retry_count - 1))
        return min(delay, self.max_retry_delay_ms)

    def is_exhausted(self, event: SyncEvent) -> bool:
        return not event.retryable or event.retry_count >= self.max_retries

    def retry_at(self, event: SyncEvent) -> int | None:
        if event.status is not SyncStatus.FAILED or self.is_exhausted(event):
            return None
        return (event.last_retry or 0) + self.backoff_ms(event.retry_count)

    def next_retry_at(self) -> int | None:
        times = [when for event in self._log.by_status(SyncStatus.FAILED) if (when := self.retry_at(event)) is not None]
        return min(times, default=None)

    @property
    def pending_count(self) -> int:
        return len(self._log.unsynced())

    # ------------------------------------------------------------------
    def next_batch(self, limit: int | None = None) -> list[SyncEvent]:
        """Return up to ``limit`` pending events in causal, priority order.

        An event whose entity has lower-version unsynced operations is only
        taken once those are in flight or already in this batch. A pending
        prerequisite inherits the most urgent priority among its dependents.
        """

        limit = self.batch_size if limit is None else limit
        if limit <= 0:
            return []
        blocked = self._blocked()
        chains: dict[EntityKey, list[SyncEvent]] = {}
        for event in self._log.unsynced():
            key = (event.operation.entity, event.operation.entity_id)
            if key in blocked:
                continue
            chains.setdefault(key, []).append(event)

        ranked: list[tuple[tuple[int, int, int, str], SyncEvent]] = []
        for chain in chains.values():
            chain.sort(key=lambda item: item.operation.version)
            inherited = None
            for event in reversed(chain):
                own = self.weight(event.priority)
                inherited = own if inherited is None else min(inherited, own)
                if event.status is SyncStatus.PENDING:
                    op = event.operation
                    ranked.append(((inherited, op.timestamp, op.version, op.id), event))
        ranked.sort(key=lambda item: item[0])

        placed = {event.id for event in self._log.by_status(SyncStatus.SYNCING)}
        selected: list[SyncEvent] = []
        remaining = [event for _, event in ranked]
        progress = True
        while remaining and progress and len(selected) < limit:
            progress = False
            for event in remaining:
                op = event.operation
                chain = chains[(op.entity, op.entity_id)]
                if all(item.id in placed for item in chain if item.operation.version < op.version):
                    selected.append(event)
                    placed.add(event.id)
                    remaining.remove(event)
                    progress = True
                    break
        if selected:
            _LOGGER.debug("Selected %s of %s pending operations", len(selected), len(ranked))
        return selected

    def requeue_failed(self, now: int) -> list[SyncEvent]:
        """Move failed events whose backoff has elapsed back to pending."""

        requeued = []
        for event in self._log.by_status(SyncStatus.FAILED):
            when = self.retry_at(event)
            if when is None:
                continue
            if now >= when:
                requeued.append(self._log.mark_pending(event.id))
        if requeued:
            _LOGGER.debug("Requeued %s failed operations", len(requeued))
        return requeued

    def reclaim_abandoned(self, now: int, timeout_ms: int | None = None) -> list[SyncEvent]:
        """Return in-flight events older than ``timeout_ms`` to pending.

        With no timeout every ``syncing`` event is reclaimed, which is what a
        fresh process does at start-up.
        """

        reclaimed = []
        for event in self._log.by_status(SyncStatus.SYNCING):
            if timeout_ms is not None and now - (event.started_at or 0) < timeout_ms:
                continue
            reclaimed.append(self._log.mark_pending(event.id))
        if reclaimed:
            _LOGGER.info("Reclaimed %s abandoned in-flight operations", len(reclaimed))
        return reclaimed

    def exhausted(self) -> list[SyncEvent]:
        return [event for event in self._log.by_status(SyncStatus.FAILED) if self.is_exhausted(event)]


__all__ = ["SyncQueue"]
