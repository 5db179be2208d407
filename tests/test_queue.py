from __future__ import annotations

import pytest

from fieldsync import DeviceClock, MemoryStorage, SyncStatus
from fieldsync.const import DEFAULT_PRIORITY_WEIGHTS
from fieldsync.oplog import OperationLog
from fieldsync.queue import SyncQueue


class Clock:
    def __init__(self) -> None:
        self.now = 10_000

    def __call__(self) -> int:
        return self.now

    def tick(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def log(clock: Clock) -> OperationLog:
    storage = MemoryStorage()
    return OperationLog(storage, DeviceClock.load_or_create(storage, lambda: "dev-a"), clock)


def make_queue(log: OperationLog, **overrides) -> SyncQueue:
    options = {
        "batch_size": 50,
        "max_retries": 5,
        "retry_delay_ms": 1_000,
        "max_retry_delay_ms": 60_000,
        "priority_weights": DEFAULT_PRIORITY_WEIGHTS,
    }
    options.update(overrides)
    return SyncQueue(log, **options)


def test_batches_follow_priority_then_age(log: OperationLog, clock: Clock) -> None:
    low = log.append("notes", "n1", "create", {}, "low")
    clock.tick()
    medium = log.append("orders", "o1", "create", {}, "medium")
    clock.tick()
    critical = log.append("alerts", "a1", "create", {}, "critical")
    clock.tick()
    high = log.append("products", "p1", "create", {}, "high")
    clock.tick()
    newer_medium = log.append("orders", "o2", "create", {}, "medium")

    queue = make_queue(log)
    ids = [event.id for event in queue.next_batch()]
    assert ids == [critical.id, high.id, medium.id, newer_medium.id, low.id]
    assert [event.id for event in queue.next_batch(limit=2)] == [critical.id, high.id]


def test_causal_order_beats_priority(log: OperationLog, clock: Clock) -> None:
    create = log.append("orders", "o1", "create", {"qty": 1}, "low")
    clock.tick()
    other = log.append("products", "p1", "create", {}, "high")
    clock.tick()
    update = log.append("orders", "o1", "update", {"qty": 2}, "critical")

    queue = make_queue(log)
    ids = [event.id for event in queue.next_batch()]
    # The low-priority create inherits the critical update's urgency.
    assert ids == [create.id, update.id, other.id]
    assert ids.index(create.id) < ids.index(update.id)


def test_later_operation_waits_for_unsent_prerequisite(log: OperationLog) -> None:
    create = log.append("orders", "o1", "create", {})
    update = log.append("orders", "o1", "update", {"qty": 2})
    queue = make_queue(log)

    assert [event.id for event in queue.next_batch(limit=1)] == [create.id]
    log.mark_syncing([create.id])
    assert [event.id for event in queue.next_batch()] == [update.id]
    log.mark_syncing([update.id])
    assert queue.next_batch() == []


def test_failed_prerequisite_blocks_entity(log: OperationLog, clock: Clock) -> None:
    create = log.append("orders", "o1", "create", {})
    log.append("orders", "o1", "update", {"qty": 2})
    log.mark_syncing([create.id])
    log.mark_failed(create.id, "offline")

    queue = make_queue(log)
    assert queue.next_batch() == []
    clock.tick(1_000)
    assert [event.id for event in queue.requeue_failed(clock.now)] == [create.id]
    assert [event.id for event in queue.next_batch()][0] == create.id


def test_blocked_entities_are_skipped(log: OperationLog) -> None:
    log.append("orders", "o1", "update", {"qty": 1})
    free = log.append("orders", "o2", "update", {"qty": 1})
    queue = make_queue(log, blocked=lambda: {("orders", "o1")})
    assert [event.id for event in queue.next_batch()] == [free.id]


def test_backoff_is_exponential_and_capped(log: OperationLog) -> None:
    queue = make_queue(log, retry_delay_ms=1_000, max_retry_delay_ms=5_000)
    delays = [queue.backoff_ms(count) for count in range(0, 6)]
    assert delays == [0, 1_000, 2_000, 4_000, 5_000, 5_000]
    assert delays == sorted(delays)


def test_retry_schedule_until_exhausted(log: OperationLog, clock: Clock) -> None:
    op = log.append("orders", "o1", "create", {})
    queue = make_queue(log, max_retries=3, retry_delay_ms=1_000)
    waits = []
    for _ in range(3):
        log.mark_syncing([op.id])
        failed_at = clock.tick(5)
        log.mark_failed(op.id, "unreachable")
        retry_at = queue.retry_at(log.event(op.id))
        if retry_at is None:
            break
        assert queue.requeue_failed(retry_at - 1) == []
        waits.append(retry_at - failed_at)
        clock.now = retry_at
        queue.requeue_failed(clock.now)

    assert waits == [1_000, 2_000]
    event = log.event(op.id)
    assert event.status is SyncStatus.FAILED
    assert queue.is_exhausted(event)
    assert queue.exhausted() == [event]
    assert queue.next_retry_at() is None


def test_non_retryable_failure_is_exhausted_immediately(log: OperationLog) -> None:
    op = log.append("orders", "o1", "create", {})
    queue = make_queue(log)
    log.mark_syncing([op.id])
    log.mark_failed(op.id, "rejected", retryable=False)
    assert queue.retry_at(log.event(op.id)) is None
    assert queue.requeue_failed(10**15) == []


def test_next_retry_at_picks_earliest(log: OperationLog, clock: Clock) -> None:
    a = log.append("orders", "o1", "create", {})
    b = log.append("orders", "o2", "create", {})
    queue = make_queue(log, retry_delay_ms=1_000)
    log.mark_syncing([a.id, b.id])
    log.mark_failed(a.id, "x")
    clock.tick(300)
    log.mark_failed(b.id, "x")
    assert queue.next_retry_at() == 10_000 + 1_000


def test_reclaim_abandoned(log: OperationLog, clock: Clock) -> None:
    old = log.append("orders", "o1", "create", {})
    log.mark_syncing([old.id])
    clock.tick(500)
    fresh = log.append("orders", "o2", "create", {})
    log.mark_syncing([fresh.id])

    queue = make_queue(log)
    clock.tick(200)
    reclaimed = queue.reclaim_abandoned(clock.now, 600)
    assert [event.id for event in reclaimed] == [old.id]
    assert log.event(fresh.id).status is SyncStatus.SYNCING
    assert [event.id for event in queue.reclaim_abandoned(clock.now)] == [fresh.id]
    assert queue.pending_count == 2
