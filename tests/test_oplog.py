from __future__ import annotations

import json

import pytest

from fieldsync import (
    DeviceClock,
    InvalidOperationError,
    InvalidTransitionError,
    MemoryStorage,
    OperationType,
    StorageError,
    SyncStatus,
)
from fieldsync.oplog import OperationLog


class FlakyStorage(MemoryStorage):
    def __init__(self) -> None:
        super().__init__()
        self.fail_prefixes: set[str] = set()

    def set(self, key: str, value: bytes) -> None:
        if any(key.startswith(prefix) for prefix in self.fail_prefixes):
            raise StorageError(f"cannot write {key}")
        super().set(key, value)

    def delete(self, key: str) -> None:
        if any(key.startswith(prefix) for prefix in self.fail_prefixes):
            raise StorageError(f"cannot delete {key}")
        super().delete(key)


class Clock:
    def __init__(self) -> None:
        self.now = 1_000

    def __call__(self) -> int:
        return self.now


def make_log(storage=None, device="dev-a"):
    storage = storage if storage is not None else MemoryStorage()
    clock = Clock()
    log = OperationLog(storage, DeviceClock.load_or_create(storage, lambda: device), clock)
    return log, storage, clock


def test_append_assigns_versions_and_clock() -> None:
    log, _, _ = make_log()
    first = log.append("products", "p1", "create", {"name": "Widget"}, "high")
    second = log.append("products", "p1", "update", {"price": 3})

    assert first.version == 1
    assert second.version == 2
    assert first.vector_clock[first.device_id] == first.version
    assert second.vector_clock[second.device_id] == second.version
    assert first.id != second.id
    assert log.event(first.id).status is SyncStatus.PENDING
    assert [op.id for op in log.pending_by_entity("products", "p1")] == [first.id, second.id]


def test_append_rejects_unknown_type_and_empty_ids() -> None:
    log, _, _ = make_log()
    with pytest.raises(InvalidOperationError):
        log.append("products", "p1", "upsert", {})
    with pytest.raises(InvalidOperationError):
        log.append("products", "", "create", {})
    assert len(log) == 0


def test_log_survives_restart() -> None:
    log, storage, _ = make_log()
    op = log.append("orders", "o1", "create", {"total": 10})
    log.mark_syncing([op.id])
    log.mark_failed(op.id, "boom")

    restored, _, _ = make_log(storage)
    event = restored.event(op.id)
    assert event.status is SyncStatus.FAILED
    assert event.retry_count == 1
    assert event.error == "boom"
    nxt = restored.append("orders", "o1", "update", {"total": 11})
    assert nxt.version == 2


@pytest.mark.parametrize("prefix", ["op:", "idx:", "clock:"])
def test_append_is_atomic(prefix: str) -> None:
    storage = FlakyStorage()
    log, _, _ = make_log(storage)
    kept = log.append("products", "p1", "create", {"name": "a"})
    before = dict(storage._data)

    storage.fail_prefixes.add(prefix)
    with pytest.raises(StorageError):
        log.append("products", "p1", "update", {"name": "b"})

    assert storage._data == before
    assert [op.id for op in log.pending_by_entity("products", "p1")] == [kept.id]
    storage.fail_prefixes.clear()
    assert log.append("products", "p1", "update", {"name": "b"}).version == 2


def test_status_transitions_are_enforced() -> None:
    log, _, _ = make_log()
    op = log.append("products", "p1", "create", {})
    with pytest.raises(InvalidTransitionError):
        log.mark_synced(op.id)
    log.mark_syncing([op.id])
    log.mark_synced(op.id)
    with pytest.raises(InvalidTransitionError):
        log.mark_pending(op.id)
    assert log.event(op.id).status is SyncStatus.SYNCED


def test_failed_status_change_rolls_back_memory() -> None:
    storage = FlakyStorage()
    log, _, _ = make_log(storage)
    op = log.append("products", "p1", "create", {})
    storage.fail_prefixes.add("op:")
    with pytest.raises(StorageError):
        log.mark_syncing([op.id])
    event = log.event(op.id)
    assert event.status is SyncStatus.PENDING
    assert event.attempts == 0


def test_mark_failed_counts_retries() -> None:
    log, _, clock = make_log()
    op = log.append("products", "p1", "create", {})
    for attempt in range(1, 4):
        clock.now += 10
        log.mark_syncing([op.id])
        event = log.mark_failed(op.id, "timeout", retryable=attempt < 3)
        assert event.retry_count == attempt
        assert event.last_retry == clock.now
        if attempt < 3:
            log.mark_pending(op.id)
    assert event.retryable is False
    log.reset_failed(op.id)
    event = log.event(op.id)
    assert (event.status, event.retry_count, event.error, event.retryable) == (SyncStatus.PENDING, 0, None, True)


def test_delete_of_unsent_create_collapses_chain() -> None:
    log, storage, _ = make_log()
    create = log.append("products", "p9", "create", {"name": "tmp"})
    log.append("products", "p9", "update", {"name": "tmp2"})
    delete = log.append("products", "p9", "delete")

    assert delete.type is OperationType.DELETE
    assert log.get(delete.id) is None
    assert log.pending_by_entity("products", "p9") == []
    assert log.get(create.id) is None
    assert storage.keys_with_prefix("op:") == []
    assert storage.keys_with_prefix("idx:") == []


def test_delete_after_attempted_create_is_logged() -> None:
    log, _, _ = make_log()
    create = log.append("products", "p9", "create", {"name": "tmp"})
    log.mark_syncing([create.id])
    log.mark_pending(create.id)
    delete = log.append("products", "p9", "delete")
    assert log.get(delete.id) is not None
    assert delete.data == {}


def test_supersede_replaces_with_dominating_clock() -> None:
    log, _, _ = make_log()
    op = log.append("products", "p1", "update", {"qty": 1})
    replacement = log.supersede(op.id, {"dev-b": 5}, data={"qty": 2})

    assert log.get(op.id) is None
    assert replacement.vector_clock.to_dict() == {"dev-a": 2, "dev-b": 5}
    assert replacement.version == 2
    assert replacement.data == {"qty": 2}
    assert replacement.type is OperationType.UPDATE


def test_queries_and_purge() -> None:
    log, _, clock = make_log()
    a = log.append("products", "p1", "create", {})
    b = log.append("orders", "o1", "create", {})
    log.mark_syncing([a.id])
    log.mark_synced(a.id)

    assert [e.id for e in log.by_status("pending")] == [b.id]
    assert [op.id for op in log.by_entity("products", "p1")] == [a.id]
    assert {op.id for op in log.by_device("dev-a")} == {a.id, b.id}
    assert [e.id for e in log.unsynced()] == [b.id]

    clock.now += 100
    assert log.purge_synced(1_000) == 0
    clock.now += 2_000
    assert log.purge_synced(1_000) == 1
    assert a.id not in log
    assert b.id in log


def test_restart_repairs_stale_entity_index() -> None:
    log, storage, _ = make_log()
    create = log.append("orders", "o1", "create", {"total": 10})
    update = log.append("orders", "o1", "update", {"total": 11})
    other = log.append("orders", "o2", "create", {"total": 1})
    storage.set("idx:orders:o1", json.dumps(["ghost", update.id]).encode())
    storage.delete("idx:orders:o2")
    storage.set("idx:orders:o3", json.dumps(["ghost"]).encode())

    restored, _, _ = make_log(storage)

    assert [op.id for op in restored.by_entity("orders", "o1")] == [create.id, update.id]
    assert [op.id for op in restored.by_entity("orders", "o2")] == [other.id]
    assert json.loads(storage.get("idx:orders:o1")) == [create.id, update.id]
    assert json.loads(storage.get("idx:orders:o2")) == [other.id]
    assert storage.get("idx:orders:o3") is None


def test_discard_is_atomic() -> None:
    storage = FlakyStorage()
    log, _, _ = make_log(storage)
    create = log.append("products", "p1", "create", {"name": "a"})
    update = log.append("products", "p1", "update", {"name": "b"})
    before = dict(storage._data)

    storage.fail_prefixes.add("op:")
    with pytest.raises(StorageError):
        log.discard(update.id, "test")

    assert storage._data == before
    assert [op.id for op in log.pending_by_entity("products", "p1")] == [create.id, update.id]
    storage.fail_prefixes.clear()
    log.discard(update.id, "test")
    restored, _, _ = make_log(storage)
    assert [op.id for op in restored.by_entity("products", "p1")] == [create.id]
