from __future__ import annotations

import asyncio

import pytest

from fieldsync import SyncStatus
from fieldsync.state import dispatch


def test_snapshot_is_a_copy(make_manager) -> None:
    manager = make_manager()
    op = manager.add_operation("create", "orders", "o1", {"qty": 1})
    state = manager.get_state()

    state.pending_operations[0].status = SyncStatus.FAILED

    assert manager.log.event(op.id).status is SyncStatus.PENDING
    assert state.device_id == "device-a"
    payload = state.as_dict()
    assert payload["pendingOperations"][0]["operation"]["id"] == op.id
    assert payload["isOnline"] is True
    assert payload["failedOperations"] == []


def test_update_only_accepts_mutable_fields(make_manager) -> None:
    manager = make_manager()
    with pytest.raises(AttributeError):
        manager.hub.update(device_id="other")
    assert manager.hub.update(is_online=False).is_online is False


def test_subscribe_and_unsubscribe(make_manager) -> None:
    manager = make_manager()
    seen = []

    def broken(state):
        raise RuntimeError("listener bug")

    manager.subscribe(broken)
    unsubscribe = manager.subscribe(seen.append)
    manager.add_operation("create", "orders", "o1", {"qty": 1})
    unsubscribe()
    manager.add_operation("create", "orders", "o2", {"qty": 1})

    assert [state.pending_count for state in seen] == [1]


@pytest.mark.asyncio
async def test_coroutine_listener_is_scheduled(make_manager) -> None:
    manager = make_manager()
    received = asyncio.Event()

    async def listener(state):
        received.set()

    manager.subscribe(listener)
    manager.add_operation("create", "orders", "o1", {"qty": 1})
    await asyncio.wait_for(received.wait(), 1)


def test_coroutine_listener_without_loop_is_dropped() -> None:
    called = []

    async def listener(value):
        called.append(value)

    dispatch(listener, 1)
    assert called == []


def test_connectivity_listeners_fire_on_change_only(env) -> None:
    changes = []
    remove = env.add_listener(changes.append)

    env.set_online(True)
    env.set_online(False)
    env.set_online(False)
    remove()
    env.set_online(True)

    assert changes == [False]
    assert env.is_online
