from __future__ import annotations

from pathlib import Path

import pytest

from fieldsync import MemoryStorage, SQLiteStorage, StorageError
from fieldsync.storage import KeyValueStorage


@pytest.fixture(params=["memory", "sqlite-file", "sqlite-memory"])
def backend(request, tmp_path: Path) -> KeyValueStorage:
    if request.param == "memory":
        return MemoryStorage()
    if request.param == "sqlite-file":
        return SQLiteStorage(tmp_path / "nested" / "sync.db")
    return SQLiteStorage(":memory:")


def test_basic_roundtrip(backend: KeyValueStorage) -> None:
    assert backend.get("op:1") is None
    backend.set("op:1", b"one")
    backend.set("op:2", b"two")
    backend.set("idx:products:p1", b"[]")
    assert backend.get("op:1") == b"one"
    assert backend.keys_with_prefix("op:") == ["op:1", "op:2"]
    backend.delete("op:1")
    backend.delete("op:missing")
    assert backend.keys_with_prefix("op:") == ["op:2"]


def test_prefix_match_is_exact(backend: KeyValueStorage) -> None:
    backend.set("idx:Orders:1", b"a")
    backend.set("idx:orders:1", b"b")
    backend.set("idx:orders_x:1", b"c")
    assert backend.keys_with_prefix("idx:orders:") == ["idx:orders:1"]
    assert isinstance(backend, KeyValueStorage)


def test_sqlite_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "sync.db"
    SQLiteStorage(path).set("meta:device", b'{"deviceId":"d"}')
    assert SQLiteStorage(path).get("meta:device") == b'{"deviceId":"d"}'


def test_sqlite_errors_are_wrapped(tmp_path: Path) -> None:
    storage = SQLiteStorage(tmp_path / "sync.db")
    (tmp_path / "sync.db").unlink()
    (tmp_path / "sync.db").mkdir()
    with pytest.raises(StorageError):
        storage.get("anything")
