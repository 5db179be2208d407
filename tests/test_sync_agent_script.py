import json
from pathlib import Path

import pytest

import scripts.sync_agent as sa
from fieldsync import InMemoryRemote, LocalTransport, OfflineManager, SQLiteStorage


def test_parse_args_defaults():
    args = sa.parse_args(["--base-url", "https://sync.example.com"])
    assert args.db == Path(".fieldsync.db")
    assert args.token is None
    assert args.once is False
    assert args.log_level == "INFO"


def test_parse_args_requires_base_url():
    with pytest.raises(SystemExit):
        sa.parse_args([])


def test_build_config_merges_file_and_interval(tmp_path: Path):
    config_file = tmp_path / "sync.yaml"
    config_file.write_text("sync:\n  batch_size: 7\n  sync_interval_ms: 1000\n")
    args = sa.parse_args(["--base-url", "http://x", "--config", str(config_file), "--interval", "15"])

    config = sa.build_config(args)

    assert config.batch_size == 7
    assert config.sync_interval_ms == 15_000


@pytest.mark.asyncio
async def test_once_flushes_local_log(tmp_path: Path, monkeypatch, capsys):
    db = tmp_path / "agent.db"
    seeded = OfflineManager(SQLiteStorage(db), lambda device: LocalTransport(InMemoryRemote(), device))
    seeded.add_operation("create", "orders", "o1", {"qty": 1})

    remote = InMemoryRemote()
    monkeypatch.setattr(
        sa,
        "HttpTransport",
        lambda session, base_url, device_id, token=None: LocalTransport(remote, device_id),
    )
    args = sa.parse_args(["--base-url", "http://x", "--db", str(db), "--once"])

    await sa.main_async(args)

    status = json.loads(capsys.readouterr().out)
    assert status["device_id"] == seeded.device_id
    assert status["pending_count"] == 0
    assert remote.record("orders", "o1") == {"qty": 1}
