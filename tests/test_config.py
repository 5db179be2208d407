from __future__ import annotations

from pathlib import Path

import pytest

from fieldsync import SyncConfig, SyncConfigError, load_config


def test_defaults() -> None:
    config = SyncConfig.from_options({})
    assert config == SyncConfig()
    assert config.max_retries == 5
    assert config.batch_size == 50
    assert config.priority_weights == {"critical": 1, "high": 2, "medium": 3, "low": 4}
    assert config.conflict_resolution_strategy == "vector_clock"


def test_camel_case_options_and_partial_weights() -> None:
    config = SyncConfig.from_options(
        {
            "maxRetries": "3",
            "retryDelayMs": 1000,
            "syncIntervalMs": 5000,
            "priorityWeights": {"low": 10},
            "conflictResolutionStrategy": "last_write_wins",
            "unknownOption": True,
        }
    )
    assert config.max_retries == 3
    assert config.retry_delay_ms == 1000
    assert config.sync_interval_ms == 5000
    assert config.priority_weights["low"] == 10
    assert config.priority_weights["critical"] == 1
    assert config.conflict_resolution_strategy == "last_write_wins"


@pytest.mark.parametrize(
    "options",
    [
        {"batch_size": 0},
        {"max_retries": -1},
        {"conflict_resolution_strategy": "coin_flip"},
        {"delete_update_resolution": "local_wins"},
        {"priority_weights": {"urgent": 0}},
        {"priority_weights": ["critical"]},
        {"retry_delay_ms": 5000, "max_retry_delay_ms": 1000},
    ],
)
def test_invalid_options(options) -> None:
    with pytest.raises(SyncConfigError) as err:
        SyncConfig.from_options(options)
    assert err.value.reason == "invalid_options"


def test_load_config_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "sync.yaml"
    path.write_text("sync:\n  batch_size: 10\n  sync_on_critical: false\n", encoding="utf-8")
    config = load_config(path)
    assert config.batch_size == 10
    assert config.sync_on_critical is False

    flat = tmp_path / "flat.yaml"
    flat.write_text("maxRetries: 2\n", encoding="utf-8")
    assert load_config(flat).max_retries == 2

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty) == SyncConfig()


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        ("sync: [1, 2", "invalid_yaml"),
        ("- just\n- a list\n", "invalid_yaml"),
        ("sync: 3\n", "invalid_yaml"),
        ("batch_size: none\n", "invalid_options"),
    ],
)
def test_load_config_errors(tmp_path: Path, content: str, reason: str) -> None:
    path = tmp_path / "sync.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(SyncConfigError) as err:
        load_config(path)
    assert err.value.reason == reason


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(SyncConfigError) as err:
        load_config(tmp_path / "missing.yaml")
    assert err.value.reason == "unreadable"
