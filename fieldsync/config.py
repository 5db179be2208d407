"""Validated engine options."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    CONF_BATCH_SIZE,
    CONF_BATCH_TIMEOUT_MS,
    CONF_CONFLICT_STRATEGY,
    CONF_DELETE_UPDATE_RESOLUTION,
    CONF_MAX_BATCHES_PER_CYCLE,
    CONF_MAX_RETRIES,
    CONF_MAX_RETRY_DELAY_MS,
    CONF_PRIORITY_WEIGHTS,
    CONF_PURGE_SYNCED_AFTER_MS,
    CONF_RETRY_DELAY_MS,
    CONF_SYNC_INTERVAL_MS,
    CONF_SYNC_ON_CRITICAL,
    CONF_SYNCING_TIMEOUT_MS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_BATCH_TIMEOUT_MS,
    DEFAULT_MAX_BATCHES_PER_CYCLE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_PRIORITY_WEIGHTS,
    DEFAULT_PURGE_SYNCED_AFTER_MS,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_SYNC_INTERVAL_MS,
    DEFAULT_SYNCING_TIMEOUT_MS,
)
from .errors import SyncConfigError

_LOGGER = logging.getLogger(__name__)

STRATEGIES = ("last_write_wins", "vector_clock", "manual")
DELETE_UPDATE_RESOLUTIONS = ("remote_wins", "manual")
PRIORITIES = ("critical", "high", "medium", "low")


def _positive_int(minimum: int = 1):
    return vol.All(vol.Coerce(int), vol.Range(min=minimum))


def _priority_weights(value: Any) -> dict[str, int]:
    if not isinstance(value, Mapping):
        raise vol.Invalid("priority_weights must be a mapping")
    weights = dict(DEFAULT_PRIORITY_WEIGHTS)
    for key, weight in value.items():
        if key not in PRIORITIES:
            raise vol.Invalid(f"unknown priority {key!r}")
        try:
            weights[key] = int(weight)
        except (TypeError, ValueError) as err:
            raise vol.Invalid(f"weight for {key!r} must be an integer") from err
    return weights


OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_MAX_RETRIES, default=DEFAULT_MAX_RETRIES): _positive_int(0),
        vol.Optional(CONF_RETRY_DELAY_MS, default=DEFAULT_RETRY_DELAY_MS): _positive_int(),
        vol.Optional(CONF_MAX_RETRY_DELAY_MS, default=DEFAULT_MAX_RETRY_DELAY_MS): _positive_int(),
        vol.Optional(CONF_SYNC_INTERVAL_MS, default=DEFAULT_SYNC_INTERVAL_MS): _positive_int(),
        vol.Optional(CONF_BATCH_SIZE, default=DEFAULT_BATCH_SIZE): _positive_int(),
        vol.Optional(CONF_BATCH_TIMEOUT_MS, default=DEFAULT_BATCH_TIMEOUT_MS): _positive_int(),
        vol.Optional(CONF_SYNCING_TIMEOUT_MS, default=DEFAULT_SYNCING_TIMEOUT_MS): _positive_int(),
        vol.Optional(CONF_MAX_BATCHES_PER_CYCLE, default=DEFAULT_MAX_BATCHES_PER_CYCLE): _positive_int(),
        vol.Optional(CONF_PRIORITY_WEIGHTS, default=dict(DEFAULT_PRIORITY_WEIGHTS)): _priority_weights,
        vol.Optional(CONF_CONFLICT_STRATEGY, default="vector_clock"): vol.In(STRATEGIES),
        vol.Optional(CONF_DELETE_UPDATE_RESOLUTION, default="remote_wins"): vol.In(DELETE_UPDATE_RESOLUTIONS),
        vol.Optional(CONF_SYNC_ON_CRITICAL, default=True): vol.Boolean(),
        vol.Optional(CONF_PURGE_SYNCED_AFTER_MS, default=DEFAULT_PURGE_SYNCED_AFTER_MS): _positive_int(0),
    },
    extra=vol.REMOVE_EXTRA,
)

# Keys used by the original browser client.
_CAMEL_ALIASES = {
    "maxRetries": CONF_MAX_RETRIES,
    "retryDelayMs": CONF_RETRY_DELAY_MS,
    "syncIntervalMs": CONF_SYNC_INTERVAL_MS,
    "batchSize": CONF_BATCH_SIZE,
    "priorityWeights": CONF_PRIORITY_WEIGHTS,
    "conflictResolutionStrategy": CONF_CONFLICT_STRATEGY,
}


@dataclass(slots=True)
class SyncConfig:
    """Tunables for the queue, scheduler and resolver."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    max_retry_delay_ms: int = DEFAULT_MAX_RETRY_DELAY_MS
    sync_interval_ms: int = DEFAULT_SYNC_INTERVAL_MS
    batch_size: int = DEFAULT_BATCH_SIZE
    batch_timeout_ms: int = DEFAULT_BATCH_TIMEOUT_MS
    syncing_timeout_ms: int = DEFAULT_SYNCING_TIMEOUT_MS
    max_batches_per_cycle: int = DEFAULT_MAX_BATCHES_PER_CYCLE
    priority_weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_PRIORITY_WEIGHTS))
    conflict_resolution_strategy: str = "vector_clock"
    delete_update_resolution: str = "remote_wins"
    sync_on_critical: bool = True
    purge_synced_after_ms: int = DEFAULT_PURGE_SYNCED_AFTER_MS

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None = None) -> SyncConfig:
        raw = {_CAMEL_ALIASES.get(key, key): value for key, value in (options or {}).items()}
        try:
            validated = OPTIONS_SCHEMA(raw)
        except vol.Invalid as err:
            raise SyncConfigError(f"invalid sync options: {err}", reason="invalid_options") from err
        if validated[CONF_MAX_RETRY_DELAY_MS] < validated[CONF_RETRY_DELAY_MS]:
            raise SyncConfigError(
                "max_retry_delay_ms must not be smaller than retry_delay_ms",
                reason="invalid_options",
            )
        return cls(**validated)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: str | Path) -> SyncConfig:
    """Read options from a YAML file, optionally nested under ``sync:``."""

    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as err:
        raise SyncConfigError(f"cannot read {path}: {err}", reason="unreadable") from err
    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as err:
        raise SyncConfigError(f"invalid YAML in {path}: {err}", reason="invalid_yaml") from err
    if not isinstance(data, Mapping):
        raise SyncConfigError(f"{path} must contain a mapping", reason="invalid_yaml")
    section = data.get("sync", data)
    if not isinstance(section, Mapping):
        raise SyncConfigError(f"'sync' section in {path} must be a mapping", reason="invalid_yaml")
    _LOGGER.debug("Loaded sync options from %s", path)
    return SyncConfig.from_options(section)


__all__ = ["OPTIONS_SCHEMA", "SyncConfig", "load_config"]
