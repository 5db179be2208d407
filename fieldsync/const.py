from __future__ import annotations

from typing import Final

DOMAIN: Final = "fieldsync"

# Storage key prefixes
KEY_OPERATION: Final = "op:"
KEY_ENTITY_INDEX: Final = "idx:"
KEY_ENTITY_CLOCK: Final = "clock:"
KEY_CONFLICT: Final = "conflict:"
KEY_DEVICE_META: Final = "meta:device"

# Option keys accepted by ``SyncConfig.from_options``
CONF_MAX_RETRIES: Final = "max_retries"
CONF_RETRY_DELAY_MS: Final = "retry_delay_ms"
CONF_MAX_RETRY_DELAY_MS: Final = "max_retry_delay_ms"
CONF_SYNC_INTERVAL_MS: Final = "sync_interval_ms"
CONF_BATCH_SIZE: Final = "batch_size"
CONF_BATCH_TIMEOUT_MS: Final = "batch_timeout_ms"
CONF_SYNCING_TIMEOUT_MS: Final = "syncing_timeout_ms"
CONF_MAX_BATCHES_PER_CYCLE: Final = "max_batches_per_cycle"
CONF_PRIORITY_WEIGHTS: Final = "priority_weights"
CONF_CONFLICT_STRATEGY: Final = "conflict_resolution_strategy"
CONF_DELETE_UPDATE_RESOLUTION: Final = "delete_update_resolution"
CONF_SYNC_ON_CRITICAL: Final = "sync_on_critical"
CONF_PURGE_SYNCED_AFTER_MS: Final = "purge_synced_after_ms"

DEFAULT_MAX_RETRIES: Final = 5
DEFAULT_RETRY_DELAY_MS: Final = 2_000
DEFAULT_MAX_RETRY_DELAY_MS: Final = 300_000
DEFAULT_SYNC_INTERVAL_MS: Final = 30_000
DEFAULT_BATCH_SIZE: Final = 50
DEFAULT_BATCH_TIMEOUT_MS: Final = 30_000
DEFAULT_SYNCING_TIMEOUT_MS: Final = 120_000
DEFAULT_MAX_BATCHES_PER_CYCLE: Final = 10
DEFAULT_PURGE_SYNCED_AFTER_MS: Final = 7 * 24 * 60 * 60 * 1000
DEFAULT_PRIORITY_WEIGHTS: Final = {"critical": 1, "high": 2, "medium": 3, "low": 4}

SYNC_ENDPOINT: Final = "/api/offline-sync"
