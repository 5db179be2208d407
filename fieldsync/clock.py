"""Vector clocks used to order operations causally across devices."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .const import KEY_DEVICE_META, KEY_ENTITY_CLOCK
from .errors import InvalidOperationError, StorageError

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .storage import KeyValueStorage

_LOGGER = logging.getLogger(__name__)


class ClockOrder(str, Enum):
    """Result of comparing two vector clocks."""

    BEFORE = "before"
    AFTER = "after"
    CONCURRENT = "concurrent"
    EQUAL = "equal"


@dataclass(frozen=True, slots=True)
class VectorClock(Mapping[str, int]):
    """Immutable mapping of device id to the highest counter observed."""

    counters: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        cleaned: dict[str, int] = {}
        for device, counter in dict(self.counters).items():
            if isinstance(counter, bool) or not isinstance(counter, int):
                raise InvalidOperationError(f"clock counter for {device!r} must be an integer")
            if counter < 0:
                raise InvalidOperationError(f"clock counter for {device!r} is negative: {counter}")
            cleaned[str(device)] = counter
        object.__setattr__(self, "counters", cleaned)

    def __getitem__(self, device: str) -> int:
        return self.counters[device]

    def __iter__(self) -> Iterator[str]:
        return iter(self.counters)

    def __len__(self) -> int:
        return len(self.counters)

    def __hash__(self) -> int:
        return hash(tuple(sorted(self.counters.items())))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return compare(self, other) is ClockOrder.EQUAL
        return NotImplemented

    def increment(self, device: str) -> VectorClock:
        counters = dict(self.counters)
        counters[device] = counters.get(device, 0) + 1
        return VectorClock(counters)

    def merge(self, other: Mapping[str, int]) -> VectorClock:
        return merge(self, other)

    def compare(self, other: Mapping[str, int]) -> ClockOrder:
        return compare(self, other)

    def dominates(self, other: Mapping[str, int]) -> bool:
        return compare(self, other) in (ClockOrder.AFTER, ClockOrder.EQUAL)

    def to_dict(self) -> dict[str, int]:
        return dict(self.counters)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> VectorClock:
        if not payload:
            return cls()
        counters: dict[str, int] = {}
        for device, raw in payload.items():
            if isinstance(raw, bool):
                raise InvalidOperationError(f"clock counter for {device!r} must be an integer")
            try:
                counter = int(raw)
            except (TypeError, ValueError) as err:
                raise InvalidOperationError(f"clock counter for {device!r} must be an integer") from err
            if counter != raw and not isinstance(raw, str):
                raise InvalidOperationError(f"clock counter for {device!r} must be an integer")
            counters[str(device)] = counter
        return cls(counters)


def merge(a: Mapping[str, int], b: Mapping[str, int]) -> VectorClock:
    """Return the pointwise maximum of two clocks."""

    counters = dict(a)
    for device, counter in b.items():
        if counter > counters.get(device, 0):
            counters[device] = counter
    return VectorClock(counters)


def compare(a: Mapping[str, int], b: Mapping[str, int]) -> ClockOrder:
    """Compare two clocks, treating missing entries as zero."""

    a_less = False
    b_less = False
    for device in set(a) | set(b):
        left = a.get(device, 0)
        right = b.get(device, 0)
        if left < right:
            a_less = True
        elif right < left:
            b_less = True
        if a_less and b_less:
            return ClockOrder.CONCURRENT
    if a_less:
        return ClockOrder.BEFORE
    if b_less:
        return ClockOrder.AFTER
    return ClockOrder.EQUAL


def _entity_key(entity: str, entity_id: str) -> str:
    return f"{entity}:{entity_id}"


class DeviceClock:
    """Running clock state for this device.

    Counters are scoped per entity so an operation's own entry always equals
    its per-entity ``version``. ``summary`` is the pointwise maximum over all
    entities and is what the device metadata record exposes.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        device_id: str,
        entity_clocks: Mapping[str, VectorClock] | None = None,
    ) -> None:
        self._storage = storage
        self.device_id = device_id
        self._entities: dict[str, VectorClock] = dict(entity_clocks or {})
        self.summary = VectorClock()
        for clock in self._entities.values():
            self.summary = self.summary.merge(clock)

    @classmethod
    def load_or_create(cls, storage: KeyValueStorage, device_id_factory) -> DeviceClock:
        """Restore the device id and entity clocks, creating the id on first run."""

        raw = storage.get(KEY_DEVICE_META)
        device_id: str | None = None
        if raw:
            try:
                meta = json.loads(raw)
                device_id = str(meta.get("deviceId") or "") or None
            except (json.JSONDecodeError, AttributeError):
                _LOGGER.warning("Device metadata is corrupted; a new device id will be assigned")
        entity_clocks: dict[str, VectorClock] = {}
        for key in storage.keys_with_prefix(KEY_ENTITY_CLOCK):
            payload = storage.get(key)
            if not payload:
                continue
            entity_clocks[key[len(KEY_ENTITY_CLOCK) :]] = VectorClock.from_dict(json.loads(payload))
        if device_id is None:
            device_id = str(device_id_factory())
            _LOGGER.info("Assigned new device id %s", device_id)
        clock = cls(storage, device_id, entity_clocks)
        clock._persist_meta()
        return clock

    def clock_for(self, entity: str, entity_id: str) -> VectorClock:
        return self._entities.get(_entity_key(entity, entity_id), VectorClock())

    def version_for(self, entity: str, entity_id: str) -> int:
        return self.clock_for(entity, entity_id).get(self.device_id, 0)

    def peek_tick(self, entity: str, entity_id: str) -> VectorClock:
        """Return the clock the next local operation on the entity would carry."""

        return self.clock_for(entity, entity_id).increment(self.device_id)

    def tick(self, entity: str, entity_id: str) -> VectorClock:
        clock = self.peek_tick(entity, entity_id)
        self._store(entity, entity_id, clock)
        return clock

    def observe(self, entity: str, entity_id: str, remote: Mapping[str, int] | None) -> VectorClock:
        """Merge a remote clock into the entity's running clock."""

        current = self.clock_for(entity, entity_id)
        if not remote:
            return current
        merged = current.merge(remote)
        if merged.counters != current.counters:
            self._store(entity, entity_id, merged)
        return merged

    def _store(self, entity: str, entity_id: str, clock: VectorClock) -> None:
        key = _entity_key(entity, entity_id)
        self._storage.set(
            KEY_ENTITY_CLOCK + key,
            json.dumps(clock.to_dict(), separators=(",", ":")).encode(),
        )
        self._entities[key] = clock
        self.summary = self.summary.merge(clock)
        try:
            self._persist_meta()
        except StorageError:
            _LOGGER.warning("Device metadata could not be persisted", exc_info=True)

    def _persist_meta(self) -> None:
        payload = {"deviceId": self.device_id, "vectorClock": self.summary.to_dict()}
        self._storage.set(KEY_DEVICE_META, json.dumps(payload, separators=(",", ":")).encode())


__all__ = ["ClockOrder", "DeviceClock", "VectorClock", "compare", "merge"]
