from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from fieldsync import (
    BatchResult,
    InMemoryRemote,
    MemoryStorage,
    OfflineManager,
    SyncConfig,
    SyncEvent,
    SystemEnvironment,
)

START_MS = 1_760_000_000_000


class FakeEnvironment(SystemEnvironment):
    """Environment with a hand-driven wall clock."""

    def __init__(self, *, online: bool = True, now: int = START_MS) -> None:
        super().__init__(online=online)
        self.now = now

    def now_ms(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class RecordingTransport:
    """Transport that records every batch and forwards it to an in-memory remote.

    Queue exceptions in ``failures`` to make the next sends raise, or set
    ``drop`` to strip outcomes for the listed operation ids.
    """

    def __init__(self, remote: InMemoryRemote, device_id: str) -> None:
        self.remote = remote
        self.device_id = device_id
        self.batches: list[list[SyncEvent]] = []
        self.failures: list[Exception] = []
        self.drop: set[str] = set()

    @property
    def sent_ids(self) -> list[str]:
        return [event.id for batch in self.batches for event in batch]

    async def send(self, batch: Sequence[SyncEvent]) -> BatchResult:
        self.batches.append(list(batch))
        if self.failures:
            raise self.failures.pop(0)
        response = self.remote.process_batch([event.operation.to_dict() for event in batch], self.device_id)
        response["results"] = [item for item in response["results"] if item["operationId"] not in self.drop]
        return BatchResult.from_response(response)


@pytest.fixture
def env() -> FakeEnvironment:
    return FakeEnvironment()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def remote(env: FakeEnvironment) -> InMemoryRemote:
    return InMemoryRemote(now=env.now_ms)


@pytest.fixture
def make_manager(env: FakeEnvironment, remote: InMemoryRemote) -> Callable[..., OfflineManager]:
    """Build a manager wired to ``RecordingTransport`` and the shared remote."""

    def _factory(
        device_id: str = "device-a",
        *,
        storage: MemoryStorage | None = None,
        environment: FakeEnvironment | None = None,
        hooks: Any = None,
        **options: Any,
    ) -> OfflineManager:
        return OfflineManager(
            storage if storage is not None else MemoryStorage(),
            lambda dev: RecordingTransport(remote, dev),
            environment=environment or env,
            config=SyncConfig.from_options(options),
            hooks=hooks,
            device_id_factory=lambda: device_id,
        )

    return _factory
