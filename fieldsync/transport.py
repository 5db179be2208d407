"""Transports that deliver operation batches to the remote authority."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from .clock import VectorClock
from .const import SYNC_ENDPOINT
from .errors import InvalidOperationError, TransportError
from .events import ConflictType, CRDTOperation, SyncEvent

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .remote import InMemoryRemote

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConflictInfo:
    conflict_type: ConflictType
    remote_operation: CRDTOperation

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConflictInfo:
        return cls(
            conflict_type=ConflictType(payload["conflictType"]),
            remote_operation=CRDTOperation.from_dict(payload["remoteOperation"]),
        )


@dataclass(frozen=True, slots=True)
class OperationOutcome:
    """The remote's verdict on a single operation."""

    operation_id: str
    accepted: bool
    remote_vector_clock: VectorClock | None = None
    conflict: ConflictInfo | None = None
    error: str | None = None
    retryable: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> OperationOutcome:
        conflict = None
        if payload.get("conflict") and isinstance(payload.get("conflictData"), Mapping):
            conflict = ConflictInfo.from_dict(payload["conflictData"])
        remote_clock = payload.get("remoteVectorClock")
        return cls(
            operation_id=str(payload["operationId"]),
            accepted=bool(payload.get("success")),
            remote_vector_clock=VectorClock.from_dict(remote_clock) if isinstance(remote_clock, Mapping) else None,
            conflict=conflict,
            error=payload.get("error"),
            retryable=bool(payload.get("retryable", False)),
        )


@dataclass(frozen=True, slots=True)
class BatchResult(Sequence[OperationOutcome]):
    outcomes: tuple[OperationOutcome, ...] = ()

    def __getitem__(self, index):
        return self.outcomes[index]

    def __len__(self) -> int:
        return len(self.outcomes)

    def by_operation(self) -> dict[str, OperationOutcome]:
        return {outcome.operation_id: outcome for outcome in self.outcomes}

    @classmethod
    def from_response(cls, payload: Any) -> BatchResult:
        if not isinstance(payload, Mapping) or not isinstance(payload.get("results"), list):
            raise TransportError("sync response is missing results", reason="malformed_response")
        outcomes = []
        for item in payload["results"]:
            try:
                outcomes.append(OperationOutcome.from_dict(item))
            except (KeyError, TypeError, ValueError, InvalidOperationError) as err:
                _LOGGER.debug("Ignoring unreadable sync result %r: %s", item, err)
        return cls(tuple(outcomes))


class Transport(Protocol):
    async def send(self, batch: Sequence[SyncEvent]) -> BatchResult: ...


class HttpTransport:
    """POST batches to ``<base_url>/api/offline-sync`` with aiohttp."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        device_id: str,
        *,
        token: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def send(self, batch: Sequence[SyncEvent]) -> BatchResult:
        body = {
            "operations": [event.operation.to_dict() for event in batch],
            "deviceId": self.device_id,
        }
        try:
            async with self.session.post(
                f"{self.base_url}{SYNC_ENDPOINT}",
                data=json.dumps(body, separators=(",", ":")),
                headers=self._headers(),
                timeout=ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise TransportError(
                        f"offline-sync failed: {resp.status} {text}",
                        reason=f"http_{resp.status}",
                    )
        except ClientError as err:
            raise TransportError(f"offline-sync request failed: {err}", reason="network") from err
        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError as err:
            raise TransportError("offline-sync returned invalid JSON", reason="malformed_response") from err
        return BatchResult.from_response(payload)


class LocalTransport:
    """Deliver batches straight to an in-process ``InMemoryRemote``."""

    def __init__(self, remote: InMemoryRemote, device_id: str) -> None:
        self.remote = remote
        self.device_id = device_id
        self.online = True

    async def send(self, batch: Sequence[SyncEvent]) -> BatchResult:
        if not self.online:
            raise TransportError("remote unreachable", reason="offline")
        response = self.remote.process_batch(
            [event.operation.to_dict() for event in batch],
            self.device_id,
        )
        return BatchResult.from_response(response)


__all__ = [
    "BatchResult",
    "ConflictInfo",
    "HttpTransport",
    "LocalTransport",
    "OperationOutcome",
    "Transport",
]
