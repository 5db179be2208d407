from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .events import CRDTOperation, OperationType, Priority

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .manager import OfflineManager


class EntityCollection:
    """Create, update and remove records of one entity while offline.

    New records get a locally generated id so they can be referenced before
    the remote has ever seen them.
    """

    def __init__(self, manager: OfflineManager, entity: str) -> None:
        self.manager = manager
        self.entity = entity

    @staticmethod
    def new_id() -> str:
        return uuid4().hex

    def create(
        self,
        data: Mapping[str, Any],
        *,
        priority: Priority | str = Priority.MEDIUM,
        business_key: str | None = None,
        entity_id: str | None = None,
    ) -> CRDTOperation:
        return self.manager.add_operation(
            OperationType.CREATE,
            self.entity,
            entity_id or self.new_id(),
            data,
            priority,
            business_key,
        )

    def update(
        self,
        entity_id: str,
        changes: Mapping[str, Any],
        *,
        priority: Priority | str = Priority.MEDIUM,
    ) -> CRDTOperation:
        return self.manager.add_operation(OperationType.UPDATE, self.entity, entity_id, changes, priority)

    def remove(self, entity_id: str, *, priority: Priority | str = Priority.MEDIUM) -> CRDTOperation:
        return self.manager.add_operation(OperationType.DELETE, self.entity, entity_id, None, priority)

    def pending(self, entity_id: str) -> list[CRDTOperation]:
        return self.manager.log.pending_by_entity(self.entity, entity_id)


__all__ = ["EntityCollection"]
