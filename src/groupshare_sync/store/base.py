"""LocalStore protocol consumed by the tracker and the sync orchestrator.

Records are plain camelCase dicts keyed by ``(EntityType, id)``; every
record carries an ``id`` field.  Changelog entries live next to the
records so one transaction can cover an entity write and its entry.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    ContextManager,
    Iterable,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..sync.models import ChangeLogEntry, EntityType


@runtime_checkable
class LocalStore(Protocol):
    """Transactional record store plus the append-only changelog."""

    def get(self, entity_type: EntityType, entity_id: str) -> dict | None: ...

    def put(self, entity_type: EntityType, record: dict) -> None: ...

    def delete(self, entity_type: EntityType, entity_id: str) -> bool: ...

    def query(self, entity_type: EntityType, **match: object) -> list[dict]: ...

    def append_change(self, entry: ChangeLogEntry) -> None: ...

    def get_change(self, change_id: str) -> ChangeLogEntry | None: ...

    def update_change(self, entry: ChangeLogEntry) -> None: ...

    def list_changes(
        self, group_id: str | None = None
    ) -> list[ChangeLogEntry]: ...

    def remove_changes(self, change_ids: Iterable[str]) -> int: ...

    def transaction(self) -> ContextManager[None]: ...
