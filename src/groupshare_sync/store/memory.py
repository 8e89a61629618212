"""In-memory LocalStore with snapshot transactions.

A transaction deep-copies the store on entry and restores the copy if the
block raises, so a failed entity application never leaves a half-written
record behind.  Nested transactions join the outermost one.  Every
mutator opens its own transaction, so single writes are atomic too.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from ..sync.models import ChangeLogEntry, EntityType

logger = logging.getLogger(__name__)


class MemoryLocalStore:
    """Dict-backed store; also the base class of ``JsonLocalStore``."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, dict]] = {}
        self._changes: dict[str, ChangeLogEntry] = {}
        self._lock = threading.RLock()
        self._depth = 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = copy.deepcopy((self._records, self._changes))
            self._depth = 1
            try:
                yield
            except BaseException:
                self._records, self._changes = snapshot
                logger.debug("Local store transaction rolled back")
                raise
            else:
                self._commit()
            finally:
                self._depth = 0

    def _commit(self) -> None:
        """Hook called when the outermost transaction succeeds."""

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, entity_type: EntityType, entity_id: str) -> dict | None:
        record = self._records.get(entity_type.value, {}).get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    def put(self, entity_type: EntityType, record: dict) -> None:
        if not record.get("id"):
            raise ValueError(f"{entity_type.value} record has no id")
        with self.transaction():
            table = self._records.setdefault(entity_type.value, {})
            table[record["id"]] = copy.deepcopy(record)

    def delete(self, entity_type: EntityType, entity_id: str) -> bool:
        with self.transaction():
            table = self._records.get(entity_type.value, {})
            return table.pop(entity_id, None) is not None

    def query(self, entity_type: EntityType, **match: object) -> list[dict]:
        """Return records whose fields equal every ``match`` item."""
        table = self._records.get(entity_type.value, {})
        return [
            copy.deepcopy(record)
            for record in table.values()
            if all(record.get(k) == v for k, v in match.items())
        ]

    # ------------------------------------------------------------------
    # Changelog
    # ------------------------------------------------------------------

    def append_change(self, entry: ChangeLogEntry) -> None:
        with self.transaction():
            if entry.change_id in self._changes:
                raise ValueError(f"Duplicate change id {entry.change_id}")
            self._changes[entry.change_id] = entry

    def get_change(self, change_id: str) -> ChangeLogEntry | None:
        return self._changes.get(change_id)

    def update_change(self, entry: ChangeLogEntry) -> None:
        with self.transaction():
            if entry.change_id not in self._changes:
                raise KeyError(entry.change_id)
            self._changes[entry.change_id] = entry

    def list_changes(self, group_id: str | None = None) -> list[ChangeLogEntry]:
        """Entries in insertion order, optionally restricted to one group."""
        return [
            entry
            for entry in self._changes.values()
            if group_id is None or entry.metadata.get("groupId") == group_id
        ]

    def remove_changes(self, change_ids: Iterable[str]) -> int:
        removed = 0
        with self.transaction():
            for change_id in change_ids:
                if self._changes.pop(change_id, None) is not None:
                    removed += 1
        return removed
