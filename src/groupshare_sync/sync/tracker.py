"""Change tracking for local mutations.

``ChangeTracker`` is the only writer of local changelog entries.  Every
tracked mutation of the local store (``put``, ``delete``, or an explicit
``record`` by a caller that already wrote the entity) appends exactly one
``ChangeLogEntry``; batches append one entry per affected entity.  The
entity write and its entry share a single store transaction.

Entries written here start unsynced.  Remote entries applied by the sync
orchestrator are stored through ``record_remote`` with ``synced=True`` so
they are never uploaded back.
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable, Iterable, NamedTuple

from ..errors import EntityNotFoundError
from ..store.base import LocalStore
from .models import ChangeLogEntry, ChangeType, EntityType, now_ms
from .state import DeviceIdentity, SyncState

logger = logging.getLogger(__name__)

_VERBS = {
    ChangeType.CREATE: "added",
    ChangeType.UPDATE: "updated",
    ChangeType.DELETE: "deleted",
}

# Entity kinds published by ``ChangeTracker.track_existing``.
_PUBLISHED_TYPES = (EntityType.SONG, EntityType.SETLIST)


class TrackedChange(NamedTuple):
    """One element of ``ChangeTracker.record_batch``."""

    entity_type: EntityType
    entity_id: str
    entity_name: str
    change_type: ChangeType
    snapshot: dict | None
    metadata: dict[str, str] | None = None


def describe_change(
    change_type: ChangeType, entity_type: EntityType, entity_name: str
) -> str:
    """Human-readable summary, e.g. ``updated setlist 'Friday'``."""
    return f"{_VERBS[change_type]} {entity_type.value.lower()} '{entity_name}'"


def entity_display_name(entity_type: EntityType, record: dict) -> str:
    if entity_type is EntityType.ANNOTATION:
        return f"page {record.get('pageNumber', 0)}"
    return str(record.get("name") or record.get("title") or record["id"])


def layer_metadata(record: dict | None) -> dict[str, str]:
    """Annotation layer coordinates carried in entry metadata."""
    if not record:
        return {}
    return {
        "fileId": str(record.get("fileId", "")),
        "memberId": str(record.get("memberId", "")),
        "pageNumber": str(record.get("pageNumber", 0)),
    }


class ChangeTracker:
    """Append changelog entries for local mutations.

    Args:
        store: Local store holding records and changelog entries.
        device: Identity stamped on every entry.
        clock: Millisecond wall clock (injected by tests).
        id_factory: Change id generator (UUID4 by default).
    """

    def __init__(
        self,
        store: LocalStore,
        device: DeviceIdentity,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.device = device
        self._clock = clock
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._last_timestamp = max(
            (
                e.timestamp
                for e in store.list_changes()
                if e.device_id == device.device_id
            ),
            default=0,
        )

    def _next_timestamp(self) -> int:
        # Entries from one device are strictly ordered by timestamp.
        ts = max(self._clock(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        group_id: str,
        entity_type: EntityType,
        entity_id: str,
        entity_name: str,
        change_type: ChangeType,
        snapshot: dict | None,
        metadata: dict[str, str] | None = None,
    ) -> ChangeLogEntry:
        """Append one unsynced entry for a mutation already applied locally.

        Args:
            snapshot: The entity after the change (for DELETE, the entity
                as it was before removal, or ``None``).
            metadata: Extra string metadata, appended after ``groupId``
                and the annotation layer coordinates.
        """
        meta: dict[str, str] = {"groupId": group_id}
        if entity_type is EntityType.ANNOTATION:
            meta.update(layer_metadata(snapshot))
        for key, value in (metadata or {}).items():
            meta[key] = str(value)

        entry = ChangeLogEntry(
            change_id=self._id_factory(),
            timestamp=self._next_timestamp(),
            device_id=self.device.device_id,
            device_name=self.device.device_name,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            change_type=change_type,
            checksum=SyncState.entity_checksum(
                None if change_type is ChangeType.DELETE else snapshot
            ),
            description=describe_change(change_type, entity_type, entity_name),
            metadata=meta,
        )
        self.store.append_change(entry)
        logger.debug("Recorded change: %s", entry.description)
        return entry

    def put(
        self,
        group_id: str,
        entity_type: EntityType,
        record: dict,
        metadata: dict[str, str] | None = None,
    ) -> ChangeLogEntry:
        """Create or update a record and log it (CREATE when absent)."""
        with self.store.transaction():
            existing = self.store.get(entity_type, record["id"])
            change_type = ChangeType.CREATE if existing is None else ChangeType.UPDATE
            self.store.put(entity_type, record)
            return self.record(
                group_id,
                entity_type,
                record["id"],
                entity_display_name(entity_type, record),
                change_type,
                record,
                metadata,
            )

    def delete(
        self,
        group_id: str,
        entity_type: EntityType,
        entity_id: str,
        metadata: dict[str, str] | None = None,
    ) -> ChangeLogEntry:
        """Delete a record and log it.

        Raises:
            EntityNotFoundError: If the record does not exist.
        """
        with self.store.transaction():
            existing = self.store.get(entity_type, entity_id)
            if existing is None:
                raise EntityNotFoundError(
                    f"{entity_type.value}:{entity_id} not found",
                    operation="delete",
                )
            self.store.delete(entity_type, entity_id)
            return self.record(
                group_id,
                entity_type,
                entity_id,
                entity_display_name(entity_type, existing),
                ChangeType.DELETE,
                existing,
                metadata,
            )

    def record_batch(
        self, group_id: str, changes: Iterable[TrackedChange]
    ) -> list[ChangeLogEntry]:
        """Record one entry per change, all in one transaction."""
        with self.store.transaction():
            return [
                self.record(
                    group_id,
                    change.entity_type,
                    change.entity_id,
                    change.entity_name,
                    change.change_type,
                    change.snapshot,
                    change.metadata,
                )
                for change in changes
            ]

    def track_existing(self, group_id: str) -> list[ChangeLogEntry]:
        """Log CREATE entries for songs and setlists that predate tracking.

        Records of *group_id* that no changelog entry mentions (imported
        before the group was shared, or written around the tracker) are
        queued so the next sync publishes them.
        """
        known = {
            (e.entity_type, e.entity_id) for e in self.store.list_changes(group_id)
        }
        changes = [
            TrackedChange(
                entity_type,
                record["id"],
                entity_display_name(entity_type, record),
                ChangeType.CREATE,
                record,
            )
            for entity_type in _PUBLISHED_TYPES
            for record in sorted(
                self.store.query(entity_type, groupId=group_id),
                key=lambda r: r["id"],
            )
            if (entity_type, record["id"]) not in known
        ]
        if not changes:
            return []
        logger.info(
            "Tracking %d existing records of group %s", len(changes), group_id
        )
        return self.record_batch(group_id, changes)

    def record_remote(self, entry: ChangeLogEntry) -> bool:
        """Store an entry received from the remote as already synced.

        Returns:
            ``False`` if an entry with the same change id already exists.
        """
        if self.store.get_change(entry.change_id) is not None:
            return False
        self.store.append_change(entry.mark_synced())
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_entry(self, change_id: str) -> bool:
        return self.store.get_change(change_id) is not None

    def all_entries(self, group_id: str) -> list[ChangeLogEntry]:
        return sorted(
            self.store.list_changes(group_id),
            key=lambda e: (e.timestamp, e.change_id),
        )

    def unsynced_entries(self, group_id: str) -> list[ChangeLogEntry]:
        """Unsynced entries in ascending ``(timestamp, change_id)`` order."""
        return [e for e in self.all_entries(group_id) if not e.synced]

    def changes_since(self, group_id: str, timestamp: int) -> list[ChangeLogEntry]:
        return [e for e in self.all_entries(group_id) if e.timestamp > timestamp]

    def latest_timestamp(self, group_id: str) -> int:
        return max((e.timestamp for e in self.store.list_changes(group_id)), default=0)

    # ------------------------------------------------------------------
    # Sync bookkeeping
    # ------------------------------------------------------------------

    def mark_synced(self, change_id: str) -> None:
        entry = self.store.get_change(change_id)
        if entry is None:
            logger.warning("Cannot mark unknown change %s as synced", change_id)
            return
        if not entry.synced:
            self.store.update_change(entry.mark_synced())

    def mark_synced_many(self, change_ids: Iterable[str]) -> None:
        with self.store.transaction():
            for change_id in change_ids:
                self.mark_synced(change_id)

    def clear_old_changes(self, group_id: str, older_than: int) -> int:
        """Drop synced entries older than *older_than*; unsynced ones stay.

        Returns:
            Number of entries removed.
        """
        stale = [
            e.change_id
            for e in self.store.list_changes(group_id)
            if e.synced and e.timestamp < older_than
        ]
        removed = self.store.remove_changes(stale)
        if removed:
            logger.info(
                "Cleared %d old changelog entries for group %s", removed, group_id
            )
        return removed
