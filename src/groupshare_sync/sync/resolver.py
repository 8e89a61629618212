"""Conflict classification and resolution decisions.

Local and remote entries are partitioned by conflict key: the entity key
``TYPE:id``, or for annotations the layer key
``ANNOTATION:fileId/memberId/page`` so that duplicate layers created on
different devices meet.  For every key present on both sides the newest
entry of each side is classified (inside a layer key, a layer deleted on
one side and modified on the other is classified instead), first match
wins:

- GROUP or MEMBER on both sides -> ``STRUCTURE_CHANGE`` (manual).
- DELETE against CREATE/UPDATE of the same entity -> ``DELETE_MODIFY``
  (manual).
- ANNOTATION CREATE/UPDATE on both sides -> ``ANNOTATION_OVERLAP``
  (auto, stroke merge).
- UPDATE on both sides at most ``window_ms`` apart -> ``SIMULTANEOUS_EDIT``
  (auto, last writer wins).
- Anything else is not a conflict; the orchestrator settles it as a
  sequence of edits with the same last-writer rule.

The resolver only records decisions (``ConflictResolution``); the sync
orchestrator executes them against the stores.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from ..core.result import Result
from ..errors import ConflictUnresolvedError, MalformedRequestError
from .models import (
    STRUCTURAL_TYPES,
    ChangeLogEntry,
    ChangeType,
    ConflictResolution,
    ConflictType,
    ConflictVersion,
    EntityType,
    ResolutionAction,
    SyncConflict,
    annotation_layer_key,
    now_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_WINDOW_MS = 5 * 60 * 1000

_ANNOTATION_ACTIONS = {
    ResolutionAction.MERGE_ANNOTATIONS,
    ResolutionAction.LAYER_SEPARATE,
}


# ---------------------------------------------------------------------------
# Keys and ordering
# ---------------------------------------------------------------------------


def conflict_key(entry: ChangeLogEntry) -> str:
    """Partition key of an entry (layer key for annotations)."""
    meta = entry.metadata
    if entry.entity_type is EntityType.ANNOTATION and "fileId" in meta:
        return annotation_layer_key(
            meta["fileId"], meta.get("memberId", ""), meta.get("pageNumber", "0")
        )
    return entry.entity_key


def writer_order(entry: ChangeLogEntry) -> tuple[int, str, str]:
    """Total order used by last-writer-wins."""
    return (entry.timestamp, entry.device_id, entry.change_id)


def last_writer(local: ChangeLogEntry, remote: ChangeLogEntry) -> ChangeLogEntry:
    """Greater timestamp wins; ties go to the greater device id, then change id."""
    return max(local, remote, key=writer_order)


def newest(entries: Iterable[ChangeLogEntry]) -> ChangeLogEntry:
    return max(entries, key=writer_order)


def partition(entries: Iterable[ChangeLogEntry]) -> dict[str, list[ChangeLogEntry]]:
    """Group entries by conflict key, each group in ascending writer order."""
    groups: dict[str, list[ChangeLogEntry]] = {}
    for entry in sorted(entries, key=writer_order):
        groups.setdefault(conflict_key(entry), []).append(entry)
    return groups


def by_entity(entries: Iterable[ChangeLogEntry]) -> dict[str, list[ChangeLogEntry]]:
    """Group entries by entity key, keeping their order."""
    groups: dict[str, list[ChangeLogEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.entity_key, []).append(entry)
    return groups


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Detect conflicts and keep track of resolution decisions.

    Args:
        window_ms: Maximum gap between two UPDATEs that still counts as a
            simultaneous edit (inclusive).
        clock: Millisecond clock for decision timestamps.
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_CONFLICT_WINDOW_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.window_ms = window_ms
        self._clock = clock
        self._pending: dict[str, SyncConflict] = {}
        self._resolutions: dict[str, ConflictResolution] = {}

    @property
    def pending(self) -> list[SyncConflict]:
        return list(self._pending.values())

    @property
    def resolutions(self) -> dict[str, ConflictResolution]:
        return dict(self._resolutions)

    def resolution_for(self, conflict_id: str) -> ConflictResolution | None:
        return self._resolutions.get(conflict_id)

    def clear(self) -> None:
        self._pending.clear()
        self._resolutions.clear()

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(
        self, local: ChangeLogEntry, remote: ChangeLogEntry
    ) -> ConflictType | None:
        if local.entity_type in STRUCTURAL_TYPES or remote.entity_type in STRUCTURAL_TYPES:
            return ConflictType.STRUCTURE_CHANGE

        local_deleted = local.change_type is ChangeType.DELETE
        remote_deleted = remote.change_type is ChangeType.DELETE
        if local_deleted or remote_deleted:
            if local_deleted != remote_deleted and local.entity_id == remote.entity_id:
                return ConflictType.DELETE_MODIFY
            return None

        if local.entity_type is EntityType.ANNOTATION:
            return ConflictType.ANNOTATION_OVERLAP

        if (
            local.change_type is ChangeType.UPDATE
            and remote.change_type is ChangeType.UPDATE
            and abs(local.timestamp - remote.timestamp) <= self.window_ms
        ):
            return ConflictType.SIMULTANEOUS_EDIT
        return None

    def contested(
        self, local: list[ChangeLogEntry], remote: list[ChangeLogEntry]
    ) -> tuple[ChangeLogEntry, ChangeLogEntry]:
        """Pick the pair of entries that decides the conflict of one key.

        Normally the newest entry of each side.  Within an annotation layer
        key a delete of a layer the other side modified takes precedence,
        so it is never folded into a stroke merge.
        """
        local_latest, remote_latest = newest(local), newest(remote)
        if (
            local_latest.entity_type in STRUCTURAL_TYPES
            or remote_latest.entity_type in STRUCTURAL_TYPES
        ):
            return local_latest, remote_latest
        local_entities = by_entity(local)
        remote_entities = by_entity(remote)
        for entity_key in sorted(local_entities.keys() & remote_entities.keys()):
            mine = newest(local_entities[entity_key])
            theirs = newest(remote_entities[entity_key])
            if (mine.change_type is ChangeType.DELETE) != (
                theirs.change_type is ChangeType.DELETE
            ):
                return mine, theirs
        return local_latest, remote_latest

    def detect_conflicts(
        self,
        group_id: str,
        local_changes: Iterable[ChangeLogEntry],
        remote_changes: Iterable[ChangeLogEntry],
    ) -> list[SyncConflict]:
        """Classify every conflict key touched by both sides.

        Returns:
            One ``SyncConflict`` per conflicting key, in key order.  They are
            also added to ``pending``.
        """
        local_groups = partition(local_changes)
        remote_groups = partition(remote_changes)
        conflicts: list[SyncConflict] = []

        for key in sorted(local_groups.keys() & remote_groups.keys()):
            local, remote = self.contested(local_groups[key], remote_groups[key])
            conflict_type = self.classify(local, remote)
            if conflict_type is None:
                continue
            conflict = SyncConflict(
                conflict_id=f"{local.change_id}_{remote.change_id}",
                entity_type=local.entity_type,
                entity_id=local.entity_id,
                entity_name=local.entity_name,
                local_version=ConflictVersion.from_entry(local),
                remote_version=ConflictVersion.from_entry(remote),
                conflict_type=conflict_type,
                can_auto_resolve=conflict_type
                in (ConflictType.ANNOTATION_OVERLAP, ConflictType.SIMULTANEOUS_EDIT),
                conflict_key=key,
                local_change_ids=[e.change_id for e in local_groups[key]],
                remote_change_ids=[e.change_id for e in remote_groups[key]],
            )
            self._pending[conflict.conflict_id] = conflict
            conflicts.append(conflict)

        if conflicts:
            logger.info(
                "Detected %d conflicts for group %s", len(conflicts), group_id
            )
        return conflicts

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def auto_action(self, conflict: SyncConflict) -> ResolutionAction | None:
        """Action applied without human input, or ``None`` if manual."""
        if conflict.conflict_type is ConflictType.ANNOTATION_OVERLAP:
            return ResolutionAction.MERGE_ANNOTATIONS
        if conflict.conflict_type is ConflictType.SIMULTANEOUS_EDIT:
            local = conflict.local_version
            remote = conflict.remote_version
            local_order = (
                local.timestamp, local.device_id, conflict.local_change_ids[-1]
            )
            remote_order = (
                remote.timestamp, remote.device_id, conflict.remote_change_ids[-1]
            )
            if remote_order > local_order:
                return ResolutionAction.ACCEPT_REMOTE
            return ResolutionAction.KEEP_LOCAL
        return None

    def auto_resolve_conflicts(
        self, conflicts: Iterable[SyncConflict]
    ) -> list[SyncConflict]:
        """Resolve what can be resolved automatically.

        Returns:
            The conflicts that still need a human decision.
        """
        remaining: list[SyncConflict] = []
        for conflict in conflicts:
            action = self.auto_action(conflict) if conflict.can_auto_resolve else None
            if action is None:
                remaining.append(conflict)
                continue
            self._record(conflict, action, automatic=True)
            logger.info(
                "Auto-resolved %s on %s with %s",
                conflict.conflict_type.value,
                conflict.conflict_key,
                action.value,
            )
        return remaining

    def resolve_conflict(
        self, conflict: SyncConflict, action: ResolutionAction
    ) -> Result[None]:
        """Record a human decision for *conflict*."""
        if action is ResolutionAction.MANUAL_MERGE:
            return Result.fail(
                ConflictUnresolvedError(
                    f"Conflict {conflict.conflict_id} requires a manual merge",
                    operation="resolve conflict",
                )
            )
        if action in _ANNOTATION_ACTIONS and conflict.entity_type is not EntityType.ANNOTATION:
            return Result.fail(
                MalformedRequestError(
                    f"{action.value} only applies to annotation conflicts",
                    operation="resolve conflict",
                )
            )
        self._record(conflict, action, automatic=False)
        return Result.ok()

    def _record(
        self, conflict: SyncConflict, action: ResolutionAction, automatic: bool
    ) -> None:
        self._pending.pop(conflict.conflict_id, None)
        self._resolutions[conflict.conflict_id] = ConflictResolution(
            conflict_id=conflict.conflict_id,
            conflict_key=conflict.conflict_key,
            action=action,
            automatic=automatic,
            resolved_at=self._clock(),
        )
