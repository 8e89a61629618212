"""Sync orchestrator: one session-scoped state machine per group.

A session walks the phases of ``SyncPhase`` in order:

1. AUTHENTICATING -- authenticate against the remote store.
2. FETCHING_MANIFEST -- fetch or create the group folders, download the
   manifest (a joining device seeds its group and members from it).
3. DOWNLOADING_REMOTE_CHANGES -- list changelog files uploaded since the
   checkpoint, download them, drop entries already known locally, add the
   remote entries held back by unresolved conflicts.
4. COLLECTING_LOCAL_CHANGES -- unsynced local entries.  On the first
   session of a group, or on request, songs and setlists that predate
   change tracking are queued first.
5. DETECTING_CONFLICTS -- ``ConflictResolver.detect_conflicts``.
6. AUTO_RESOLVING -- ``ConflictResolver.auto_resolve_conflicts``.
7. APPLYING_REMOTE -- execute decisions and apply clean remote entries.
8. UPLOADING_LOCAL -- upload content (deduplicated) and changelog entries
   with a bounded worker pool.
9. UPDATING_MANIFEST -- rewrite the manifest with ``version + 1``.
10. COMPLETE -- persist sync state and return the ``SyncSummary``.

Error handling is per entity in steps 7-9: a failure is recorded in the
summary and the session moves on.  Session-fatal errors (authentication,
quota) and any failure in steps 1-6 end the session in ``ERROR``.
Cancellation is checked at every phase transition and before each upload.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from ..core.async_utils import CancellationToken, gather_limited
from ..core.result import Result
from ..core.retry import classify_exception
from ..errors import (
    ChecksumMismatchError,
    EntityNotFoundError,
    MalformedRequestError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
)
from ..store.base import LocalStore
from . import layout
from .layout import GroupFolders
from .merger import AnnotationMergeEngine, MergeOutcome
from .models import (
    LOCAL_ONLY_FIELDS,
    STRUCTURAL_TYPES,
    Annotation,
    ChangeLogEntry,
    ChangeType,
    EntityType,
    GroupManifest,
    ManifestMember,
    ResolutionAction,
    Setlist,
    SongMetadata,
    SyncConflict,
    SyncFailure,
    SyncPhase,
    SyncSummary,
    now_ms,
)
from .remote import GroupRemote
from .resolver import ConflictResolver, by_entity, last_writer, newest, partition
from .state import SyncState
from .tracker import ChangeTracker

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[str, SyncPhase], None]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _layer_of(entries: Iterable[ChangeLogEntry]) -> tuple[str, str, int] | None:
    """The (fileId, memberId, page) triple annotation entries refer to."""
    for entry in entries:
        meta = entry.metadata
        if entry.entity_type is EntityType.ANNOTATION and meta.get("fileId"):
            return (
                meta["fileId"],
                meta.get("memberId", ""),
                int(meta.get("pageNumber", "0")),
            )
    return None


def _wire_record(record: dict) -> dict:
    return {k: v for k, v in record.items() if k not in LOCAL_ONLY_FIELDS}


@dataclass
class _Session:
    """Mutable bookkeeping of one running session."""

    group_id: str
    token: CancellationToken
    started_at: str
    folders: GroupFolders | None = None
    manifest: GroupManifest | None = None
    phases: list[SyncPhase] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    uploaded: list[str] = field(default_factory=list)
    content_skipped: list[str] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    checksum_mismatches: list[str] = field(default_factory=list)
    failures: list[SyncFailure] = field(default_factory=list)
    errors: list[SyncError] = field(default_factory=list)
    failed_entries: list[ChangeLogEntry] = field(default_factory=list)
    blocked_keys: set[str] = field(default_factory=set)
    manifest_version: int | None = None
    fatal: SyncError | None = None

    def fail(
        self,
        entity_key: str,
        operation: str,
        error: SyncError,
        change_id: str | None = None,
    ) -> None:
        logger.warning(
            "Sync of %s failed during %s: %s", entity_key, operation, error
        )
        self.errors.append(error)
        self.failures.append(
            SyncFailure(
                entity_key=entity_key,
                change_id=change_id,
                operation=operation,
                error_type=error.error_type,
                message=str(error),
            )
        )

    def flag_mismatch(self, entry: ChangeLogEntry) -> None:
        """Report remote content that differs from its changelog checksum.

        The content is still applied, so the error lands in the summary's
        failures but does not fail a conflict resolution.
        """
        error = ChecksumMismatchError(
            f"Remote content of {entry.entity_key} does not match change "
            f"{entry.change_id}; applied anyway",
            operation="apply",
        )
        logger.warning("%s", error)
        self.checksum_mismatches.append(entry.change_id)
        self.failures.append(
            SyncFailure(
                entity_key=entry.entity_key,
                change_id=entry.change_id,
                operation="apply",
                error_type=error.error_type,
                message=str(error),
            )
        )


class SyncOrchestrator:
    """Run sync sessions for groups against one local and one remote store.

    Args:
        store: Local record store.
        remote: Group-level remote adapter.
        tracker: Change tracker writing to *store*.
        state: Sync state persistence.
        resolver: Conflict resolver (a default one is created if omitted).
        merger: Annotation merge engine.
        files_dir: Where downloaded song files are stored; song files are
            not downloaded when ``None``.
        max_parallel_uploads: Size of the upload worker pool.
        checkpoint_skew_ms: Overlap subtracted from the checkpoint when
            listing remote changelog files.
        clock: Millisecond clock.
        on_phase: Called with ``(group_id, phase)`` on every transition.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: GroupRemote,
        tracker: ChangeTracker,
        state: SyncState,
        resolver: ConflictResolver | None = None,
        merger: AnnotationMergeEngine | None = None,
        *,
        files_dir: Path | None = None,
        max_parallel_uploads: int = 4,
        checkpoint_skew_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
        on_phase: PhaseCallback | None = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.tracker = tracker
        self.state = state
        self.resolver = resolver or ConflictResolver()
        self.merger = merger or AnnotationMergeEngine(clock=clock)
        self.files_dir = files_dir
        self.max_parallel_uploads = max_parallel_uploads
        self.checkpoint_skew_ms = checkpoint_skew_ms
        self._clock = clock
        self.on_phase = on_phase
        self._sessions: dict[str, _Session] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_syncing(self, group_id: str) -> bool:
        return group_id in self._sessions

    async def sync_group(
        self,
        group_id: str,
        token: CancellationToken | None = None,
        group_name: str | None = None,
        publish_existing: bool = False,
    ) -> Result[SyncSummary]:
        """Run one sync session for *group_id*.

        Args:
            token: Cancellation token checked between steps.
            group_name: Folder name to use when neither the local store nor
                the sync state knows the group yet (joining device).
            publish_existing: Queue songs and setlists that have no
                changelog entry (``ChangeTracker.track_existing``).  Always
                done on the first session of a group.

        Returns:
            ``Result.ok(summary)`` when the session completed (possibly with
            per-entity failures), ``Result.fail(error)`` otherwise.
        """
        if group_id in self._sessions:
            logger.warning("Sync already running for group %s", group_id)
            return Result.fail(
                SyncInProgressError(
                    f"A sync session for group {group_id} is already running",
                    operation="sync",
                )
            )
        session = _Session(group_id, token or CancellationToken(), _utc_now())
        self._sessions[group_id] = session
        try:
            return await self._run(session, group_name, publish_existing)
        finally:
            del self._sessions[group_id]

    async def run_continuous(
        self,
        group_id: str,
        interval: float,
        token: CancellationToken,
        group_name: str | None = None,
        on_result: Callable[[Result[SyncSummary]], None] | None = None,
        max_rounds: int | None = None,
    ) -> Result[SyncSummary] | None:
        """Sync *group_id* every *interval* seconds until *token* is cancelled.

        A failed session is logged and retried on the next round; a
        session-fatal error (authentication, quota) stops the loop.

        Args:
            interval: Seconds to wait between the end of one session and the
                start of the next.
            token: Stops the loop; also cancels a session in progress.
            on_result: Called with the result of every session.
            max_rounds: Stop after this many sessions.

        Returns:
            The result of the last session, or ``None`` if none ran.
        """
        last: Result[SyncSummary] | None = None
        rounds = 0
        logger.info(
            "Continuous sync for group %s every %.1fs", group_id, interval
        )
        while not token.cancelled:
            last = await self.sync_group(group_id, token, group_name)
            rounds += 1
            if on_result is not None:
                on_result(last)
            if last.is_failure:
                if isinstance(last.error, SyncCancelledError):
                    break
                if last.error.session_fatal:
                    logger.error(
                        "Continuous sync for group %s stopped: %s",
                        group_id,
                        last.error,
                    )
                    break
                logger.warning(
                    "Sync round %d for group %s failed: %s",
                    rounds,
                    group_id,
                    last.error,
                )
            if max_rounds is not None and rounds >= max_rounds:
                break
            try:
                await asyncio.wait_for(token.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info(
            "Continuous sync for group %s ended after %d rounds", group_id, rounds
        )
        return last

    def pending_conflicts(self, group_id: str) -> list[SyncConflict]:
        """Conflicts of *group_id* still waiting for a human decision."""
        return SyncState.pending_conflicts(self.state.load(group_id))

    async def resolve_conflict(
        self, group_id: str, conflict_id: str, action: ResolutionAction
    ) -> Result[None]:
        """Execute a human decision for a pending conflict.

        The remote entries held back by the conflict are applied, merged,
        kept separate or acknowledged according to *action*; local entries
        that survive are uploaded by the next sync.
        """
        if group_id in self._sessions:
            return Result.fail(
                SyncInProgressError(
                    f"A sync session for group {group_id} is already running",
                    operation="resolve conflict",
                )
            )
        state = self.state.load(group_id)
        pending = SyncState.pending_conflicts(state)
        conflict = next((c for c in pending if c.conflict_id == conflict_id), None)
        if conflict is None:
            return Result.fail(
                EntityNotFoundError(
                    f"No pending conflict {conflict_id} in group {group_id}",
                    operation="resolve conflict",
                )
            )
        decision = self.resolver.resolve_conflict(conflict, action)
        if decision.is_failure:
            return decision

        session = _Session(group_id, CancellationToken(), _utc_now())
        self._sessions[group_id] = session
        try:
            held = SyncState.held_entries(state)
            remote_ids = set(conflict.remote_change_ids)
            remote_entries = [e for e in held if e.change_id in remote_ids]
            local_entries = []
            for change_id in conflict.local_change_ids:
                entry = self.store.get_change(change_id)
                if entry is not None and not entry.synced:
                    local_entries.append(entry)
            try:
                await self.remote.authenticate()
                session.folders = await self.remote.ensure_folders(
                    self._folder_name(group_id, state, None)
                )
                session.manifest = await self.remote.download_manifest(
                    session.folders
                )
                await self._execute(
                    session,
                    conflict.conflict_key,
                    action,
                    remote_entries,
                    local_entries,
                )
                self._collapse_layers(
                    session, conflict.conflict_key, remote_entries + local_entries
                )
            except SyncError as exc:
                return Result.fail(exc)
            if session.errors:
                return Result.fail(session.errors[0])

            SyncState.set_pending(
                state,
                [c for c in pending if c.conflict_id != conflict_id],
                [e for e in held if e.change_id not in remote_ids],
            )
            self.state.save(group_id, state)
            logger.info(
                "Resolved conflict %s on %s with %s",
                conflict_id,
                conflict.conflict_key,
                action.value,
            )
            return Result.ok()
        finally:
            del self._sessions[group_id]

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _enter(self, session: _Session, phase: SyncPhase) -> None:
        if phase not in (SyncPhase.COMPLETE, SyncPhase.ERROR):
            session.token.raise_if_cancelled(phase.value)
        session.phases.append(phase)
        logger.debug("Group %s: %s", session.group_id, phase.value)
        if self.on_phase is not None:
            self.on_phase(session.group_id, phase)

    def _summary(self, session: _Session, phase: SyncPhase, **extra) -> SyncSummary:
        return SyncSummary(
            group_id=session.group_id,
            phase=phase,
            applied=session.applied,
            uploaded=session.uploaded,
            content_skipped=session.content_skipped,
            superseded=session.superseded,
            skipped=session.skipped,
            checksum_mismatches=session.checksum_mismatches,
            failures=session.failures,
            manifest_version=session.manifest_version,
            started_at=session.started_at,
            completed_at=_utc_now(),
            phases=session.phases,
            **extra,
        )

    def _folder_name(
        self, group_id: str, state: dict, group_name: str | None
    ) -> str:
        if state.get("folder_name"):
            return state["folder_name"]
        group = self.store.get(EntityType.GROUP, group_id)
        if group and group.get("name"):
            return group["name"]
        return group_name or group_id

    async def _run(
        self, session: _Session, group_name: str | None, publish_existing: bool
    ) -> Result[SyncSummary]:
        group_id = session.group_id
        logger.info("Starting sync for group %s", group_id)
        try:
            state = self.state.load(group_id)

            self._enter(session, SyncPhase.AUTHENTICATING)
            await self.remote.authenticate()

            self._enter(session, SyncPhase.FETCHING_MANIFEST)
            folder_name = self._folder_name(group_id, state, group_name)
            session.folders = await self.remote.ensure_folders(folder_name)
            session.manifest = await self.remote.download_manifest(session.folders)
            if session.manifest is not None and state.get("checkpoint") is None:
                self._seed_from_manifest(session.manifest)

            self._enter(session, SyncPhase.DOWNLOADING_REMOTE_CHANGES)
            remote_entries, checkpoint = await self._download_changes(
                session, state
            )

            self._enter(session, SyncPhase.COLLECTING_LOCAL_CHANGES)
            if publish_existing or SyncState.checkpoint(state) is None:
                self.tracker.track_existing(group_id)
            local_entries = self.tracker.unsynced_entries(group_id)
            logger.info(
                "Group %s: %d remote and %d local changes",
                group_id,
                len(remote_entries),
                len(local_entries),
            )

            self._enter(session, SyncPhase.DETECTING_CONFLICTS)
            conflicts = self.resolver.detect_conflicts(
                group_id, local_entries, remote_entries
            )

            self._enter(session, SyncPhase.AUTO_RESOLVING)
            manual = self.resolver.auto_resolve_conflicts(conflicts)
            manual_ids = {c.conflict_id for c in manual}
            auto = [c for c in conflicts if c.conflict_id not in manual_ids]
            held_keys = {c.conflict_key for c in manual}

            self._enter(session, SyncPhase.APPLYING_REMOTE)
            held = await self._apply_remote(
                session, remote_entries, local_entries, auto, held_keys
            )

            self._enter(session, SyncPhase.UPLOADING_LOCAL)
            await self._upload_local(session, held_keys)

            self._enter(session, SyncPhase.UPDATING_MANIFEST)
            await self._update_manifest(session)

            SyncState.set_pending(state, manual, held + session.failed_entries)
            SyncState.set_checkpoint(state, checkpoint)
            state["folder_name"] = folder_name
            if session.manifest_version is not None:
                state["manifest_version"] = session.manifest_version
            self.state.save(group_id, state)

            self._enter(session, SyncPhase.COMPLETE)
        except SyncCancelledError as exc:
            logger.info("Sync for group %s cancelled: %s", group_id, exc)
            self._enter(session, SyncPhase.ERROR)
            return Result.fail(exc)
        except SyncError as exc:
            logger.error("Sync for group %s aborted: %s", group_id, exc)
            self._enter(session, SyncPhase.ERROR)
            return Result.fail(exc)

        summary = self._summary(
            session, SyncPhase.COMPLETE, auto_resolved=auto, conflicts=manual
        )
        logger.info(
            "Sync for group %s complete: %d applied, %d uploaded, "
            "%d conflicts, %d failures",
            group_id,
            summary.applied_count,
            summary.uploaded_count,
            summary.conflicted_count,
            summary.failed_count,
        )
        return Result.ok(summary)

    def _seed_from_manifest(self, manifest: GroupManifest) -> None:
        """Create the group and member records a joining device lacks."""
        with self.store.transaction():
            if self.store.get(EntityType.GROUP, manifest.group_id) is None:
                self.store.put(
                    EntityType.GROUP,
                    {
                        "id": manifest.group_id,
                        "name": manifest.name,
                        "created": manifest.created,
                        "updated": manifest.updated,
                    },
                )
            for member in manifest.members:
                if self.store.get(EntityType.MEMBER, member.id) is None:
                    self.store.put(
                        EntityType.MEMBER, self._member_record(manifest, member)
                    )
        logger.info(
            "Seeded group %s with %d members from manifest v%d",
            manifest.group_id,
            len(manifest.members),
            manifest.version,
        )

    @staticmethod
    def _member_record(manifest: GroupManifest, member: ManifestMember) -> dict:
        return {
            "id": member.id,
            "groupId": manifest.group_id,
            "name": member.name,
            "role": member.role,
            "joined": member.joined,
        }

    # ------------------------------------------------------------------
    # Step 3: remote changes
    # ------------------------------------------------------------------

    async def _download_changes(
        self, session: _Session, state: dict
    ) -> tuple[list[ChangeLogEntry], int | None]:
        """Download new remote entries.

        Returns:
            The entries in ascending ``(timestamp, change_id)`` order and the
            checkpoint to store once the session succeeds.
        """
        assert session.folders is not None
        checkpoint = SyncState.checkpoint(state)
        since = None if checkpoint is None else checkpoint - self.checkpoint_skew_ms
        files = await self.remote.list_changelog(session.folders, since)

        entries: dict[str, ChangeLogEntry] = {}
        newest_seen = checkpoint
        failed_times: list[int] = []
        for file in sorted(files, key=lambda f: f.name):
            if newest_seen is None or file.modified_time > newest_seen:
                newest_seen = file.modified_time
            try:
                entry = await self.remote.download_entry(file)
            except SyncError as exc:
                if exc.session_fatal:
                    raise
                session.fail(f"changelog:{file.name}", "download", exc)
                failed_times.append(file.modified_time)
                continue
            group = entry.metadata.get("groupId")
            if group is not None and group != session.group_id:
                logger.debug("Ignoring %s from group %s", file.name, group)
                continue
            if not self.tracker.has_entry(entry.change_id):
                entries[entry.change_id] = entry

        for entry in SyncState.held_entries(state):
            if not self.tracker.has_entry(entry.change_id):
                entries.setdefault(entry.change_id, entry)

        if failed_times:
            newest_seen = min(failed_times)
        ordered = sorted(entries.values(), key=lambda e: (e.timestamp, e.change_id))
        return ordered, newest_seen

    # ------------------------------------------------------------------
    # Step 7: apply
    # ------------------------------------------------------------------

    async def _apply_remote(
        self,
        session: _Session,
        remote_entries: list[ChangeLogEntry],
        local_entries: list[ChangeLogEntry],
        auto: list[SyncConflict],
        held_keys: set[str],
    ) -> list[ChangeLogEntry]:
        """Apply remote entries; returns the ones held back by conflicts."""
        decisions: dict[str, ResolutionAction] = {}
        for conflict in auto:
            resolution = self.resolver.resolution_for(conflict.conflict_id)
            if resolution is not None:
                decisions[conflict.conflict_key] = resolution.action

        local_groups = partition(local_entries)
        held: list[ChangeLogEntry] = []
        for key, entries in partition(remote_entries).items():
            if key in held_keys:
                held.extend(entries)
                continue
            local = local_groups.get(key, [])
            action = decisions.get(key)
            if action is not None:
                await self._execute(session, key, action, entries, local)
            elif local:
                await self._settle(session, key, entries, local)
            else:
                await self._apply_entries(session, key, entries)
            self._collapse_layers(session, key, entries)
        return held

    async def _execute(
        self,
        session: _Session,
        key: str,
        action: ResolutionAction,
        remote: list[ChangeLogEntry],
        local: list[ChangeLogEntry],
    ) -> None:
        """Carry out a decision for one conflict key.

        ACCEPT_REMOTE and KEEP_LOCAL act per entity: remote entries for
        entities the local side never touched are applied either way.
        """
        match action:
            case ResolutionAction.ACCEPT_REMOTE:
                if await self._apply_entries(session, key, remote):
                    applied = {e.entity_key for e in remote}
                    self._supersede(
                        session, [e for e in local if e.entity_key in applied]
                    )
                else:
                    session.blocked_keys.add(key)
            case ResolutionAction.KEEP_LOCAL:
                touched = {e.entity_key for e in local}
                self._acknowledge(
                    session, [e for e in remote if e.entity_key in touched]
                )
                others = [e for e in remote if e.entity_key not in touched]
                if others and not await self._apply_entries(session, key, others):
                    session.blocked_keys.add(key)
            case ResolutionAction.MERGE_ANNOTATIONS:
                await self._merge_layers(session, key, remote, local)
            case ResolutionAction.LAYER_SEPARATE:
                await self._separate_layers(session, key, remote)
            case _:
                raise MalformedRequestError(
                    f"Cannot execute {action.value} for {key}"
                )

    async def _settle(
        self,
        session: _Session,
        key: str,
        remote: list[ChangeLogEntry],
        local: list[ChangeLogEntry],
    ) -> None:
        """Shared key without a conflict: last writer wins per entity."""
        local_by_entity = by_entity(local)
        for entity_key, entries in by_entity(remote).items():
            mine = local_by_entity.get(entity_key)
            if not mine:
                await self._apply_entries(session, entity_key, entries)
                continue
            winner = last_writer(newest(mine), newest(entries))
            if winner in entries:
                if await self._apply_entries(session, entity_key, entries):
                    self._supersede(session, mine)
                else:
                    session.blocked_keys.add(key)
            else:
                self._acknowledge(session, entries)

    def _acknowledge(self, session: _Session, entries: Iterable[ChangeLogEntry]) -> None:
        """Record remote entries as seen without applying them."""
        with self.store.transaction():
            for entry in entries:
                if self.tracker.record_remote(entry):
                    session.skipped.append(entry.change_id)

    def _supersede(self, session: _Session, entries: Iterable[ChangeLogEntry]) -> None:
        """Mark local entries overridden by a remote winner as synced."""
        ids = [e.change_id for e in entries]
        self.tracker.mark_synced_many(ids)
        session.superseded.extend(ids)

    async def _apply_entries(
        self, session: _Session, key: str, entries: list[ChangeLogEntry]
    ) -> bool:
        """Apply the newest entry of each entity; older ones are acknowledged.

        Returns:
            ``False`` if any entity failed to apply.
        """
        ok = True
        for entity_entries in by_entity(entries).values():
            latest = newest(entity_entries)
            older = [e for e in entity_entries if e is not latest]
            try:
                await self._apply_entry(session, latest)
            except Exception as exc:
                error = classify_exception(exc)
                if error.session_fatal:
                    raise error
                session.fail(latest.entity_key, "apply", error, latest.change_id)
                session.failed_entries.extend(entity_entries)
                ok = False
                continue
            self._acknowledge(session, older)
        return ok

    async def _apply_entry(self, session: _Session, entry: ChangeLogEntry) -> None:
        if entry.change_type is ChangeType.DELETE:
            with self.store.transaction():
                existed = self.store.delete(entry.entity_type, entry.entity_id)
                self.tracker.record_remote(entry)
            if existed:
                session.applied.append(entry.change_id)
            else:
                logger.info(
                    "Skipping delete of absent %s", entry.entity_key
                )
                session.skipped.append(entry.change_id)
            return

        record = await self._download_record(session, entry)
        if entry.entity_type not in STRUCTURAL_TYPES:
            if SyncState.entity_checksum(record) != entry.checksum:
                session.flag_mismatch(entry)
        with self.store.transaction():
            self.store.put(entry.entity_type, record)
            self.tracker.record_remote(entry)
        session.applied.append(entry.change_id)

    async def _download_record(
        self, session: _Session, entry: ChangeLogEntry
    ) -> dict:
        """Fetch the current remote content of the entity *entry* refers to.

        Raises:
            EntityNotFoundError: If the remote content does not exist.
        """
        folders = session.folders
        assert folders is not None
        entity_id = entry.entity_id
        raw: dict | None = None

        match entry.entity_type:
            case EntityType.SONG:
                raw = await self.remote.download_json(
                    folders.songs, layout.song_metadata_name(entity_id)
                )
                if raw is not None:
                    SongMetadata.model_validate(raw)
                    raw = await self._attach_song_file(session, raw)
            case EntityType.SETLIST:
                raw = await self.remote.download_json(
                    folders.setlists, layout.setlist_file_name(entity_id)
                )
                if raw is not None:
                    Setlist.model_validate(raw)
            case EntityType.ANNOTATION:
                file_id = entry.metadata.get("fileId")
                member_id = entry.metadata.get("memberId")
                if not file_id or not member_id:
                    raise MalformedRequestError(
                        f"Annotation change {entry.change_id} lacks layer metadata"
                    )
                folder = await self.remote.annotation_folder(
                    folders, file_id, member_id
                )
                raw = await self.remote.download_json(
                    folder, layout.annotation_file_name(entity_id)
                )
                if raw is not None:
                    Annotation.from_record(raw)
            case EntityType.GROUP:
                manifest = session.manifest
                if manifest is not None and manifest.group_id == entity_id:
                    raw = {
                        "id": manifest.group_id,
                        "name": manifest.name,
                        "created": manifest.created,
                        "updated": manifest.updated,
                    }
            case EntityType.MEMBER:
                manifest = session.manifest
                if manifest is not None:
                    member = next(
                        (m for m in manifest.members if m.id == entity_id), None
                    )
                    if member is not None:
                        raw = self._member_record(manifest, member)

        if raw is None:
            raise EntityNotFoundError(
                f"Remote content for {entry.entity_key} not found",
                operation="apply",
            )
        return raw

    async def _attach_song_file(self, session: _Session, raw: dict) -> dict:
        assert session.folders is not None
        existing = self.store.get(EntityType.SONG, raw["id"]) or {}
        record = dict(raw)
        if existing.get("filePath"):
            record["filePath"] = existing["filePath"]
        if self.files_dir is None:
            return record
        target = self.files_dir / session.group_id / layout.song_file_name(raw["id"])
        path = await self.remote.download_file(
            session.folders.songs, layout.song_file_name(raw["id"]), target
        )
        if path is not None:
            record["filePath"] = str(path)
        return record

    async def _merge_layers(
        self,
        session: _Session,
        key: str,
        remote: list[ChangeLogEntry],
        local: list[ChangeLogEntry],
    ) -> None:
        """Merge remote and local layers of one annotation key.

        The merge result is recorded as new local entries (UPDATE of the
        primary, DELETE of each absorbed layer) that the upload step sends;
        the local CREATE/UPDATE entries it replaces are marked synced.  When
        the merge changes nothing the local entries stay queued.
        """
        layer = _layer_of(remote + local)
        if layer is None:
            return
        incoming: list[Annotation] = []
        deletes: list[ChangeLogEntry] = []
        for entity_entries in by_entity(remote).values():
            latest = newest(entity_entries)
            if latest.change_type is ChangeType.DELETE:
                deletes.append(latest)
                continue
            try:
                record = await self._download_record(session, latest)
            except Exception as exc:
                error = classify_exception(exc)
                if error.session_fatal:
                    raise error
                session.fail(key, "merge", error, latest.change_id)
                session.failed_entries.extend(remote)
                session.blocked_keys.add(key)
                return
            incoming.append(Annotation.from_record(record))

        file_id, member_id, page_number = layer
        with self.store.transaction():
            for entry in deletes:
                self.store.delete(EntityType.ANNOTATION, entry.entity_id)
            outcome = self.merger.merge_in_store(
                self.store, file_id, member_id, page_number, incoming
            )
            for entry in remote:
                self.tracker.record_remote(entry)
            if outcome is not None and outcome.changed:
                self._supersede(
                    session,
                    [e for e in local if e.change_type is not ChangeType.DELETE],
                )
                self._record_merge(session, outcome, layer)
        session.applied.extend(e.change_id for e in remote)
        if outcome is not None and outcome.duplicate_strokes:
            logger.info(
                "Dropped %d duplicate strokes while merging %s",
                outcome.duplicate_strokes,
                key,
            )

    def _collapse_layers(
        self, session: _Session, key: str, entries: list[ChangeLogEntry]
    ) -> None:
        """Merge duplicate layers left in the store after applying *key*."""
        if key in session.blocked_keys:
            return
        layer = _layer_of(entries)
        if layer is None:
            return
        with self.store.transaction():
            outcome = self.merger.merge_in_store(self.store, *layer)
            if outcome is None or not outcome.changed:
                return
            self._record_merge(session, outcome, layer)
        logger.info(
            "Collapsed %d duplicate layers into %s",
            len(outcome.deleted_layer_ids),
            outcome.primary.id,
        )

    def _record_merge(
        self,
        session: _Session,
        outcome: MergeOutcome,
        layer: tuple[str, str, int],
    ) -> None:
        file_id, member_id, page_number = layer
        primary = outcome.primary
        self.tracker.record(
            session.group_id,
            EntityType.ANNOTATION,
            primary.id,
            f"page {primary.page_number}",
            ChangeType.UPDATE,
            primary.to_record(),
            {"mergedLayers": str(len(outcome.deleted_layer_ids) + 1)},
        )
        layer_meta = {
            "fileId": file_id,
            "memberId": member_id,
            "pageNumber": str(page_number),
        }
        for layer_id in sorted(outcome.deleted_layer_ids):
            self.tracker.record(
                session.group_id,
                EntityType.ANNOTATION,
                layer_id,
                f"page {page_number}",
                ChangeType.DELETE,
                None,
                layer_meta,
            )

    async def _separate_layers(
        self, session: _Session, key: str, remote: list[ChangeLogEntry]
    ) -> None:
        """Keep remote layers next to the local ones without merging.

        The kept layer is marked ``separate`` and re-recorded so the other
        devices keep it apart too.
        """
        for entity_entries in by_entity(remote).values():
            latest = newest(entity_entries)
            if latest.change_type is ChangeType.DELETE:
                await self._apply_entries(session, key, entity_entries)
                continue
            try:
                record = await self._download_record(session, latest)
            except Exception as exc:
                error = classify_exception(exc)
                if error.session_fatal:
                    raise error
                session.fail(key, "apply", error, latest.change_id)
                session.failed_entries.extend(entity_entries)
                continue
            incoming = Annotation.from_record(record)
            with self.store.transaction():
                stored = self.merger.separate(self.store, incoming)
                for entry in entity_entries:
                    self.tracker.record_remote(entry)
                if stored.id != incoming.id or not incoming.separate:
                    self.tracker.record(
                        session.group_id,
                        EntityType.ANNOTATION,
                        stored.id,
                        f"page {stored.page_number}",
                        ChangeType.CREATE
                        if stored.id != incoming.id
                        else ChangeType.UPDATE,
                        stored.to_record(),
                    )
            session.applied.extend(e.change_id for e in entity_entries)

    # ------------------------------------------------------------------
    # Step 8: upload
    # ------------------------------------------------------------------

    async def _upload_local(self, session: _Session, held_keys: set[str]) -> None:
        excluded = held_keys | session.blocked_keys
        groups = {
            key: entries
            for key, entries in partition(
                self.tracker.unsynced_entries(session.group_id)
            ).items()
            if key not in excluded
        }
        await gather_limited(
            [self._upload_key(session, entries) for entries in groups.values()],
            self.max_parallel_uploads,
        )
        if session.fatal is not None:
            raise session.fatal
        session.token.raise_if_cancelled(SyncPhase.UPLOADING_LOCAL.value)

    async def _upload_key(
        self, session: _Session, entries: list[ChangeLogEntry]
    ) -> None:
        for entity_key, entity_entries in by_entity(entries).items():
            if session.token.cancelled or session.fatal is not None:
                return
            try:
                await self._upload_entity(session, entity_entries)
            except Exception as exc:
                error = classify_exception(exc)
                if error.session_fatal:
                    session.fatal = error
                    return
                session.fail(entity_key, "upload", error)

    async def _upload_entity(
        self, session: _Session, entries: list[ChangeLogEntry]
    ) -> None:
        assert session.folders is not None
        latest = newest(entries)
        if latest.change_type is not ChangeType.DELETE:
            record = self.store.get(latest.entity_type, latest.entity_id)
            if record is not None:
                transferred = await self._upload_content(
                    session.folders, latest.entity_type, record
                )
                if transferred is False:
                    session.content_skipped.append(latest.entity_key)
        for entry in entries:
            await self.remote.upload_entry(session.folders, entry)
            self.tracker.mark_synced(entry.change_id)
            session.uploaded.append(entry.change_id)

    async def _upload_content(
        self, folders: GroupFolders, entity_type: EntityType, record: dict
    ) -> bool | None:
        """Upload entity content, skipping files whose checksum matches.

        Returns:
            ``True`` if anything was transferred, ``False`` if every file was
            already up to date, ``None`` for entities without content files.
        """
        payload = _wire_record(record)
        match entity_type:
            case EntityType.SONG:
                transferred = await self.remote.upload_json(
                    folders.songs, layout.song_metadata_name(record["id"]), payload
                )
                file_path = record.get("filePath")
                if file_path and Path(file_path).is_file():
                    transferred |= await self.remote.upload_file_if_changed(
                        folders.songs,
                        layout.song_file_name(record["id"]),
                        Path(file_path),
                    )
                return transferred
            case EntityType.SETLIST:
                return await self.remote.upload_json(
                    folders.setlists, layout.setlist_file_name(record["id"]), payload
                )
            case EntityType.ANNOTATION:
                folder = await self.remote.annotation_folder(
                    folders, record["fileId"], record["memberId"]
                )
                return await self.remote.upload_json(
                    folder, layout.annotation_file_name(record["id"]), payload
                )
        return None

    # ------------------------------------------------------------------
    # Step 9: manifest
    # ------------------------------------------------------------------

    async def _update_manifest(self, session: _Session) -> None:
        assert session.folders is not None
        group = self.store.get(EntityType.GROUP, session.group_id)
        if group is None:
            logger.info(
                "Group %s no longer exists locally; manifest left unchanged",
                session.group_id,
            )
            return
        try:
            current = (
                await self.remote.download_manifest(session.folders)
                or session.manifest
            )
            members = sorted(
                self.store.query(EntityType.MEMBER, groupId=session.group_id),
                key=lambda m: (m.get("joined", 0), m["id"]),
            )
            now = self._clock()
            manifest = GroupManifest(
                version=(current.version if current else 0) + 1,
                group_id=session.group_id,
                name=group.get("name", session.group_id),
                created=current.created if current else group.get("created", now),
                updated=now,
                member_count=len(members),
                members=[
                    ManifestMember(
                        id=m["id"],
                        name=m.get("name", m["id"]),
                        role=m.get("role"),
                        joined=m.get("joined", 0),
                    )
                    for m in members
                ],
            )
            await self.remote.upload_manifest(session.folders, manifest)
        except Exception as exc:
            error = classify_exception(exc)
            if error.session_fatal:
                raise error
            session.fail(f"GROUP:{session.group_id}", "manifest", error)
            return
        session.manifest = manifest
        session.manifest_version = manifest.version
        logger.info(
            "Uploaded manifest v%d for group %s", manifest.version, session.group_id
        )
