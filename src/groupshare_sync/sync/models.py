"""Pydantic models for the group sync engine.

Defines the data contracts shared by every sync module:

- ``EntityType``, ``ChangeType``: what changed and how.
- ``ChangeLogEntry``: one local or remote mutation (the sync transport unit).
- ``SyncConflict``, ``ConflictVersion``, ``ConflictType``,
  ``ResolutionAction``, ``ConflictResolution``: conflict handling.
- ``GroupManifest``, ``ManifestMember``: the remote group descriptor.
- ``Annotation``, ``AnnotationStroke``, ``AnnotationPoint``: markup layers.
- ``Setlist``, ``SongMetadata``: remote JSON payloads.
- ``SyncPhase``, ``SyncFailure``, ``SyncSummary``: session reporting.

Python attributes are snake_case; the wire format (remote JSON files and
local records) is camelCase via an alias generator.  All models are frozen.
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_WIRE_CONFIG = {
    "frozen": True,
    "alias_generator": to_camel,
    "populate_by_name": True,
}

# Record fields that only make sense on the device that wrote them.
LOCAL_ONLY_FIELDS = frozenset({"filePath"})


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def annotation_layer_key(
    file_id: str, member_id: str, page_number: int | str
) -> str:
    """Conflict key shared by all layers of one (file, member, page)."""
    return f"ANNOTATION:{file_id}/{member_id}/{page_number}"


class EntityType(str, Enum):
    """Entity kinds tracked by the changelog."""

    SONG = "SONG"
    ANNOTATION = "ANNOTATION"
    SETLIST = "SETLIST"
    GROUP = "GROUP"
    MEMBER = "MEMBER"


class ChangeType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


STRUCTURAL_TYPES = frozenset({EntityType.GROUP, EntityType.MEMBER})


# ---------------------------------------------------------------------------
# Changelog
# ---------------------------------------------------------------------------


class ChangeLogEntry(BaseModel):
    """Immutable record of one entity mutation.

    Attributes:
        change_id: Globally unique id (UUID4).
        timestamp: Author wall-clock time in milliseconds.
        device_id: Stable id of the authoring device.
        device_name: Human-readable device name.
        entity_type: Kind of entity changed.
        entity_id: Id of the entity changed.
        entity_name: Display name of the entity at change time.
        change_type: CREATE, UPDATE or DELETE.
        checksum: SHA-256 of the canonical entity snapshot.
        description: Human-readable summary, e.g. ``added song 'Intro'``.
        metadata: Ordered string map (``groupId``, annotation layer key...).
        synced: Local-only flag, never serialized to the wire.
    """

    change_id: str
    timestamp: int
    device_id: str
    device_name: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    change_type: ChangeType
    checksum: str
    description: str
    metadata: dict[str, str] = {}
    synced: bool = False

    model_config = _WIRE_CONFIG

    @property
    def entity_key(self) -> str:
        return f"{self.entity_type.value}:{self.entity_id}"

    def mark_synced(self) -> ChangeLogEntry:
        return self.model_copy(update={"synced": True})

    def to_wire(self) -> dict:
        """Serialize to the remote changelog file schema."""
        return self.model_dump(
            mode="json", by_alias=True, exclude={"synced"}
        )

    @classmethod
    def from_wire(cls, data: dict) -> ChangeLogEntry:
        """Parse a remote changelog file; remote entries are never synced."""
        payload = {k: v for k, v in data.items() if k != "synced"}
        return cls.model_validate(payload)


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictType(str, Enum):
    DELETE_MODIFY = "DELETE_MODIFY"
    SIMULTANEOUS_EDIT = "SIMULTANEOUS_EDIT"
    ANNOTATION_OVERLAP = "ANNOTATION_OVERLAP"
    STRUCTURE_CHANGE = "STRUCTURE_CHANGE"


class ResolutionAction(str, Enum):
    KEEP_LOCAL = "KEEP_LOCAL"
    ACCEPT_REMOTE = "ACCEPT_REMOTE"
    MERGE_ANNOTATIONS = "MERGE_ANNOTATIONS"
    LAYER_SEPARATE = "LAYER_SEPARATE"
    MANUAL_MERGE = "MANUAL_MERGE"


class ConflictVersion(BaseModel):
    """Snapshot of one side of a conflict."""

    timestamp: int
    device_id: str
    device_name: str
    author_name: str
    checksum: str
    description: str

    model_config = _WIRE_CONFIG

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> ConflictVersion:
        return cls(
            timestamp=entry.timestamp,
            device_id=entry.device_id,
            device_name=entry.device_name,
            author_name=entry.metadata.get("authorName", entry.device_name),
            checksum=entry.checksum,
            description=entry.description,
        )


class SyncConflict(BaseModel):
    """A local/remote change pair that touched the same entity.

    Attributes:
        conflict_id: ``<localChangeId>_<remoteChangeId>``.
        conflict_key: Partition key shared by both sides (entity key, or
            annotation layer key for overlapping layers).
        local_change_ids: Local entries covered by this conflict.
        remote_change_ids: Remote entries covered by this conflict.
    """

    conflict_id: str
    entity_type: EntityType
    entity_id: str
    entity_name: str
    local_version: ConflictVersion
    remote_version: ConflictVersion
    conflict_type: ConflictType
    can_auto_resolve: bool
    conflict_key: str
    local_change_ids: list[str] = []
    remote_change_ids: list[str] = []

    model_config = _WIRE_CONFIG


class ConflictResolution(BaseModel):
    """A decision taken for a conflict, executed by the orchestrator."""

    conflict_id: str
    conflict_key: str
    action: ResolutionAction
    automatic: bool
    resolved_at: int

    model_config = _WIRE_CONFIG


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class ManifestMember(BaseModel):
    id: str
    name: str
    role: str | None = None
    joined: int = 0

    model_config = _WIRE_CONFIG


class GroupManifest(BaseModel):
    """Authoritative remote descriptor of a group (``manifest.json``)."""

    version: int
    group_id: str
    name: str
    created: int
    updated: int
    member_count: int
    members: list[ManifestMember] = []

    model_config = _WIRE_CONFIG


# ---------------------------------------------------------------------------
# Annotations
# ---------------------------------------------------------------------------


class DrawingTool(str, Enum):
    PEN = "PEN"
    HIGHLIGHTER = "HIGHLIGHTER"
    ERASER = "ERASER"
    TEXT = "TEXT"


class AnnotationPoint(BaseModel):
    """Point in page-relative normalized coordinates."""

    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    pressure: float = 1.0
    timestamp: int = 0

    model_config = _WIRE_CONFIG


class AnnotationStroke(BaseModel):
    id: str
    points: list[AnnotationPoint] = []
    color: str = Field(default="#FF0000", pattern=r"^#[0-9A-Fa-f]{6}$")
    stroke_width: float = 3.0
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)
    tool: DrawingTool = DrawingTool.PEN
    text: str | None = None
    created_at: int = 0

    model_config = _WIRE_CONFIG


class Annotation(BaseModel):
    """One markup layer for a (file, member, page) triple.

    ``separate`` marks a layer a member chose to keep apart from the other
    layers of its triple; the merge engine leaves such layers alone.  The
    flag is only written to records when set.
    """

    id: str
    file_id: str
    member_id: str
    page_number: int = 0
    created_at: int
    updated_at: int
    strokes: list[AnnotationStroke] = []
    separate: bool = False

    model_config = _WIRE_CONFIG

    @property
    def layer_key(self) -> str:
        return annotation_layer_key(
            self.file_id, self.member_id, self.page_number
        )

    def to_record(self) -> dict:
        record = self.model_dump(mode="json", by_alias=True)
        if not self.separate:
            del record["separate"]
        return record

    @classmethod
    def from_record(cls, record: dict) -> Annotation:
        return cls.model_validate(record)


# ---------------------------------------------------------------------------
# Other remote payloads
# ---------------------------------------------------------------------------


class SetlistSong(BaseModel):
    song_id: str
    order: int

    model_config = _WIRE_CONFIG


class Setlist(BaseModel):
    id: str
    name: str
    group_id: str
    description: str | None = None
    created_at: int
    updated_at: int
    songs: list[SetlistSong] = []

    model_config = {**_WIRE_CONFIG, "extra": "allow"}


class SongMetadata(BaseModel):
    """Song record as stored in ``songs/<id>-metadata.json``."""

    id: str
    group_id: str
    title: str
    artist: str | None = None
    key: str | None = None
    tempo: int | None = None
    notes: str | None = None

    model_config = {**_WIRE_CONFIG, "extra": "allow"}


# ---------------------------------------------------------------------------
# Session reporting
# ---------------------------------------------------------------------------


class SyncPhase(str, Enum):
    """States of a sync session, in execution order."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING_MANIFEST = "fetching_manifest"
    DOWNLOADING_REMOTE_CHANGES = "downloading_remote_changes"
    COLLECTING_LOCAL_CHANGES = "collecting_local_changes"
    DETECTING_CONFLICTS = "detecting_conflicts"
    AUTO_RESOLVING = "auto_resolving"
    APPLYING_REMOTE = "applying_remote"
    UPLOADING_LOCAL = "uploading_local"
    UPDATING_MANIFEST = "updating_manifest"
    COMPLETE = "complete"
    ERROR = "error"


class SyncFailure(BaseModel):
    """A per-entity failure folded into the summary.

    Attributes:
        entity_key: ``TYPE:id`` of the entity (or conflict key).
        change_id: Changelog entry being processed, if any.
        operation: ``apply``, ``upload``, ``download`` or ``manifest``.
        error_type: ``SyncError.error_type`` of the failure.
        message: Error description.
    """

    entity_key: str
    change_id: str | None = None
    operation: str
    error_type: str
    message: str

    model_config = {"frozen": True}


class SyncSummary(BaseModel):
    """Aggregate report for one sync session.

    Attributes:
        group_id: Group that was synced.
        phase: Final phase (``COMPLETE`` on success).
        applied: Remote change ids applied to the local store.
        uploaded: Local change ids whose changelog entry was uploaded.
        content_skipped: Entity keys whose content upload was skipped
            because local and remote checksums matched.
        superseded: Local change ids overridden by a winning remote change.
        skipped: Remote change ids acknowledged without applying content
            (older entries of a key, deletes of absent entities).
        checksum_mismatches: Remote change ids whose downloaded content did
            not match the entry checksum (applied anyway, logged).
        auto_resolved: Conflicts resolved without human input.
        conflicts: Conflicts still waiting for a human decision.
        failures: Per-entity failures.
        manifest_version: Manifest version written by this session.
        phases: Phases visited, in order.
    """

    group_id: str
    phase: SyncPhase
    applied: list[str] = []
    uploaded: list[str] = []
    content_skipped: list[str] = []
    superseded: list[str] = []
    skipped: list[str] = []
    checksum_mismatches: list[str] = []
    auto_resolved: list[SyncConflict] = []
    conflicts: list[SyncConflict] = []
    failures: list[SyncFailure] = []
    manifest_version: int | None = None
    started_at: str
    completed_at: str | None = None
    phases: list[SyncPhase] = []

    model_config = {"frozen": True}

    @property
    def applied_count(self) -> int:
        return len(self.applied)

    @property
    def uploaded_count(self) -> int:
        return len(self.uploaded)

    @property
    def conflicted_count(self) -> int:
        return len(self.conflicts)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    def summary(self) -> str:
        """Format a human-readable summary of the session.

        Returns:
            Multi-line summary string with counts by outcome.
        """
        lines = [
            f"Sync summary for group '{self.group_id}' ({self.phase.value})",
            f"  Applied:        {self.applied_count}",
            f"  Uploaded:       {self.uploaded_count}",
            f"  Content reused: {len(self.content_skipped)}",
            f"  Superseded:     {len(self.superseded)}",
            f"  Auto-resolved:  {len(self.auto_resolved)}",
            f"  Conflicts:      {self.conflicted_count}",
            f"  Failures:       {self.failed_count}",
        ]
        if self.manifest_version is not None:
            lines.append(f"  Manifest:       v{self.manifest_version}")
        return "\n".join(lines)
