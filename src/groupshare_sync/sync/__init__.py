"""Offline-first group sync engine.

Public API for reconciling a device's local records with a shared remote
blob store through an append-only changelog.

Architecture
------------
Every local mutation is recorded as a ``ChangeLogEntry``.  A sync session
downloads the entries other devices uploaded, classifies entity keys both
sides touched, resolves what can be resolved without losing data (stroke
merge for annotation layers, last-writer-wins for edits within the
conflict window), applies the rest of the remote entries, uploads the
local ones and bumps the group manifest.

Modules:

- ``engine``   -- ``SyncOrchestrator``: the session state machine.
- ``tracker``  -- ``ChangeTracker``: changelog writes for local mutations.
- ``resolver`` -- ``ConflictResolver``: classification and decisions.
- ``merger``   -- ``AnnotationMergeEngine``: stroke-level layer merge.
- ``remote``   -- ``GroupRemote``: remote layout, retry and dedup uploads.
- ``state``    -- ``SyncState``: checkpoints, held conflicts, checksums.
- ``layout``   -- remote folder tree and file names.
- ``models``   -- data contracts.
- ``reporter`` -- human-readable and JSON summaries.

Usage example
-------------
::

    from pathlib import Path
    from groupshare_sync.core import RetryPolicy
    from groupshare_sync.remote import FolderRemoteStore
    from groupshare_sync.store import JsonLocalStore
    from groupshare_sync.sync import (
        ChangeTracker, GroupRemote, SyncOrchestrator, SyncState,
    )

    store = JsonLocalStore(Path("data/store.json"))
    state = SyncState(Path("data/state"))
    tracker = ChangeTracker(store, state.device_identity())
    remote = GroupRemote(FolderRemoteStore(Path("/mnt/shared")), RetryPolicy())
    orchestrator = SyncOrchestrator(store, remote, tracker, state)

    result = await orchestrator.sync_group("band-1")
    print(result.unwrap().summary())
"""

from .engine import SyncOrchestrator
from .merger import AnnotationMergeEngine, MergeOutcome
from .models import (
    ChangeLogEntry,
    ChangeType,
    ConflictType,
    EntityType,
    ResolutionAction,
    SyncConflict,
    SyncPhase,
    SyncSummary,
)
from .remote import GroupRemote
from .reporter import format_conflict_list, format_sync_summary, summary_to_json
from .resolver import ConflictResolver
from .state import DeviceIdentity, SyncState
from .tracker import ChangeTracker, TrackedChange

__all__ = [
    "AnnotationMergeEngine",
    "ChangeLogEntry",
    "ChangeTracker",
    "ChangeType",
    "ConflictResolver",
    "ConflictType",
    "DeviceIdentity",
    "EntityType",
    "GroupRemote",
    "MergeOutcome",
    "ResolutionAction",
    "SyncConflict",
    "SyncOrchestrator",
    "SyncPhase",
    "SyncState",
    "SyncSummary",
    "TrackedChange",
    "format_conflict_list",
    "format_sync_summary",
    "summary_to_json",
]
