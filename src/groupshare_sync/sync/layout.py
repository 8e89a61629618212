"""Remote folder tree and file naming.

::

    /<AppRoot>/<GroupName>/
      manifest.json
      songs/<id>.pdf | <id>-metadata.json
      annotations/<fileId>/<memberId>/<annotationId>.json
      setlists/<setlistId>.json
      changelog/<timestamp>_<entityType>-<entityId>_<changeType>.json
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import ChangeLogEntry, ChangeType, EntityType

MANIFEST_NAME = "manifest.json"
SONGS_FOLDER = "songs"
ANNOTATIONS_FOLDER = "annotations"
SETLISTS_FOLDER = "setlists"
CHANGELOG_FOLDER = "changelog"

_CHANGELOG_RE = re.compile(
    r"^(?P<timestamp>\d+)_(?P<entity_type>[A-Z]+)-(?P<entity_id>.+)"
    r"_(?P<change_type>CREATE|UPDATE|DELETE)\.json$"
)
_UNSAFE_NAME_RE = re.compile(r'[\\/:*?"<>|]+')


@dataclass(frozen=True)
class GroupFolders:
    """Remote folder ids of one group."""

    app_root: str
    group: str
    songs: str
    annotations: str
    setlists: str
    changelog: str


@dataclass(frozen=True)
class ChangelogName:
    timestamp: int
    entity_type: EntityType
    entity_id: str
    change_type: ChangeType


def group_folder_name(group_name: str) -> str:
    """Folder name for a group; path separators are replaced."""
    cleaned = _UNSAFE_NAME_RE.sub("_", group_name).strip(" .")
    return cleaned or "group"


def changelog_file_name(entry: ChangeLogEntry) -> str:
    return (
        f"{entry.timestamp}_{entry.entity_type.value}-{entry.entity_id}"
        f"_{entry.change_type.value}.json"
    )


def parse_changelog_file_name(name: str) -> ChangelogName | None:
    """Parse a changelog file name; ``None`` if it does not match."""
    match = _CHANGELOG_RE.match(name)
    if match is None:
        return None
    try:
        entity_type = EntityType(match["entity_type"])
    except ValueError:
        return None
    return ChangelogName(
        timestamp=int(match["timestamp"]),
        entity_type=entity_type,
        entity_id=match["entity_id"],
        change_type=ChangeType(match["change_type"]),
    )


def song_file_name(song_id: str) -> str:
    return f"{song_id}.pdf"


def song_metadata_name(song_id: str) -> str:
    return f"{song_id}-metadata.json"


def setlist_file_name(setlist_id: str) -> str:
    return f"{setlist_id}.json"


def annotation_file_name(annotation_id: str) -> str:
    return f"{annotation_id}.json"
