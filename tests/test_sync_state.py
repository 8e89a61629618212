"""Tests for sync state persistence and content hashing."""

from __future__ import annotations

import json
from pathlib import Path

from groupshare_sync.sync.models import (
    ConflictType,
    ConflictVersion,
    EntityType,
    SyncConflict,
)
from groupshare_sync.sync.state import SyncState

from conftest import make_entry


def _conflict() -> SyncConflict:
    version = ConflictVersion(
        timestamp=1,
        device_id="dev-x",
        device_name="X",
        author_name="X",
        checksum="abc",
        description="updated song 's1'",
    )
    return SyncConflict(
        conflict_id="x1_y1",
        entity_type=EntityType.SONG,
        entity_id="s1",
        entity_name="s1",
        local_version=version,
        remote_version=version,
        conflict_type=ConflictType.DELETE_MODIFY,
        can_auto_resolve=False,
        conflict_key="SONG:s1",
        local_change_ids=["x1"],
        remote_change_ids=["y1"],
    )


class TestLoadSave:
    def test_missing_file_gives_empty_state(self, tmp_path: Path) -> None:
        state = SyncState(tmp_path).load("g1")
        assert state["group_id"] == "g1"
        assert SyncState.checkpoint(state) is None
        assert SyncState.pending_conflicts(state) == []
        assert SyncState.held_entries(state) == []

    def test_roundtrip(self, tmp_path: Path) -> None:
        store = SyncState(tmp_path / "state")
        state = store.load("g1")
        SyncState.set_checkpoint(state, 12345)
        SyncState.set_pending(state, [_conflict()], [make_entry("y1", 2)])
        store.save("g1", state)

        loaded = SyncState(tmp_path / "state").load("g1")
        assert loaded["last_sync"] is not None
        assert SyncState.checkpoint(loaded) == 12345
        assert SyncState.pending_conflicts(loaded) == [_conflict()]
        (held,) = SyncState.held_entries(loaded)
        assert held.change_id == "y1"
        assert not held.synced

    def test_file_is_json_per_group(self, tmp_path: Path) -> None:
        store = SyncState(tmp_path)
        store.save("g1", store.load("g1"))
        data = json.loads((tmp_path / "sync_g1.json").read_text(encoding="utf-8"))
        assert data["version"] == 1

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        store = SyncState(tmp_path)
        store.save("g1", store.load("g1"))
        assert [p.name for p in tmp_path.iterdir()] == ["sync_g1.json"]

    def test_held_entries_deduplicated(self, tmp_path: Path) -> None:
        state = SyncState(tmp_path).load("g1")
        entry = make_entry("y1", 2)
        SyncState.set_pending(state, [], [entry, entry])
        assert len(state["held_remote"]) == 1


class TestDeviceIdentity:
    def test_created_once(self, tmp_path: Path) -> None:
        first = SyncState(tmp_path).device_identity("Laptop")
        second = SyncState(tmp_path).device_identity()
        assert first == second
        assert first.device_name == "Laptop"
        assert len(first.device_id) == 36

    def test_rename_keeps_id(self, tmp_path: Path) -> None:
        first = SyncState(tmp_path).device_identity("Laptop")
        renamed = SyncState(tmp_path).device_identity("Tablet")
        assert renamed.device_id == first.device_id
        assert renamed.device_name == "Tablet"


class TestChecksum:
    def test_key_order_irrelevant(self) -> None:
        a = {"id": "s1", "title": "Intro", "tempo": 120}
        b = {"tempo": 120, "id": "s1", "title": "Intro"}
        assert SyncState.entity_checksum(a) == SyncState.entity_checksum(b)

    def test_local_fields_ignored(self) -> None:
        a = {"id": "s1", "title": "Intro"}
        b = {"id": "s1", "title": "Intro", "filePath": "/home/x/s1.pdf"}
        assert SyncState.entity_checksum(a) == SyncState.entity_checksum(b)

    def test_content_change_changes_checksum(self) -> None:
        a = {"id": "s1", "title": "Intro"}
        b = {"id": "s1", "title": "Outro"}
        assert SyncState.entity_checksum(a) != SyncState.entity_checksum(b)

    def test_sha256_hex(self) -> None:
        digest = SyncState.entity_checksum({"id": "x"})
        assert len(digest) == 64
        assert SyncState.canonical_json(None) == "null"
