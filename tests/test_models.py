"""Tests for sync data models and the remote layout helpers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from groupshare_sync.sync import layout
from groupshare_sync.sync.models import (
    Annotation,
    AnnotationPoint,
    AnnotationStroke,
    ChangeLogEntry,
    ChangeType,
    EntityType,
    GroupManifest,
    SyncFailure,
    SyncPhase,
    SyncSummary,
    annotation_layer_key,
)

from conftest import make_entry


class TestChangeLogEntry:
    def test_wire_format_is_camel_case_without_synced(self) -> None:
        entry = make_entry("c1", 1000, synced=True)
        wire = entry.to_wire()
        assert wire["changeId"] == "c1"
        assert wire["entityType"] == "SONG"
        assert wire["changeType"] == "UPDATE"
        assert "synced" not in wire

    def test_from_wire_is_never_synced(self) -> None:
        wire = make_entry("c1", 1000).to_wire()
        wire["synced"] = True
        entry = ChangeLogEntry.from_wire(wire)
        assert entry.synced is False
        assert entry.metadata == {"groupId": "band-1"}

    def test_metadata_order_preserved(self) -> None:
        entry = make_entry("c1", 1, metadata={"zeta": "1", "alpha": "2"})
        restored = ChangeLogEntry.from_wire(entry.to_wire())
        assert list(restored.metadata) == ["groupId", "zeta", "alpha"]

    def test_frozen(self) -> None:
        entry = make_entry("c1", 1)
        with pytest.raises(ValidationError):
            entry.synced = True  # type: ignore[misc]

    def test_mark_synced_returns_copy(self) -> None:
        entry = make_entry("c1", 1)
        synced = entry.mark_synced()
        assert synced.synced and not entry.synced
        assert synced.change_id == entry.change_id

    def test_entity_key(self) -> None:
        entry = make_entry("c1", 1, entity_type=EntityType.SETLIST, entity_id="l1")
        assert entry.entity_key == "SETLIST:l1"


class TestAnnotationModels:
    def test_point_bounds(self) -> None:
        AnnotationPoint(x=0.0, y=1.0)
        with pytest.raises(ValidationError):
            AnnotationPoint(x=1.5, y=0.5)

    def test_stroke_color_pattern(self) -> None:
        AnnotationStroke(id="s", color="#00ff00")
        with pytest.raises(ValidationError):
            AnnotationStroke(id="s", color="green")

    def test_layer_key_and_record_roundtrip(self) -> None:
        layer = Annotation(
            id="a1",
            file_id="F1",
            member_id="M1",
            page_number=2,
            created_at=10,
            updated_at=10,
            strokes=[AnnotationStroke(id="s1", created_at=5)],
        )
        assert layer.layer_key == annotation_layer_key("F1", "M1", 2)
        record = layer.to_record()
        assert record["fileId"] == "F1"
        assert record["strokes"][0]["strokeWidth"] == 3.0
        assert Annotation.from_record(record) == layer


class TestManifest:
    def test_parses_wire_json(self) -> None:
        manifest = GroupManifest.model_validate(
            {
                "version": 3,
                "groupId": "g1",
                "name": "Band",
                "created": 1,
                "updated": 2,
                "memberCount": 1,
                "members": [{"id": "m1", "name": "Alex", "role": "admin", "joined": 1}],
            }
        )
        assert manifest.group_id == "g1"
        assert manifest.members[0].role == "admin"
        assert manifest.model_dump(by_alias=True)["memberCount"] == 1


class TestSyncSummary:
    def test_counts_and_text(self) -> None:
        summary = SyncSummary(
            group_id="g1",
            phase=SyncPhase.COMPLETE,
            applied=["a", "b"],
            uploaded=["c"],
            failures=[
                SyncFailure(
                    entity_key="SONG:s1",
                    operation="upload",
                    error_type="transient_network",
                    message="timeout",
                )
            ],
            manifest_version=4,
            started_at="2026-01-01T00:00:00+00:00",
        )
        assert summary.applied_count == 2
        assert summary.uploaded_count == 1
        assert summary.failed_count == 1
        assert summary.conflicted_count == 0
        text = summary.summary()
        assert "group 'g1' (complete)" in text
        assert "v4" in text


class TestLayout:
    def test_changelog_name_roundtrip(self) -> None:
        entry = make_entry(
            "c1",
            1700000000123,
            entity_type=EntityType.ANNOTATION,
            entity_id="a_b-1",
            change_type=ChangeType.DELETE,
        )
        name = layout.changelog_file_name(entry)
        assert name == "1700000000123_ANNOTATION-a_b-1_DELETE.json"
        parsed = layout.parse_changelog_file_name(name)
        assert parsed is not None
        assert parsed.timestamp == 1700000000123
        assert parsed.entity_type is EntityType.ANNOTATION
        assert parsed.entity_id == "a_b-1"
        assert parsed.change_type is ChangeType.DELETE

    @pytest.mark.parametrize(
        "name",
        ["manifest.json", "123_SONG-s1_RENAME.json", "123_WIDGET-x_CREATE.json"],
    )
    def test_unrelated_names_rejected(self, name: str) -> None:
        assert layout.parse_changelog_file_name(name) is None

    def test_group_folder_name_sanitized(self) -> None:
        assert layout.group_folder_name("Rock/Pop: Live") == "Rock_Pop_ Live"
        assert layout.group_folder_name("..") == "group"

    def test_content_names(self) -> None:
        assert layout.song_file_name("s1") == "s1.pdf"
        assert layout.song_metadata_name("s1") == "s1-metadata.json"
        assert layout.setlist_file_name("l1") == "l1.json"
        assert layout.annotation_file_name("a1") == "a1.json"
