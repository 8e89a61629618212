"""Tests for conflict detection and resolution decisions."""

from __future__ import annotations

import pytest

from groupshare_sync.errors import ConflictUnresolvedError, MalformedRequestError
from groupshare_sync.sync.models import (
    ChangeType,
    ConflictType,
    EntityType,
    ResolutionAction,
)
from groupshare_sync.sync.resolver import (
    DEFAULT_CONFLICT_WINDOW_MS,
    ConflictResolver,
    conflict_key,
    last_writer,
    partition,
)

from conftest import GROUP_ID, make_entry

LAYER = {"fileId": "F1", "memberId": "M1", "pageNumber": "0"}


def _annotation(change_id, ts, layer_id, device_id="dev-x", change_type=ChangeType.CREATE):
    return make_entry(
        change_id,
        ts,
        device_id=device_id,
        entity_type=EntityType.ANNOTATION,
        entity_id=layer_id,
        change_type=change_type,
        metadata=LAYER,
    )


@pytest.fixture
def resolver() -> ConflictResolver:
    return ConflictResolver(clock=lambda: 42)


# ---------------------------------------------------------------------------
# Keys and ordering
# ---------------------------------------------------------------------------


class TestKeys:
    def test_entity_key_for_plain_entities(self) -> None:
        assert conflict_key(make_entry("c", 1, entity_id="s9")) == "SONG:s9"

    def test_layer_key_for_annotations(self) -> None:
        entry = _annotation("c", 1, "layer-a")
        assert conflict_key(entry) == "ANNOTATION:F1/M1/0"

    def test_partition_sorted_by_writer(self) -> None:
        late = make_entry("b", 20)
        early = make_entry("a", 10)
        groups = partition([late, early])
        assert groups == {"SONG:s1": [early, late]}

    def test_last_writer_tie_breaks_on_device_id(self) -> None:
        a = make_entry("c1", 100, device_id="dev-a")
        b = make_entry("c2", 100, device_id="dev-b")
        assert last_writer(a, b) is b
        assert last_writer(b, a) is b


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    def test_structure_change(self, resolver) -> None:
        local = make_entry("l", 1, entity_type=EntityType.MEMBER, entity_id="m1")
        remote = make_entry(
            "r", 2, entity_type=EntityType.MEMBER, entity_id="m1", change_type=ChangeType.DELETE
        )
        assert resolver.classify(local, remote) is ConflictType.STRUCTURE_CHANGE

    def test_delete_modify(self, resolver) -> None:
        local = make_entry("l", 2000, change_type=ChangeType.DELETE)
        remote = make_entry("r", 2010, device_id="dev-y")
        assert resolver.classify(local, remote) is ConflictType.DELETE_MODIFY

    def test_both_deleted_is_not_conflict(self, resolver) -> None:
        local = make_entry("l", 1, change_type=ChangeType.DELETE)
        remote = make_entry("r", 2, change_type=ChangeType.DELETE)
        assert resolver.classify(local, remote) is None

    def test_annotation_overlap(self, resolver) -> None:
        local = _annotation("l", 4000, "layer-a")
        remote = _annotation("r", 4050, "layer-b", device_id="dev-y")
        assert resolver.classify(local, remote) is ConflictType.ANNOTATION_OVERLAP

    def test_annotation_delete_of_other_layer_is_not_conflict(self, resolver) -> None:
        local = _annotation("l", 1, "layer-a")
        remote = _annotation("r", 2, "layer-b", change_type=ChangeType.DELETE)
        assert resolver.classify(local, remote) is None

    @pytest.mark.parametrize(
        ("gap", "expected"),
        [
            (0, ConflictType.SIMULTANEOUS_EDIT),
            (200_000, ConflictType.SIMULTANEOUS_EDIT),
            (DEFAULT_CONFLICT_WINDOW_MS, ConflictType.SIMULTANEOUS_EDIT),
            (DEFAULT_CONFLICT_WINDOW_MS + 1, None),
        ],
    )
    def test_simultaneous_edit_window(self, resolver, gap, expected) -> None:
        local = make_entry("l", 10_000)
        remote = make_entry("r", 10_000 + gap, device_id="dev-y")
        assert resolver.classify(local, remote) is expected

    def test_create_vs_update_is_not_simultaneous(self, resolver) -> None:
        local = make_entry("l", 1, change_type=ChangeType.CREATE)
        remote = make_entry("r", 2)
        assert resolver.classify(local, remote) is None

    def test_custom_window(self) -> None:
        narrow = ConflictResolver(window_ms=1000)
        local = make_entry("l", 0)
        remote = make_entry("r", 1500)
        assert narrow.classify(local, remote) is None


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetectConflicts:
    def test_unrelated_entities_no_conflict(self, resolver) -> None:
        """A song created on X and a setlist created on Y never conflict."""
        local = [make_entry("x1", 1000, change_type=ChangeType.CREATE)]
        remote = [
            make_entry(
                "y1",
                1005,
                device_id="dev-y",
                entity_type=EntityType.SETLIST,
                entity_id="L1",
                change_type=ChangeType.CREATE,
            )
        ]
        assert resolver.detect_conflicts(GROUP_ID, local, remote) == []
        assert resolver.pending == []

    def test_delete_modify_is_manual(self, resolver) -> None:
        local = [make_entry("x1", 2000, change_type=ChangeType.DELETE)]
        remote = [make_entry("y1", 2010, device_id="dev-y")]
        (conflict,) = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert conflict.conflict_type is ConflictType.DELETE_MODIFY
        assert conflict.can_auto_resolve is False
        assert conflict.conflict_id == "x1_y1"
        assert conflict.local_change_ids == ["x1"]
        assert conflict.remote_change_ids == ["y1"]
        assert resolver.pending == [conflict]

    def test_newest_entry_per_side_is_classified(self, resolver) -> None:
        local = [
            make_entry("x1", 100, change_type=ChangeType.CREATE),
            make_entry("x2", 200),
        ]
        remote = [make_entry("y1", 250, device_id="dev-y")]
        (conflict,) = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert conflict.conflict_id == "x2_y1"
        assert conflict.local_change_ids == ["x1", "x2"]

    def test_deleted_layer_beats_newer_layer_of_same_page(self, resolver) -> None:
        """Layer A deleted remotely, edited locally; remote also adds layer C."""
        local = [_annotation("x1", 3000, "layer-a", change_type=ChangeType.UPDATE)]
        remote = [
            _annotation("y1", 2000, "layer-a", device_id="dev-y", change_type=ChangeType.DELETE),
            _annotation("y2", 2500, "layer-c", device_id="dev-y"),
        ]
        (conflict,) = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert conflict.conflict_type is ConflictType.DELETE_MODIFY
        assert conflict.can_auto_resolve is False
        assert conflict.entity_id == "layer-a"
        assert conflict.conflict_id == "x1_y1"
        assert conflict.conflict_key == "ANNOTATION:F1/M1/0"
        assert conflict.remote_change_ids == ["y1", "y2"]

    def test_delete_of_untouched_layer_still_merges(self, resolver) -> None:
        local = [_annotation("x1", 3000, "layer-a", change_type=ChangeType.UPDATE)]
        remote = [
            _annotation("y1", 2000, "layer-b", device_id="dev-y", change_type=ChangeType.DELETE),
            _annotation("y2", 2500, "layer-c", device_id="dev-y"),
        ]
        (conflict,) = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert conflict.conflict_type is ConflictType.ANNOTATION_OVERLAP

    def test_author_name_from_metadata(self, resolver) -> None:
        local = [make_entry("x1", 1, metadata={"authorName": "Sam"})]
        remote = [make_entry("y1", 2, device_id="dev-y")]
        (conflict,) = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert conflict.local_version.author_name == "Sam"
        assert conflict.remote_version.author_name == "DEV-Y"


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestAutoResolve:
    def test_later_remote_edit_wins(self, resolver) -> None:
        local = [make_entry("x1", 3_000_000, entity_type=EntityType.SETLIST, entity_id="L1")]
        remote = [
            make_entry(
                "y1", 3_200_000, device_id="dev-y", entity_type=EntityType.SETLIST, entity_id="L1"
            )
        ]
        conflicts = resolver.detect_conflicts(GROUP_ID, local, remote)
        remaining = resolver.auto_resolve_conflicts(conflicts)
        assert remaining == []
        resolution = resolver.resolution_for("x1_y1")
        assert resolution.action is ResolutionAction.ACCEPT_REMOTE
        assert resolution.automatic is True
        assert resolution.resolved_at == 42
        assert resolver.pending == []

    def test_later_local_edit_wins(self, resolver) -> None:
        local = [make_entry("x1", 500)]
        remote = [make_entry("y1", 400, device_id="dev-y")]
        resolver.auto_resolve_conflicts(resolver.detect_conflicts(GROUP_ID, local, remote))
        assert resolver.resolution_for("x1_y1").action is ResolutionAction.KEEP_LOCAL

    def test_timestamp_tie_uses_device_id(self, resolver) -> None:
        local = [make_entry("x1", 500, device_id="dev-b")]
        remote = [make_entry("y1", 500, device_id="dev-a")]
        resolver.auto_resolve_conflicts(resolver.detect_conflicts(GROUP_ID, local, remote))
        assert resolver.resolution_for("x1_y1").action is ResolutionAction.KEEP_LOCAL

    def test_annotation_overlap_merges(self, resolver) -> None:
        local = [_annotation("x1", 4000, "layer-a")]
        remote = [_annotation("y1", 4050, "layer-b", device_id="dev-y")]
        resolver.auto_resolve_conflicts(resolver.detect_conflicts(GROUP_ID, local, remote))
        assert resolver.resolution_for("x1_y1").action is ResolutionAction.MERGE_ANNOTATIONS

    def test_manual_conflicts_remain(self, resolver) -> None:
        local = [make_entry("x1", 1, change_type=ChangeType.DELETE)]
        remote = [make_entry("y1", 2)]
        conflicts = resolver.detect_conflicts(GROUP_ID, local, remote)
        assert resolver.auto_resolve_conflicts(conflicts) == conflicts
        assert resolver.resolutions == {}


class TestResolveConflict:
    def _delete_modify(self, resolver):
        local = [make_entry("x1", 1, change_type=ChangeType.DELETE)]
        remote = [make_entry("y1", 2)]
        return resolver.detect_conflicts(GROUP_ID, local, remote)[0]

    def test_human_decision_recorded(self, resolver) -> None:
        conflict = self._delete_modify(resolver)
        result = resolver.resolve_conflict(conflict, ResolutionAction.ACCEPT_REMOTE)
        assert result.is_ok
        resolution = resolver.resolution_for(conflict.conflict_id)
        assert resolution.automatic is False
        assert resolver.pending == []

    def test_manual_merge_stays_unresolved(self, resolver) -> None:
        conflict = self._delete_modify(resolver)
        result = resolver.resolve_conflict(conflict, ResolutionAction.MANUAL_MERGE)
        assert isinstance(result.error, ConflictUnresolvedError)
        assert resolver.pending == [conflict]

    def test_annotation_action_rejected_for_songs(self, resolver) -> None:
        conflict = self._delete_modify(resolver)
        result = resolver.resolve_conflict(conflict, ResolutionAction.LAYER_SEPARATE)
        assert isinstance(result.error, MalformedRequestError)

    def test_clear(self, resolver) -> None:
        conflict = self._delete_modify(resolver)
        resolver.resolve_conflict(conflict, ResolutionAction.KEEP_LOCAL)
        resolver.clear()
        assert resolver.resolutions == {}
        assert resolver.pending == []
