"""Tests for sync reporter formatting functions.

Covers:
- format_sync_summary with various session outcomes
- format_conflict / format_conflict_list
- summary_to_json structure
- SyncSummary.summary() one-glance text
"""

from __future__ import annotations

import json

from groupshare_sync.sync.models import (
    ConflictType,
    ConflictVersion,
    EntityType,
    SyncConflict,
    SyncFailure,
    SyncPhase,
    SyncSummary,
)
from groupshare_sync.sync.reporter import (
    format_conflict,
    format_conflict_list,
    format_sync_summary,
    summary_to_json,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _version(device: str, description: str, timestamp: int = 0) -> ConflictVersion:
    return ConflictVersion(
        timestamp=timestamp,
        device_id=f"dev-{device.lower()}",
        device_name=device,
        author_name=f"{device} user",
        checksum="0" * 64,
        description=description,
    )


def _conflict(
    conflict_type: ConflictType = ConflictType.DELETE_MODIFY,
    conflict_id: str = "c1_c2",
) -> SyncConflict:
    return SyncConflict(
        conflict_id=conflict_id,
        entity_type=EntityType.SONG,
        entity_id="s1",
        entity_name="Intro",
        local_version=_version("Laptop", "updated song 'Intro'", 1_700_000_000_000),
        remote_version=_version("Tablet", "deleted song 'Intro'", 1_700_000_060_000),
        conflict_type=conflict_type,
        can_auto_resolve=conflict_type is not ConflictType.DELETE_MODIFY,
        conflict_key="SONG:s1",
        local_change_ids=["c1"],
        remote_change_ids=["c2"],
    )


def _summary(**kwargs) -> SyncSummary:
    """Build a SyncSummary with sensible defaults."""
    defaults = dict(
        group_id="band-1",
        phase=SyncPhase.COMPLETE,
        started_at="2026-02-07T10:00:00+00:00",
        completed_at="2026-02-07T10:00:05+00:00",
    )
    defaults.update(kwargs)
    return SyncSummary(**defaults)


# ---------------------------------------------------------------------------
# format_sync_summary
# ---------------------------------------------------------------------------


class TestFormatSyncSummary:
    """Tests for format_sync_summary()."""

    def test_header_and_counts(self):
        text = format_sync_summary(
            _summary(applied=["a1", "a2"], uploaded=["u1"], manifest_version=7)
        )
        assert text.startswith("Sync report for group 'band-1'")
        assert "Result: complete" in text
        assert "2 applied, 1 uploaded, 0 conflicts, 0 failures" in text
        assert "Manifest version: 7" in text

    def test_empty_session_is_concise(self):
        text = format_sync_summary(_summary())
        assert "Auto-resolved" not in text
        assert "Needs your decision" not in text
        assert "Failures" not in text
        assert "Manifest version" not in text
        assert not text.endswith("\n")

    def test_auto_resolved_section(self):
        text = format_sync_summary(
            _summary(auto_resolved=[_conflict(ConflictType.SIMULTANEOUS_EDIT)])
        )
        assert "Auto-resolved:" in text
        assert "SIMULTANEOUS_EDIT: SONG 'Intro'" in text

    def test_pending_conflicts_show_ids(self):
        text = format_sync_summary(_summary(conflicts=[_conflict()]))
        assert "Needs your decision:" in text
        assert "[c1_c2] DELETE_MODIFY: SONG 'Intro'" in text

    def test_failures_listed(self):
        failure = SyncFailure(
            entity_key="SETLIST:l1",
            change_id="c9",
            operation="upload",
            error_type="transient_network",
            message="connection reset",
        )
        text = format_sync_summary(_summary(failures=[failure]))
        assert "Failures:" in text
        assert "SETLIST:l1 (upload): connection reset" in text

    def test_content_reuse_and_mismatches(self):
        text = format_sync_summary(
            _summary(content_skipped=["SONG:s1"], checksum_mismatches=["c3"])
        )
        assert "Content unchanged (changelog only):" in text
        assert "  SONG:s1" in text
        assert "Checksum mismatches: 1 (remote content applied)" in text

    def test_skipped_count(self):
        text = format_sync_summary(_summary(skipped=["x", "y", "z"]))
        assert "Skipped: 3 remote changes" in text


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestFormatConflict:
    def test_both_versions_shown(self):
        text = format_conflict(_conflict())
        assert text.splitlines()[0] == "Conflict c1_c2"
        assert "Local: updated song 'Intro'" in text
        assert "by Laptop user on Laptop" in text
        assert "Remote: deleted song 'Intro'" in text
        assert "at 2023-11-14 22:13:20 UTC" in text

    def test_list_empty(self):
        assert format_conflict_list([]) == "No pending conflicts."

    def test_list_separated_by_blank_line(self):
        text = format_conflict_list([_conflict(), _conflict(conflict_id="c3_c4")])
        assert "\n\nConflict c3_c4" in text


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------


class TestSummaryToJson:
    def test_structure(self):
        failure = SyncFailure(
            entity_key="SONG:s2",
            operation="apply",
            error_type="not_found",
            message="Remote content for SONG:s2 not found",
        )
        data = summary_to_json(
            _summary(
                applied=["a1"],
                uploaded=["u1", "u2"],
                conflicts=[_conflict()],
                failures=[failure],
                manifest_version=3,
            )
        )
        assert data["group_id"] == "band-1"
        assert data["phase"] == "complete"
        assert data["manifest_version"] == 3
        assert data["counts"]["applied"] == 1
        assert data["counts"]["uploaded"] == 2
        assert data["counts"]["conflicts"] == 1
        assert data["conflicts"][0]["conflictId"] == "c1_c2"
        assert data["conflicts"][0]["conflictType"] == "DELETE_MODIFY"
        assert data["failures"][0]["error_type"] == "not_found"

    def test_serializable(self):
        data = summary_to_json(_summary(conflicts=[_conflict()]))
        assert json.loads(json.dumps(data)) == data


class TestSummaryText:
    def test_counts_and_manifest(self):
        text = _summary(applied=["a"], manifest_version=2).summary()
        assert "Sync summary for group 'band-1' (complete)" in text
        assert "Applied:        1" in text
        assert "Manifest:       v2" in text
