"""Sync summary formatting functions.

Provides human-readable and machine-readable output for sync sessions:

- ``format_sync_summary`` -- full post-sync report.
- ``format_conflict`` -- one pending conflict, both versions side by side.
- ``format_conflict_list`` -- all pending conflicts of a group.
- ``summary_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ConflictVersion, SyncConflict, SyncSummary


def _format_time(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_summary(summary: SyncSummary) -> str:
    """Format a complete sync summary as human-readable text.

    Sections are only included when they contain at least one item.

    Args:
        summary: The finished session summary.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    lines.append(f"Sync report for group '{summary.group_id}'")
    lines.append(f"Started: {summary.started_at}")
    if summary.completed_at:
        lines.append(f"Completed: {summary.completed_at}")
    lines.append(f"Result: {summary.phase.value}")
    lines.append("")

    lines.append(
        f"{summary.applied_count} applied, {summary.uploaded_count} uploaded, "
        f"{summary.conflicted_count} conflicts, {summary.failed_count} failures"
    )
    if summary.manifest_version is not None:
        lines.append(f"Manifest version: {summary.manifest_version}")
    lines.append("")

    if summary.content_skipped:
        lines.append("Content unchanged (changelog only):")
        for key in summary.content_skipped:
            lines.append(f"  {key}")
        lines.append("")

    if summary.auto_resolved:
        lines.append("Auto-resolved:")
        for conflict in summary.auto_resolved:
            lines.append(
                f"  {conflict.conflict_type.value}: {conflict.entity_type.value} "
                f"'{conflict.entity_name}'"
            )
        lines.append("")

    if summary.conflicts:
        lines.append("Needs your decision:")
        for conflict in summary.conflicts:
            lines.append(
                f"  [{conflict.conflict_id}] {conflict.conflict_type.value}: "
                f"{conflict.entity_type.value} '{conflict.entity_name}'"
            )
        lines.append("")

    if summary.checksum_mismatches:
        lines.append(
            f"Checksum mismatches: {len(summary.checksum_mismatches)} "
            "(remote content applied)"
        )
        lines.append("")

    if summary.failures:
        lines.append("Failures:")
        for failure in summary.failures:
            lines.append(
                f"  {failure.entity_key} ({failure.operation}): {failure.message}"
            )
        lines.append("")

    if summary.skipped:
        lines.append(f"Skipped: {len(summary.skipped)} remote changes")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflicts
# ------------------------------------------------------------------


def _format_version(label: str, version: ConflictVersion) -> list[str]:
    return [
        f"  {label}: {version.description}",
        f"    by {version.author_name} on {version.device_name}",
        f"    at {_format_time(version.timestamp)}",
    ]


def format_conflict(conflict: SyncConflict) -> str:
    """Format one conflict for review before choosing a resolution."""
    lines = [
        f"Conflict {conflict.conflict_id}",
        f"  {conflict.conflict_type.value} on {conflict.entity_type.value} "
        f"'{conflict.entity_name}'",
    ]
    lines.extend(_format_version("Local", conflict.local_version))
    lines.extend(_format_version("Remote", conflict.remote_version))
    return "\n".join(lines)


def format_conflict_list(conflicts: list[SyncConflict]) -> str:
    if not conflicts:
        return "No pending conflicts."
    return "\n\n".join(format_conflict(c) for c in conflicts)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def summary_to_json(summary: SyncSummary) -> dict:
    """Convert a sync summary to a structured dict for JSON serialisation.

    Args:
        summary: The session summary.

    Returns:
        Dict with session info, counts, conflicts and failures.
    """
    return {
        "group_id": summary.group_id,
        "phase": summary.phase.value,
        "started_at": summary.started_at,
        "completed_at": summary.completed_at,
        "manifest_version": summary.manifest_version,
        "counts": {
            "applied": summary.applied_count,
            "uploaded": summary.uploaded_count,
            "content_skipped": len(summary.content_skipped),
            "superseded": len(summary.superseded),
            "skipped": len(summary.skipped),
            "auto_resolved": len(summary.auto_resolved),
            "conflicts": summary.conflicted_count,
            "failures": summary.failed_count,
        },
        "conflicts": [
            c.model_dump(mode="json", by_alias=True) for c in summary.conflicts
        ],
        "failures": [f.model_dump(mode="json") for f in summary.failures],
    }
