"""Sync report formatting functions.

Provides human-readable and machine-readable output for orchestrator
operations:

- ``format_sync_report`` -- full post-run summary.
- ``format_conflict`` -- side-by-side diff of a stored conflict.
- ``format_status`` -- one-screen view of ``SyncOrchestrator.status()``.
- ``report_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

import difflib
from typing import TYPE_CHECKING, Any

from .models import SyncStatus

if TYPE_CHECKING:
    from .models import SyncConflict, SyncReport, TaskVersion

_SECTIONS = [
    (SyncStatus.CREATED, "Created"),
    (SyncStatus.UPDATED, "Updated"),
    (SyncStatus.CONFLICT_RESOLVED, "Conflicts resolved"),
    (SyncStatus.CONFLICT_STORED, "Conflicts stored for review"),
    (SyncStatus.COMPLETED, "Completed"),
    (SyncStatus.NOT_FOUND, "No counterpart"),
]

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one result.
    Existing and skipped tasks are summarised by count only.

    Args:
        report: The completed report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync report ({report.operation} from {report.source.value})"
    if report.from_cache:
        header += " (CACHED)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    s = report.summary
    lines.append(
        f"Processed {s.total} tasks: "
        f"{s.created} created, {s.updated} updated, "
        f"{s.conflicts_detected} conflicts, {s.errors} errors"
    )
    lines.append("")

    for status, title in _SECTIONS:
        matching = [r for r in report.results if r.status == status]
        if not matching:
            continue
        lines.append(f"{title}:")
        for r in matching:
            line = f"  {r.task_id}"
            if r.counterpart_id:
                line += f" -> {r.counterpart_id}"
            if r.title:
                line += f" ({r.title})"
            if r.conflict_id:
                line += f" [{r.conflict_id}]"
            lines.append(line)
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.task_id or '?'}: {r.message}")
        lines.append("")

    existing = report.count(SyncStatus.ALREADY_EXISTS)
    if existing:
        lines.append(f"Already in sync: {existing} tasks")
    if s.skipped:
        lines.append(f"Skipped: {s.skipped} tasks")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict diff
# ------------------------------------------------------------------


def _version_lines(version: TaskVersion) -> list[str]:
    lines = [f"title: {version.title}"]
    if version.due:
        lines.append(f"due: {version.due}")
    if version.tags:
        lines.append(f"tags: {', '.join(version.tags)}")
    if version.notes:
        lines.append("notes:")
        lines.extend(f"  {line}" for line in version.notes.splitlines())
    return [f"{line}\n" for line in lines]


def format_conflict(conflict: SyncConflict) -> str:
    """Format a single conflict for review.

    Shows a unified diff from the System A version to the System B
    version and the suggested strategy.
    """
    lines: list[str] = []
    lines.append(
        f"Conflict {conflict.id}: {conflict.system_a_id} <-> "
        f"{conflict.system_b_id}"
    )
    lines.append(f"Detected: {conflict.detected_at}")
    if conflict.suggested_resolution is not None:
        lines.append(f"Suggested: {conflict.suggested_resolution.value}")
    lines.append("")

    diff = difflib.unified_diff(
        _version_lines(conflict.system_a_version),
        _version_lines(conflict.system_b_version),
        fromfile=f"system_a: {conflict.system_a_id}",
        tofile=f"system_b: {conflict.system_b_id}",
    )
    diff_text = "".join(diff)
    if diff_text:
        lines.append(diff_text.rstrip())
    else:
        lines.append("(no textual differences)")

    return "\n".join(lines).rstrip()


def format_status(status: dict[str, Any]) -> str:
    """Format the dict returned by ``SyncOrchestrator.status()``."""
    stats = status.get("stats") or {}
    lines = [
        f"Lock: {'held' if status.get('lock_held') else 'free'}",
        f"Mappings: {status.get('mapping_count', 0)}",
        f"Last updated: {status.get('last_updated') or 'never'}",
        f"Unresolved conflicts: {status.get('unresolved_conflicts', 0)}",
    ]
    pending = stats.get("pending_legacy_migration", 0)
    if stats.get("migrated_legacy_mappings") or pending:
        lines.append(
            f"Legacy mappings: {stats.get('migrated_legacy_mappings', 0)} "
            f"migrated, {pending} pending"
        )
    metrics = status.get("metrics") or {}
    if metrics.get("total_runs"):
        lines.append(
            f"Runs (last {metrics['period_hours']}h): {metrics['total_runs']}, "
            f"{metrics['success_rate']:.0%} ok, "
            f"avg {metrics['average_duration']:.1f}s"
        )
        for error in metrics.get("recent_errors", [])[:3]:
            lines.append(f"  {error['operation']} failed: {error['message']}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with operation info, counts, and per-task details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {"task_id": r.task_id, "status": r.status.value}
        if r.counterpart_id:
            entry["counterpart_id"] = r.counterpart_id
        if r.match_type is not None:
            entry["match_type"] = r.match_type.value
        if r.conflict_id:
            entry["conflict_id"] = r.conflict_id
        if r.message:
            entry["message"] = r.message
        results_list.append(entry)

    return {
        "operation": report.operation,
        "source": report.source.value,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "from_cache": report.from_cache,
        "counts": report.summary.model_dump(),
        "results": results_list,
    }
