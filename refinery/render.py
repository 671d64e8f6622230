"""Plain-text and JSON rendering for the CLI."""

import json
from datetime import UTC, datetime
from typing import Any, Iterable

from refinery.models import AttemptResult, MergeRequest, MRStatus, RejectResult

ROW_FORMAT = "  {:<14} {:<12} {:<8} {:<30} {:<10} {}"
BRANCH_WIDTH = 30


def format_age(created_at: datetime, now: datetime | None = None) -> str:
    """Compact age: 45s, 12m, 3h, 2d."""
    now = now or datetime.now(UTC)
    seconds = max(0, int((now - created_at).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def _truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    return value[: width - 3] + "..."


def render_list(mrs: Iterable[MergeRequest], title: str, now: datetime | None = None) -> str:
    mrs = list(mrs)
    lines = [f"Merge queue for '{title}':", ""]
    if not mrs:
        lines.append("  (empty)")
        return "\n".join(lines)
    lines.append(ROW_FORMAT.format("ID", "STATUS", "PRIORITY", "BRANCH", "WORKER", "AGE"))
    lines.append("  " + "-" * 90)
    for mr in mrs:
        lines.append(
            ROW_FORMAT.format(
                mr.id,
                mr.display_status,
                f"P{mr.priority}",
                _truncate(mr.branch or "", BRANCH_WIDTH),
                mr.worker or "",
                format_age(mr.created_at, now),
            ).rstrip()
        )
        if mr.display_status == "blocked":
            lines.append(f"  {'':<14} (waiting on {mr.blocked_by[0]})")
        elif mr.display_status == "failed":
            lines.append(f"  {'':<14} (error: {_truncate(mr.error or '', 70)})")
    return "\n".join(lines)


def render_submitted(mr: MergeRequest) -> str:
    lines = [
        "Created merge request",
        f"  MR ID: {mr.id}",
        f"  Source: {mr.branch}",
        f"  Target: {mr.target}",
        f"  Issue: {mr.source_issue}",
    ]
    if mr.worker:
        lines.append(f"  Worker: {mr.worker}")
    lines.append(f"  Priority: P{mr.priority}")
    return "\n".join(lines)


def render_status(status: MRStatus) -> str:
    """Detailed view: state, timeline, merge details, dependencies, notes."""
    mr = status.mr
    lines = [f"Merge Request: {mr.id}", f"   {mr.title}", "", "Status"]
    lines.append(f"   State:    {mr.display_status}")
    lines.append(f"   Priority: P{mr.priority}")
    if mr.assignee:
        lines.append(f"   Assignee: {mr.assignee}")

    lines += ["", "Timeline", f"   Created: {mr.created_at.isoformat()}", f"   Updated: {mr.updated_at.isoformat()}"]
    if mr.closed_at:
        lines.append(f"   Closed:  {mr.closed_at.isoformat()}")

    details = [
        ("Branch", mr.branch),
        ("Target", mr.target),
        ("Source Issue", mr.source_issue),
        ("Worker", mr.worker),
        ("Rig", mr.rig),
        ("Merge Commit", mr.merge_commit),
        ("Close Reason", mr.close_reason),
        ("Error", mr.error),
    ]
    lines += ["", "Merge Details"]
    lines += [f"   {label + ':':<14}{value}" for label, value in details if value]

    for heading, deps in (("Waiting On", status.depends_on), ("Blocking", status.blocks)):
        if deps:
            lines += ["", heading]
            lines += [f"   {d.id}: {d.title} [{d.status}]" if d.title else f"   {d.id} [{d.status}]" for d in deps]

    if mr.notes:
        lines += ["", "Notes"]
        lines += [f"   {line}" for line in mr.notes.splitlines()]
    return "\n".join(lines)


def render_reject(result: RejectResult, reason: str) -> str:
    lines = [f"Rejected: {result.branch or result.mr_id}"]
    if result.worker:
        lines.append(f"  Worker: {result.worker}")
    lines.append(f"  Reason: {reason}")
    if result.source_issue:
        lines.append(f"  Issue:  {result.source_issue} (not closed - work not done)")
    if result.notified:
        lines.append("  Worker notified")
    elif result.notify_error:
        lines.append(f"  Worker not notified: {result.notify_error}")
    return "\n".join(lines)


def render_attempt(result: AttemptResult) -> str:
    if result.outcome == "merged":
        line = f"{result.mr_id}: merged into {result.target} at {(result.merge_commit or '')[:12]}"
        if result.released:
            line += f" (released {', '.join(result.released)})"
        return line
    if result.outcome == "failed":
        return f"{result.mr_id}: merge into {result.target} failed: {result.error}"
    if result.outcome == "skipped":
        return f"{result.mr_id}: no longer ready, skipped"
    return f"{result.mr_id}: deferred ({result.error})"


def to_json(data: Any) -> str:
    """Indented JSON; models via their to_json/model_dump."""
    return json.dumps(_jsonable(data), indent=2, ensure_ascii=False)


def _jsonable(data: Any) -> Any:
    if isinstance(data, (MergeRequest, MRStatus)):
        return data.to_json()
    if hasattr(data, "model_dump"):
        return data.model_dump(mode="json")
    if isinstance(data, (list, tuple)):
        return [_jsonable(d) for d in data]
    return data
