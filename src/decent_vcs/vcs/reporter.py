"""Result formatting functions.

Turns the frozen result models returned by ``SyncEngine`` into the
plain-text output printed by the CLI:

- ``format_push_result``, ``format_sync_result``, ``format_reset_result``,
  ``format_merge_result`` -- one summary per operation.
- ``format_status`` -- project, branch, commit and local changes.
- ``format_history`` / ``format_branches`` -- listings.
- ``result_to_json`` -- structured dict for ``--json`` style consumers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

if TYPE_CHECKING:
    from ..models import (
        Branch,
        Commit,
        FileChangeSet,
        MergeResult,
        PushResult,
        ResetResult,
        StatusReport,
        SyncResult,
    )

# ------------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------------


def _section(title: str, paths: list[str], prefix: str = "  ") -> list[str]:
    if not paths:
        return []
    return [f"{title}:", *(f"{prefix}{p}" for p in paths), ""]


def format_changes(changes: FileChangeSet) -> str:
    """Format a change set as created/modified/deleted sections.

    Returns ``"No changes"`` for an empty change set.
    """
    if changes.is_empty:
        return "No changes"

    lines: list[str] = []
    lines += _section("Created", changes.created, "  + ")
    lines += _section("Modified", changes.modified, "  ~ ")
    lines += _section("Deleted", changes.deleted, "  - ")
    lines.append(
        f"{len(changes.created)} created, {len(changes.modified)} modified, "
        f"{len(changes.deleted)} deleted"
    )
    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Operation summaries
# ------------------------------------------------------------------


def format_push_result(result: PushResult) -> str:
    if result.aborted:
        return "Aborted"
    if not result.pushed:
        return "No changes detected"

    lines = []
    if result.changes is not None:
        lines.append(format_changes(result.changes))
        lines.append("")
    verb = "Force pushed" if result.forced else "Pushed"
    lines.append(
        f"{verb} commit #{result.commit_index} to branch "
        f"\"{result.branch_name}\""
    )
    return "\n".join(lines)


def format_sync_result(result: SyncResult) -> str:
    """Summarize a sync, revert or branch switch."""
    plan = result.plan
    if result.aborted:
        return "Aborted"
    if not result.applied:
        return f"You are already on commit #{plan.current_index}"

    lines: list[str] = []
    if result.reset is not None and result.reset.applied:
        lines.append(format_reset_result(result.reset))
        lines.append("")
    lines += _section("Downloaded", sorted(plan.downloads), "  + ")
    lines += _section("Deleted", plan.deletions, "  - ")
    lines += _section("Kept (edited locally, deleted upstream)", plan.preserved)
    lines.append(f"Synced to commit #{plan.target_index}")
    return "\n".join(lines)


def format_reset_result(result: ResetResult) -> str:
    if result.aborted:
        return "Aborted"
    if not result.applied:
        return "No local changes to reset"
    return (
        f"Reset {result.changes.count} file(s) to commit "
        f"#{result.commit_index}"
    )


def format_merge_result(result: MergeResult) -> str:
    """Summarize a merge, including per-file failures."""
    if result.aborted:
        return "Aborted"
    if result.plan.is_empty:
        return (
            f"Local changes and branch \"{result.branch_name}\" are "
            "equivalent, nothing to merge"
        )

    lines: list[str] = []
    lines += _section("Moved", result.moved, "  > ")
    overrides = [p for p in result.plan.overrides if p in result.moved]
    lines += _section("Replaced (binary)", overrides, "  ! ")
    lines += _section("Merged", result.merged, "  ~ ")

    if result.failures:
        lines.append("Failed:")
        for path, reason in sorted(result.failures.items()):
            lines.append(f"  {path}: {reason}")
        lines.append("")
        lines.append(
            f"Merge of \"{result.branch_name}\" finished with "
            f"{len(result.failures)} failure(s)"
        )
    else:
        lines.append(f"Merged branch \"{result.branch_name}\"")

    if result.push is not None:
        lines.append(format_push_result(result.push))
    return "\n".join(lines)


# ------------------------------------------------------------------
# Status and listings
# ------------------------------------------------------------------


def format_status(report: StatusReport) -> str:
    lines = [
        f"Project: {report.project.name or report.project.id}",
        f"Branch: {report.branch.name}",
        f"Commit: #{report.commit.index}",
        "",
        format_changes(report.changes),
    ]
    return "\n".join(lines)


def format_history(commits: list[Commit]) -> str:
    if not commits:
        return "No commits"
    lines = []
    for commit in commits:
        when = commit.created_at.strftime("%Y-%m-%d %H:%M") if commit.created_at else ""
        counts = (
            f"+{len(commit.created_files)} "
            f"~{len(commit.modified_files)} "
            f"-{len(commit.deleted_files)}"
        )
        lines.append(
            f"#{commit.index:<5} {when:<16} {counts:<14} {commit.message}".rstrip()
        )
    return "\n".join(lines)


def format_branches(branches: list[Branch], current_id: str = "") -> str:
    if not branches:
        return "No branches"
    lines = []
    for branch in sorted(branches, key=lambda b: b.name):
        marker = "*" if branch.id == current_id else " "
        lines.append(f"{marker} {branch.name} (#{branch.commit_index})")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Machine-readable output
# ------------------------------------------------------------------


def result_to_json(result: BaseModel) -> dict:
    """Dump any result model to a JSON-compatible dict."""
    return result.model_dump(mode="json", by_alias=True)
