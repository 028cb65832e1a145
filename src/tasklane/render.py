"""Deterministic markdown projection of a task graph and recent progress.

The output depends only on its inputs: no clock, no locale and no unordered
iteration, so re-rendering unchanged state never produces a diff.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from tasklane.state.atomic import atomic_write_text
from tasklane.state.progress_log import LogEntry, ProgressLog
from tasklane.state.task_graph import Task, TaskGraph, TaskGraphStore, natural_key
from tasklane.timeutil import format_instant

logger = logging.getLogger(__name__)

CHECKBOXES = {"pass": "[x]", "blocked": "[!]", "in_progress": "[-]", "pending": "[ ]"}


def _progress_bar(percent: int) -> str:
    filled = max(0, min(10, round(percent / 10)))
    return f"[{'#' * filled}{'.' * (10 - filled)}] {percent}%"


def _wave_status(tasks: list[Task]) -> str:
    statuses = {task.status for task in tasks}
    if statuses == {"pass"}:
        return "complete"
    if statuses & {"pass", "in_progress", "blocked"}:
        return "in progress"
    return "pending"


def describe_entry(entry: LogEntry) -> str:
    payload = entry.payload
    if entry.type == "session_started":
        return "Session started"
    if entry.type == "session_ended":
        text = (
            f"Session ended ({payload.get('duration_minutes', 0)} min, "
            f"{payload.get('tasks_completed', 0)} task(s) completed)"
        )
        return f"{text} [recovered]" if payload.get("recovered") else text
    if entry.type == "task_completed":
        return f"Task {payload.get('task_id')} completed"
    if entry.type == "task_blocked":
        return f"Task {payload.get('task_id')} blocked: {payload.get('blocker')}"
    if entry.type == "debug_resolved":
        return f"Resolved: {payload.get('description')}"
    if entry.type == "scope_override":
        requested = ", ".join(str(item) for item in payload.get("requested_ids", []))
        return f"Scope override: {requested}"
    return entry.type


def _relevant(entry: LogEntry, spec: str) -> bool:
    entry_spec = entry.payload.get("spec")
    return entry_spec is None or entry_spec == spec


def _artifact_lines(task: Task) -> list[str]:
    artifacts = task.artifacts
    lines: list[str] = []
    if artifacts.files_created:
        lines.append(f"**Files Created**: {', '.join(artifacts.files_created)}")
    if artifacts.files_modified:
        lines.append(f"**Files Modified**: {', '.join(artifacts.files_modified)}")
    if artifacts.exports_added:
        lines.append(f"**Exports Added**: `{'`, `'.join(artifacts.exports_added)}`")
    if artifacts.test_files:
        lines.append(f"**Test Files**: {', '.join(artifacts.test_files)}")
    return lines


def render(graph: TaskGraph, log: Sequence[LogEntry] = (), *, recent_count: int = 10) -> str:
    graph.require_supported("Rendering")
    summary = graph.summary
    lines: list[str] = [
        f"# Tasks: {graph.spec}",
        "",
        "> Generated from tasks.json. Do not edit directly; changes are overwritten.",
        f"> Schema version: {graph.version}",
        f"> Last updated: {graph.extra.get('updated', 'n/a')}",
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Tasks | {summary['total_tasks']} |",
        f"| Completed | {summary['completed']} ({summary['overall_percent']}%) |",
        f"| In Progress | {summary['in_progress']} |",
        f"| Blocked | {summary['blocked']} |",
        f"| Pending | {summary['pending']} |",
        "",
    ]

    parents = graph.parents()
    waves = graph.waves()
    if waves:
        lines.extend(["## Waves", ""])
        for wave in waves:
            members = [task for task in parents if task.wave == wave]
            if not members:
                members = [task for task in graph.tasks if task.wave == wave]
            ids = ", ".join(task.id for task in sorted(members, key=lambda t: natural_key(t.id)))
            lines.append(f"- **Wave {wave}** [{_wave_status(members)}]: Tasks {ids}")
        lines.append("")

    lines.extend(["## Tasks", ""])
    for parent in parents:
        percent = parent.progress_percent or 0
        lines.append(f"### Task {parent.id}: {parent.description}")
        lines.append("")
        lines.append(f"**Status**: {parent.status} {_progress_bar(percent)}")
        if parent.wave is not None:
            lines.append(f"**Wave**: {parent.wave}")
        if parent.started_at:
            lines.append(f"**Started**: {parent.started_at}")
        if parent.completed_at:
            lines.append(f"**Completed**: {parent.completed_at} ({parent.duration_minutes or 0} min)")
        if parent.blocker:
            lines.append(f"**Blocker**: {parent.blocker}")
        if parent.needs_expansion:
            lines.append("**Needs expansion**: subtasks not yet planned")
        if parent.promoted_from:
            lines.append(f"**Promoted from**: {parent.promoted_from}")
        lines.append("")

        children = graph.children(parent.id)
        if children:
            lines.extend(["#### Subtasks", ""])
            for child in children:
                suffix = f" (blocked: {child.blocker})" if child.blocker else ""
                lines.append(f"- {CHECKBOXES[child.status]} **{child.id}** {child.description}{suffix}")
            lines.append("")

        artifact_lines = _artifact_lines(parent)
        if artifact_lines:
            lines.extend(["#### Artifacts", "", *artifact_lines, ""])
        lines.extend(["---", ""])

    if graph.future_tasks:
        lines.extend(["## Deferred Items", ""])
        for item in sorted(graph.future_tasks, key=lambda entry: natural_key(entry.id)):
            origin = f" _(from {item.origin})_" if item.origin else ""
            priority = f" [{item.priority}]" if item.priority else ""
            lines.append(f"- **{item.id}** ({item.destination_hint}){priority} {item.description}{origin}")
        lines.append("")

    recent = [entry for entry in log if _relevant(entry, graph.spec)]
    if recent and recent_count > 0:
        lines.extend(["## Recent Progress", ""])
        for entry in reversed(recent[-recent_count:]):
            lines.append(f"- {format_instant(entry.timestamp)} `{entry.type}` {describe_entry(entry)}")
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


@dataclass(frozen=True, slots=True)
class SyncResult:
    spec: str
    path: Path
    written: bool
    skipped_reason: str | None = None


class MarkdownSync:
    """Regenerates ``tasks.md`` next to ``tasks.json``."""

    def __init__(self, graphs: TaskGraphStore, log: ProgressLog, *, recent_count: int = 10) -> None:
        self.graphs = graphs
        self.log = log
        self.recent_count = recent_count

    def markdown_path(self, spec: str) -> Path:
        return self.graphs.spec_dir(spec) / "tasks.md"

    def sync(self, spec: str) -> SyncResult:
        path = self.markdown_path(spec)
        graph = self.graphs.load(spec)
        if not graph.supported:
            logger.debug("Skipping render of %s: version %s", spec, graph.version)
            return SyncResult(spec=spec, path=path, written=False, skipped_reason="unsupported_version")

        text = render(graph, self.log.snapshot().entries, recent_count=self.recent_count)
        try:
            current = path.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            current = None
        if current == text:
            return SyncResult(spec=spec, path=path, written=False)
        atomic_write_text(path, text)
        logger.debug("Rendered %s", path)
        return SyncResult(spec=spec, path=path, written=True)

    def sync_all(self) -> list[SyncResult]:
        return [self.sync(spec) for spec in self.graphs.list_specs()]
