from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from tasklane.state.atomic import read_json_document
from tasklane.state.task_graph import Task, TaskGraph, validate_spec_id
from tasklane.workers.base import ContextBundle


def load_precomputed_context(state_root: Path, spec: str) -> dict[str, Any]:
    """Read ``specs/<spec>/context.json``; a missing file means no precomputed context."""
    return read_json_document(state_root / "specs" / validate_spec_id(spec) / "context.json") or {}


def _matches(path: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(pattern, path) for pattern in patterns)


def _file_scope(graph: TaskGraph, task: Task) -> list[str]:
    if task.files:
        return list(task.files)
    parent = graph.parent_of(task)
    return list(parent.files) if parent is not None else []


def filter_references(references: list[Mapping[str, Any]], scope: list[str]) -> list[dict[str, Any]]:
    if not scope:
        return []
    return [dict(item) for item in references if _matches(str(item.get("path", "")), scope)]


def filter_standards(standards: list[Mapping[str, Any]], scope: list[str]) -> list[dict[str, Any]]:
    selected: list[dict[str, Any]] = []
    for item in standards:
        applies_to = [str(pattern) for pattern in item.get("applies_to") or []]
        if not applies_to:
            selected.append(dict(item))
            continue
        if any(fnmatch.fnmatch(path, pattern) for path in scope for pattern in applies_to):
            selected.append(dict(item))
    return selected


def build_context_bundle(graph: TaskGraph, task: Task, context: Mapping[str, Any]) -> ContextBundle:
    scope = _file_scope(graph, task)
    summaries = context.get("task_summaries") or {}
    summary = summaries.get(task.id)
    if summary is None and task.parent is not None:
        summary = summaries.get(task.parent)
    if summary is None:
        summary = context.get("summary", "")

    if task.is_parent:
        subtasks = [
            {"id": child.id, "description": child.description, "status": child.status}
            for child in graph.children(task.id)
        ]
    else:
        subtasks = []

    return ContextBundle(
        task_id=task.id,
        description=task.description,
        subtasks=subtasks,
        context_summary=str(summary or ""),
        filtered_references=filter_references(list(context.get("references") or []), scope),
        relevant_standards=filter_standards(list(context.get("standards") or []), scope),
    )
