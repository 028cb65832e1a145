"""Moves deferred items into the live graph (new wave) or the long-term backlog."""
from __future__ import annotations

import difflib
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from tasklane.collaborators import Backlog
from tasklane.errors import ValidationError
from tasklane.state.atomic import atomic_write_json, read_json_document
from tasklane.state.task_graph import DeferredItem, Task, TaskGraph
from tasklane.timeutil import format_instant, utcnow

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class DuplicateCandidate:
    item_id: str
    description: str
    matched_id: str
    matched_description: str
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "description": self.description,
            "matched_id": self.matched_id,
            "matched_description": self.matched_description,
            "similarity": round(self.similarity, 3),
        }


@dataclass(slots=True)
class GraduationResult:
    promoted: list[dict[str, Any]] = field(default_factory=list)
    graduated: list[str] = field(default_factory=list)
    duplicates: list[DuplicateCandidate] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.promoted or self.graduated)

    def to_dict(self) -> dict[str, Any]:
        return {
            "promoted": [dict(item) for item in self.promoted],
            "graduated": list(self.graduated),
            "duplicates": [candidate.to_dict() for candidate in self.duplicates],
        }


def normalize_description(text: str) -> str:
    return " ".join(_NON_WORD.sub(" ", text.lower()).split())


def similarity(left: str, right: str) -> float:
    return difflib.SequenceMatcher(None, normalize_description(left), normalize_description(right)).ratio()


def find_duplicate(graph: TaskGraph, item: DeferredItem, threshold: float) -> DuplicateCandidate | None:
    """Best match for ``item`` among already graduated work, if above ``threshold``."""
    known: list[tuple[str, str]] = []
    for record in graph.graduation_log:
        if record.get("item_id") == item.id:
            continue
        matched = str(record.get("task_id") or record.get("item_id") or "")
        known.append((matched, str(record.get("description", ""))))
    for task in graph.tasks:
        if task.promoted_from and task.promoted_from != item.id:
            known.append((task.id, task.description))

    best: DuplicateCandidate | None = None
    for matched_id, description in known:
        score = similarity(item.description, description)
        if score >= threshold and (best is None or score > best.similarity):
            best = DuplicateCandidate(
                item_id=item.id,
                description=item.description,
                matched_id=matched_id,
                matched_description=description,
                similarity=score,
            )
    return best


def allocate_task_id(graph: TaskGraph, wave: int) -> str:
    """``str(wave)`` when free, otherwise ``<wave>.2``, ``<wave>.3`` ... skipping taken ids."""
    candidate = str(wave)
    suffix = 1
    while graph.has_id(candidate):
        suffix += 1
        candidate = f"{wave}.{suffix}"
    return candidate


def _log_record(item: DeferredItem, destination: str, at: str, **extra: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "item_id": item.id,
        "description": item.description,
        "origin": item.origin,
        "destination": destination,
        "at": at,
    }
    record.update(extra)
    return record


def _promote_item(graph: TaskGraph, item: DeferredItem, wave: int, at: str) -> dict[str, Any]:
    task_id = allocate_task_id(graph, wave)
    task = Task(
        id=task_id,
        kind="parent",
        description=item.description,
        wave=wave,
        needs_expansion=True,
        promoted_from=item.id,
        files=list(item.file_context),
    )
    if item.origin:
        task.extra["origin"] = item.origin
    graph.add_task(task)
    graph.remove_deferred(item.id)
    graph.graduation_log.append(
        _log_record(item, "wave_task", at, task_id=task_id, wave=wave)
    )
    return {"item_id": item.id, "task_id": task_id, "wave": wave}


def graduate(
    graph: TaskGraph,
    backlog: Backlog,
    *,
    allow_duplicates: bool = False,
    threshold: float = 0.85,
    now: datetime | None = None,
) -> GraduationResult:
    graph.require_supported("Graduation")
    at = format_instant(now or utcnow())
    result = GraduationResult()
    wave: int | None = None

    for item in list(graph.future_tasks):
        if not allow_duplicates:
            duplicate = find_duplicate(graph, item, threshold)
            if duplicate is not None:
                result.duplicates.append(duplicate)
                logger.info(
                    "Deferred item %s resembles %s (%.2f); left for review",
                    item.id,
                    duplicate.matched_id,
                    duplicate.similarity,
                )
                continue

        if item.destination_hint == "roadmap_item":
            backlog.append_backlog_item(item.to_dict())
            graph.remove_deferred(item.id)
            graph.graduation_log.append(_log_record(item, "roadmap_item", at))
            result.graduated.append(item.id)
            continue

        if wave is None:
            wave = graph.next_wave()
        result.promoted.append(_promote_item(graph, item, wave, at))

    if result.changed:
        logger.info(
            "Graduated %d item(s) from %s: %d to wave %s, %d to backlog",
            len(result.promoted) + len(result.graduated),
            graph.spec,
            len(result.promoted),
            wave if wave is not None else "-",
            len(result.graduated),
        )
    return result


def promote(graph: TaskGraph, item_id: str, wave: int, *, now: datetime | None = None) -> dict[str, Any]:
    """Operator promotion of one deferred item into an explicit wave."""
    graph.require_supported("Promotion")
    if wave < 1:
        raise ValidationError(f"Wave numbers start at 1, got {wave}.")
    item = graph.find_deferred(item_id)
    if item is None:
        raise ValidationError(f"Unknown deferred item in {graph.spec}: {item_id}")
    promoted = _promote_item(graph, item, wave, format_instant(now or utcnow()))
    logger.info("Promoted %s to task %s (wave %d)", item_id, promoted["task_id"], wave)
    return promoted


def promote_wave(graph: TaskGraph, wave: int, *, now: datetime | None = None) -> list[dict[str, Any]]:
    """Promote every deferred item whose priority is ``wave_<wave>``."""
    priority = f"wave_{wave}"
    selected = [item.id for item in graph.future_tasks if item.priority == priority]
    return [promote(graph, item_id, wave, now=now) for item_id in selected]


class FileBacklog(Backlog):
    """Long-term backlog kept in ``backlog/roadmap.json``."""

    def __init__(self, state_root: Path) -> None:
        self.path = state_root / "backlog" / "roadmap.json"

    def items(self) -> list[dict[str, Any]]:
        data = read_json_document(self.path)
        if data is None:
            return []
        return [dict(item) for item in data.get("items", []) if isinstance(item, dict)]

    def append_backlog_item(self, item: Mapping[str, Any]) -> None:
        items = self.items()
        record = dict(item)
        # Retried graduations resend the same item.
        if record in items:
            return
        items.append(record)
        atomic_write_json(self.path, {"version": "1", "items": items})
        logger.debug("Backlog item %s stored", record.get("id"))
