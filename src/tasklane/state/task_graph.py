"""Canonical task graph: parents, subtasks, deferred items and derived summary."""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from tasklane.errors import (
    CorruptStoreError,
    GraphIntegrityError,
    IncompleteArtifactsError,
    InvalidTransitionError,
    UnknownTaskError,
    UnsupportedVersionError,
    ValidationError,
)
from tasklane.state.atomic import atomic_write_json, read_json_document
from tasklane.timeutil import format_instant, minutes_between, parse_instant, utcnow

logger = logging.getLogger(__name__)

TASK_STATUSES = ("pending", "in_progress", "pass", "blocked")
TASK_KINDS = ("parent", "subtask")
DESTINATION_HINTS = ("wave_task", "roadmap_item")
SUPPORTED_MAJORS = ("3", "4")
DEFAULT_VERSION = "4.0"

ALLOWED_TRANSITIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("pending", "in_progress"),
        ("in_progress", "pass"),
        ("in_progress", "blocked"),
        ("blocked", "in_progress"),
    }
)

_SPEC_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_TASK_KEYS = {
    "id",
    "type",
    "kind",
    "description",
    "status",
    "attempts",
    "started_at",
    "completed_at",
    "duration_minutes",
    "notes",
    "blocker",
    "artifacts",
    "wave",
    "needs_expansion",
    "promoted_from",
    "progress_percent",
    "parent",
    "files",
}
_DEFERRED_KEYS = {"id", "description", "origin", "destination_hint", "file_context", "priority"}


def natural_key(task_id: str) -> tuple[tuple[int, int, str], ...]:
    """Sort key ordering "2" < "2.1" < "2.10" < "10"."""
    parts: list[tuple[int, int, str]] = []
    for part in task_id.split("."):
        if part.isdigit():
            parts.append((0, int(part), ""))
        else:
            parts.append((1, 0, part))
    return tuple(parts)


def version_major(version: str) -> str:
    return str(version).split(".", 1)[0].strip()


def is_supported_version(version: str) -> bool:
    return version_major(version) in SUPPORTED_MAJORS


def validate_spec_id(spec: str) -> str:
    if not spec or not _SPEC_ID.match(spec):
        raise ValidationError(f"Invalid spec identifier: {spec!r}")
    return spec


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _string_list(value: Any, *, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{where} must be a list of strings.")
    return list(value)


@dataclass(slots=True)
class Artifacts:
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    exports_added: list[str] = field(default_factory=list)
    test_files: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.files_created or self.files_modified or self.exports_added or self.test_files)

    def merge(self, other: Artifacts) -> Artifacts:
        return Artifacts(
            files_created=_unique([*self.files_created, *other.files_created]),
            files_modified=_unique([*self.files_modified, *other.files_modified]),
            exports_added=_unique([*self.exports_added, *other.exports_added]),
            test_files=_unique([*self.test_files, *other.test_files]),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
            "exports_added": list(self.exports_added),
            "test_files": list(self.test_files),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Artifacts:
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ValidationError("artifacts must be an object.")
        return cls(
            files_created=_string_list(data.get("files_created"), where="artifacts.files_created"),
            files_modified=_string_list(data.get("files_modified"), where="artifacts.files_modified"),
            exports_added=_string_list(data.get("exports_added"), where="artifacts.exports_added"),
            test_files=_string_list(data.get("test_files"), where="artifacts.test_files"),
        )


@dataclass(slots=True)
class Task:
    id: str
    kind: str = "parent"
    description: str = ""
    status: str = "pending"
    attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    duration_minutes: int | None = None
    notes: str | None = None
    blocker: str | None = None
    artifacts: Artifacts = field(default_factory=Artifacts)
    wave: int | None = None
    needs_expansion: bool = False
    promoted_from: str | None = None
    progress_percent: int | None = None
    parent: str | None = None
    files: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_parent(self) -> bool:
        return self.kind == "parent"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.kind,
            "description": self.description,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.parent is not None:
            data["parent"] = self.parent
        optional = {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_minutes": self.duration_minutes,
            "notes": self.notes,
            "blocker": self.blocker,
            "wave": self.wave,
            "promoted_from": self.promoted_from,
            "progress_percent": self.progress_percent,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.needs_expansion:
            data["needs_expansion"] = True
        if self.files:
            data["files"] = list(self.files)
        if not self.artifacts.is_empty():
            data["artifacts"] = self.artifacts.to_dict()
        for key in sorted(self.extra):
            data.setdefault(key, self.extra[key])
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Task:
        task_id = str(data["id"])
        kind = data.get("type") or data.get("kind")
        if kind is None:
            kind = "subtask" if "." in task_id else "parent"
        if kind not in TASK_KINDS:
            raise ValidationError(f"Task {task_id}: unknown type {kind!r}.")
        status = data.get("status", "pending")
        if status not in TASK_STATUSES:
            raise ValidationError(f"Task {task_id}: unknown status {status!r}.")
        parent = data.get("parent")
        if kind == "subtask" and parent is None:
            parent = task_id.rsplit(".", 1)[0] if "." in task_id else None
        wave = data.get("wave")
        return cls(
            id=task_id,
            kind=kind,
            description=str(data.get("description", "")),
            status=status,
            attempts=int(data.get("attempts") or 0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration_minutes=data.get("duration_minutes"),
            notes=data.get("notes"),
            blocker=data.get("blocker"),
            artifacts=Artifacts.from_dict(data.get("artifacts")),
            wave=int(wave) if wave is not None else None,
            needs_expansion=bool(data.get("needs_expansion", False)),
            promoted_from=data.get("promoted_from"),
            progress_percent=data.get("progress_percent"),
            parent=str(parent) if parent is not None else None,
            files=_string_list(data.get("files"), where=f"Task {task_id} files"),
            extra={key: value for key, value in data.items() if key not in _TASK_KEYS},
        )


@dataclass(slots=True)
class DeferredItem:
    id: str
    description: str
    origin: str = ""
    destination_hint: str = "wave_task"
    file_context: list[str] = field(default_factory=list)
    priority: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "origin": self.origin,
            "destination_hint": self.destination_hint,
            "file_context": list(self.file_context),
        }
        if self.priority is not None:
            data["priority"] = self.priority
        for key in sorted(self.extra):
            data.setdefault(key, self.extra[key])
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeferredItem:
        item_id = str(data["id"])
        hint = data.get("destination_hint", "wave_task")
        if hint not in DESTINATION_HINTS:
            raise ValidationError(f"Deferred item {item_id}: unknown destination_hint {hint!r}.")
        return cls(
            id=item_id,
            description=str(data.get("description", "")),
            origin=str(data.get("origin") or ""),
            destination_hint=hint,
            file_context=_string_list(data.get("file_context"), where=f"Deferred item {item_id}"),
            priority=data.get("priority"),
            extra={key: value for key, value in data.items() if key not in _DEFERRED_KEYS},
        )


def recompute_summary(tasks: Iterable[Task]) -> dict[str, int]:
    """Derive summary counters from the task collection."""
    items = list(tasks)
    counts = {status: 0 for status in TASK_STATUSES}
    parents = 0
    for task in items:
        counts[task.status] += 1
        if task.is_parent:
            parents += 1
    total = len(items)
    return {
        "total_tasks": total,
        "parent_tasks": parents,
        "subtasks": total - parents,
        "completed": counts["pass"],
        "in_progress": counts["in_progress"],
        "blocked": counts["blocked"],
        "pending": counts["pending"],
        "overall_percent": (counts["pass"] * 100) // total if total else 0,
    }


@dataclass(slots=True)
class TaskGraph:
    """Tasks held in an ordered arena with an id index and a children index."""

    spec: str
    version: str = DEFAULT_VERSION
    tasks: list[Task] = field(default_factory=list)
    future_tasks: list[DeferredItem] = field(default_factory=list)
    graduation_log: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    _index: dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)
    _children: dict[str, list[str]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        self.reindex()
        self.summary = recompute_summary(self.tasks)

    # ----- structure -----

    def reindex(self) -> None:
        self._index = {}
        self._children = {}
        for position, task in enumerate(self.tasks):
            if task.id in self._index:
                raise GraphIntegrityError(f"Duplicate task id in {self.spec}: {task.id}")
            self._index[task.id] = position
            if task.parent is not None:
                self._children.setdefault(task.parent, []).append(task.id)

    @property
    def supported(self) -> bool:
        return is_supported_version(self.version)

    def require_supported(self, operation: str) -> None:
        if not self.supported:
            raise UnsupportedVersionError(
                f"{operation} is not available for task graph version {self.version!r} "
                f"(supported majors: {', '.join(SUPPORTED_MAJORS)})."
            )

    def find(self, task_id: str) -> Task | None:
        position = self._index.get(task_id)
        return self.tasks[position] if position is not None else None

    def get(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise UnknownTaskError(f"Unknown task id in {self.spec}: {task_id}")
        return task

    def has_id(self, item_id: str) -> bool:
        return item_id in self._index or any(item.id == item_id for item in self.future_tasks)

    def children(self, parent_id: str) -> list[Task]:
        ids = sorted(self._children.get(parent_id, []), key=natural_key)
        return [self.tasks[self._index[child_id]] for child_id in ids]

    def parent_of(self, task: Task) -> Task | None:
        if task.parent is None:
            return None
        return self.find(task.parent)

    def parents(self) -> list[Task]:
        return sorted((task for task in self.tasks if task.is_parent), key=lambda t: natural_key(t.id))

    def waves(self) -> list[int]:
        return sorted({task.wave for task in self.tasks if task.wave is not None})

    def next_wave(self) -> int:
        """Lowest positive wave number that is neither recorded nor taken as a task id."""
        used = set(self.waves())
        candidate = 1
        while candidate in used or self.has_id(str(candidate)):
            candidate += 1
        return candidate

    def validate(self) -> None:
        self.reindex()
        for task in self.tasks:
            if task.kind == "subtask":
                parent = self.find(task.parent) if task.parent else None
                if parent is None:
                    raise GraphIntegrityError(f"Subtask {task.id} references missing parent {task.parent}.")
                if not parent.is_parent:
                    raise GraphIntegrityError(f"Subtask {task.id} has non-parent parent {parent.id}.")
            elif task.parent is not None:
                raise GraphIntegrityError(f"Parent task {task.id} cannot itself have a parent.")
        future_ids = [item.id for item in self.future_tasks]
        if len(set(future_ids)) != len(future_ids):
            raise GraphIntegrityError(f"Duplicate deferred item ids in {self.spec}.")
        clashes = sorted(set(future_ids) & set(self._index), key=natural_key)
        if clashes:
            raise GraphIntegrityError(f"Deferred item ids collide with tasks: {', '.join(clashes)}")

    def add_task(self, task: Task) -> Task:
        self.require_supported("Adding tasks")
        if self.has_id(task.id):
            raise GraphIntegrityError(f"Task id already in use in {self.spec}: {task.id}")
        if task.kind == "subtask":
            parent = self.find(task.parent) if task.parent else None
            if parent is None or not parent.is_parent:
                raise GraphIntegrityError(f"Subtask {task.id} needs an existing parent task.")
            if parent.status == "pass":
                raise GraphIntegrityError(f"Parent {parent.id} already passed; reopen it first.")
        self.tasks.append(task)
        self._index[task.id] = len(self.tasks) - 1
        if task.parent is not None:
            self._children.setdefault(task.parent, []).append(task.id)
            self._refresh_parent(task.parent, None)
        self.summary = recompute_summary(self.tasks)
        return task

    # ----- lifecycle -----

    def set_status(
        self,
        task_id: str,
        status: str,
        *,
        now: datetime | None = None,
        notes: str | None = None,
        blocker: str | None = None,
    ) -> Task:
        self.require_supported("Status updates")
        if status not in TASK_STATUSES:
            raise ValidationError(f"Unknown task status: {status!r}")
        task = self.get(task_id)
        if (task.status, status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransitionError(task.id, task.status, status)
        if status == "pass" and task.is_parent:
            self._check_parent_completion(task)

        at = now or utcnow()
        stamp = format_instant(at)
        if status == "in_progress":
            task.attempts += 1
            task.blocker = None
            if task.started_at is None:
                task.started_at = stamp
        elif status == "pass":
            task.completed_at = stamp
            task.blocker = None
            if task.started_at is not None:
                task.duration_minutes = minutes_between(parse_instant(task.started_at), at)
        elif status == "blocked":
            task.blocker = blocker or notes or "blocked without reason"
        task.status = status
        if notes:
            task.notes = notes

        if task.parent is not None:
            self._refresh_parent(task.parent, at)
        elif task.is_parent:
            task.progress_percent = self._percent(task.id, task.progress_percent)
        self.summary = recompute_summary(self.tasks)
        logger.debug("Task %s/%s -> %s", self.spec, task.id, status)
        return task

    def reopen(self, task_id: str, reason: str, *, now: datetime | None = None) -> Task:
        """Operator action moving a passed task back to in_progress."""
        self.require_supported("Reopening tasks")
        task = self.get(task_id)
        if task.status != "pass":
            raise InvalidTransitionError(task.id, task.status, "in_progress")
        self._reopen_one(task, reason)
        parent = self.parent_of(task)
        if parent is not None and parent.status == "pass":
            self._reopen_one(parent, f"subtask {task.id} reopened: {reason}")
        if parent is not None:
            self._refresh_parent(parent.id, now)
        self.summary = recompute_summary(self.tasks)
        logger.info("Reopened task %s/%s: %s", self.spec, task.id, reason)
        return task

    def _reopen_one(self, task: Task, reason: str) -> None:
        task.status = "in_progress"
        task.attempts += 1
        task.completed_at = None
        task.duration_minutes = None
        task.notes = reason

    def set_artifacts(self, task_id: str, artifacts: Artifacts, *, merge: bool = False) -> Task:
        self.require_supported("Artifact updates")
        task = self.get(task_id)
        task.artifacts = task.artifacts.merge(artifacts) if merge else artifacts
        return task

    def _check_parent_completion(self, task: Task) -> None:
        unfinished = [child.id for child in self.children(task.id) if child.status != "pass"]
        if unfinished:
            raise IncompleteArtifactsError(
                f"Task {task.id} has unfinished subtasks: {', '.join(unfinished)}"
            )
        if task.artifacts.is_empty():
            raise IncompleteArtifactsError(f"Task {task.id} cannot pass without artifacts.")

    def _percent(self, parent_id: str, fallback: int | None) -> int | None:
        children = self.children(parent_id)
        if not children:
            return fallback
        passed = sum(1 for child in children if child.status == "pass")
        return (passed * 100) // len(children)

    def _refresh_parent(self, parent_id: str, now: datetime | None) -> None:
        parent = self.find(parent_id)
        if parent is None:
            return
        parent.progress_percent = self._percent(parent_id, parent.progress_percent)
        started = any(child.status != "pending" for child in self.children(parent_id))
        if started and parent.status == "pending":
            parent.status = "in_progress"
            parent.attempts += 1
            if parent.started_at is None:
                parent.started_at = format_instant(now or utcnow())

    # ----- deferred items -----

    def find_deferred(self, item_id: str) -> DeferredItem | None:
        return next((item for item in self.future_tasks if item.id == item_id), None)

    def next_deferred_id(self) -> str:
        highest = 0
        for item in self.future_tasks:
            prefix, _, number = item.id.rpartition("-")
            if prefix == "future" and number.isdigit():
                highest = max(highest, int(number))
        candidate = highest + 1
        while self.has_id(f"future-{candidate}"):
            candidate += 1
        return f"future-{candidate}"

    def add_deferred(self, item: DeferredItem) -> DeferredItem:
        self.require_supported("Deferring items")
        if not item.id:
            item.id = self.next_deferred_id()
        if self.has_id(item.id):
            raise GraphIntegrityError(f"Deferred item id already in use in {self.spec}: {item.id}")
        self.future_tasks.append(item)
        return item

    def remove_deferred(self, item_id: str) -> DeferredItem:
        item = self.find_deferred(item_id)
        if item is None:
            raise UnknownTaskError(f"Unknown deferred item in {self.spec}: {item_id}")
        self.future_tasks.remove(item)
        return item

    def future_by_priority(self) -> dict[str, list[DeferredItem]]:
        grouped: dict[str, list[DeferredItem]] = {}
        for item in sorted(self.future_tasks, key=lambda entry: natural_key(entry.id)):
            grouped.setdefault(item.priority or "unprioritized", []).append(item)
        return dict(sorted(grouped.items()))

    # ----- views -----

    def status_overview(self) -> dict[str, Any]:
        ordered = sorted(self.tasks, key=lambda task: natural_key(task.id))
        current = next((task for task in ordered if task.status == "in_progress" and not task.is_parent), None)
        if current is None:
            current = next((task for task in ordered if task.status == "in_progress"), None)
        next_task = next(
            (task for task in ordered if task.status == "pending" and not task.is_parent),
            None,
        )
        if next_task is None:
            next_task = next((task for task in ordered if task.status == "pending"), None)
        completed = sorted(
            (task for task in self.tasks if task.status == "pass" and task.completed_at),
            key=lambda task: (task.completed_at or "", natural_key(task.id)),
        )
        return {
            "spec": self.spec,
            "version": self.version,
            "summary": dict(self.summary),
            "current_task": _brief(current),
            "next_task": _brief(next_task),
            "recently_completed": [_brief(task) for task in reversed(completed[-3:])],
            "future_tasks": len(self.future_tasks),
        }

    def progress_line(self) -> str:
        return (
            f"Spec: {self.spec} | Progress: {self.summary['overall_percent']}% "
            f"({self.summary['completed']}/{self.summary['total_tasks']} tasks)"
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": self.version, "spec": self.spec}
        for key in sorted(self.extra):
            data[key] = self.extra[key]
        data["tasks"] = [task.to_dict() for task in self.tasks]
        data["future_tasks"] = [item.to_dict() for item in self.future_tasks]
        if self.graduation_log:
            data["graduation_log"] = [dict(record) for record in self.graduation_log]
        data["summary"] = recompute_summary(self.tasks)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskGraph:
        raw_tasks = data.get("tasks", [])
        raw_future = data.get("future_tasks", [])
        if not isinstance(raw_tasks, list) or not isinstance(raw_future, list):
            raise ValidationError("tasks and future_tasks must be lists.")
        try:
            tasks = [Task.from_dict(item) for item in raw_tasks]
            future = [DeferredItem.from_dict(item) for item in raw_future]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed task graph entry: {exc}") from exc
        graduation_log = data.get("graduation_log") or []
        if not isinstance(graduation_log, list):
            raise ValidationError("graduation_log must be a list.")
        reserved = {"version", "spec", "tasks", "future_tasks", "graduation_log", "summary"}
        return cls(
            spec=str(data.get("spec", "")),
            version=str(data.get("version", DEFAULT_VERSION)),
            tasks=tasks,
            future_tasks=future,
            graduation_log=[dict(record) for record in graduation_log],
            extra={key: value for key, value in data.items() if key not in reserved},
        )


def _brief(task: Task | None) -> dict[str, Any] | None:
    if task is None:
        return None
    return {"id": task.id, "description": task.description, "status": task.status}


@dataclass(frozen=True, slots=True)
class TaskIndexEntry:
    id: str
    kind: str
    status: str
    parent: str | None
    wave: int | None
    needs_expansion: bool
    files: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class TaskIndex:
    """Routing view of a graph without descriptions or artifacts."""

    spec: str
    version: str
    entries: tuple[TaskIndexEntry, ...]
    summary: Mapping[str, int]

    @property
    def supported(self) -> bool:
        return is_supported_version(self.version)

    def get(self, task_id: str) -> TaskIndexEntry | None:
        return next((entry for entry in self.entries if entry.id == task_id), None)

    def children(self, parent_id: str) -> list[TaskIndexEntry]:
        found = [entry for entry in self.entries if entry.parent == parent_id]
        return sorted(found, key=lambda entry: natural_key(entry.id))

    def parent_id(self, task_id: str) -> str | None:
        entry = self.get(task_id)
        if entry is None:
            return None
        return entry.id if entry.kind == "parent" else entry.parent


class TaskGraphStore:
    """Owns ``specs/<spec>/tasks.json`` files under the state root."""

    def __init__(self, state_root: Path, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.state_root = state_root
        self.specs_dir = state_root / "specs"
        self._clock = clock

    def spec_dir(self, spec: str) -> Path:
        return self.specs_dir / validate_spec_id(spec)

    def path(self, spec: str) -> Path:
        return self.spec_dir(spec) / "tasks.json"

    def exists(self, spec: str) -> bool:
        return self.path(spec).exists()

    def list_specs(self) -> list[str]:
        if not self.specs_dir.exists():
            return []
        return sorted(child.name for child in self.specs_dir.iterdir() if (child / "tasks.json").exists())

    def create(self, spec: str, *, version: str = DEFAULT_VERSION) -> TaskGraph:
        if self.exists(spec):
            raise ValidationError(f"Task graph for {spec} already exists.")
        stamp = format_instant(self._clock())
        return TaskGraph(spec=validate_spec_id(spec), version=version, extra={"created": stamp})

    def _read(self, spec: str) -> dict[str, Any]:
        path = self.path(spec)
        data = read_json_document(path)
        if data is None:
            raise ValidationError(f"No task graph for spec {spec} at {path}")
        return data

    def load(self, spec: str) -> TaskGraph:
        data = self._read(spec)
        try:
            graph = TaskGraph.from_dict(data)
        except ValidationError as exc:
            raise CorruptStoreError(f"Task graph {self.path(spec)} is malformed: {exc}", path=self.path(spec)) from exc
        if not graph.spec:
            graph.spec = spec
        if graph.supported:
            graph.validate()
        return graph

    def load_index(self, spec: str) -> TaskIndex:
        data = self._read(spec)
        raw_tasks = data.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise CorruptStoreError(f"Task graph {self.path(spec)} is malformed.", path=self.path(spec))
        entries: list[TaskIndexEntry] = []
        for raw in raw_tasks:
            try:
                task = Task.from_dict(raw)
            except (KeyError, TypeError, ValidationError) as exc:
                raise CorruptStoreError(
                    f"Task graph {self.path(spec)} is malformed: {exc}", path=self.path(spec)
                ) from exc
            entries.append(
                TaskIndexEntry(
                    id=task.id,
                    kind=task.kind,
                    status=task.status,
                    parent=task.parent,
                    wave=task.wave,
                    needs_expansion=task.needs_expansion,
                    files=tuple(task.files),
                )
            )
        tasks = [Task(id=e.id, kind=e.kind, status=e.status, parent=e.parent) for e in entries]
        return TaskIndex(
            spec=str(data.get("spec") or spec),
            version=str(data.get("version", DEFAULT_VERSION)),
            entries=tuple(entries),
            summary=recompute_summary(tasks),
        )

    def save(self, graph: TaskGraph) -> bool:
        """Persist the graph; returns False when the stored content is already identical."""
        if graph.supported:
            graph.validate()
        graph.summary = recompute_summary(graph.tasks)
        path = self.path(graph.spec)
        document = graph.to_dict()
        current = read_json_document(path)
        if current is not None and _without_updated(current) == _without_updated(document):
            logger.debug("Task graph %s unchanged; skipping write", graph.spec)
            return False
        document["updated"] = format_instant(self._clock())
        graph.extra["updated"] = document["updated"]
        atomic_write_json(path, document)
        return True


def _without_updated(document: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in document.items() if key != "updated"}
