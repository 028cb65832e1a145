from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from tasklane.state.task_graph import Artifacts

WORKER_STATUSES = ("pass", "fail", "blocked")


class WorkerExecutionError(RuntimeError):
    """Raised when a worker cannot produce a result."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerTimeoutError(WorkerExecutionError):
    """Raised when a worker exceeds the configured timeout."""


class WorkerProcessError(WorkerExecutionError):
    """Raised when a worker process cannot be started or talked to."""


@dataclass(slots=True)
class ContextBundle:
    """Everything a worker is given for one task, and nothing more."""

    task_id: str
    description: str
    subtasks: list[dict[str, Any]] = field(default_factory=list)
    context_summary: str = ""
    filtered_references: list[dict[str, Any]] = field(default_factory=list)
    relevant_standards: list[dict[str, Any]] = field(default_factory=list)

    def to_contract(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "description": self.description,
            "subtasks": [dict(item) for item in self.subtasks],
            "contextSummary": self.context_summary,
            "filteredReferences": [dict(item) for item in self.filtered_references],
            "relevantStandards": [dict(item) for item in self.relevant_standards],
        }


def _strings(payload: Mapping[str, Any], *keys: str) -> list[str]:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        if not isinstance(value, list):
            raise WorkerExecutionError(f"Worker result field '{key}' must be a list.", retriable=True)
        return [str(item) for item in value]
    return []


@dataclass(slots=True)
class WorkerResult:
    status: str
    files_modified: list[str] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    test_results: dict[str, Any] = field(default_factory=dict)
    blocker: str | None = None
    notes: str | None = None
    exports_added: list[str] = field(default_factory=list)
    test_files: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.status not in WORKER_STATUSES:
            raise WorkerExecutionError(
                f"Worker returned unknown status {self.status!r}.", retriable=True
            )

    def artifacts(self) -> Artifacts:
        return Artifacts(
            files_created=list(self.files_created),
            files_modified=list(self.files_modified),
            exports_added=list(self.exports_added),
            test_files=list(self.test_files),
        )

    def to_contract(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "filesModified": list(self.files_modified),
            "filesCreated": list(self.files_created),
            "testResults": dict(self.test_results),
            "blocker": self.blocker,
            "notes": self.notes,
            "exportsAdded": list(self.exports_added),
            "testFiles": list(self.test_files),
        }

    @classmethod
    def from_contract(cls, payload: Mapping[str, Any]) -> WorkerResult:
        if not isinstance(payload, Mapping):
            raise WorkerExecutionError("Worker result must be an object.", retriable=True)
        test_results = payload.get("testResults", payload.get("test_results")) or {}
        if not isinstance(test_results, Mapping):
            test_results = {"summary": str(test_results)}
        blocker = payload.get("blocker")
        notes = payload.get("notes")
        return cls(
            status=str(payload.get("status", "")),
            files_modified=_strings(payload, "filesModified", "files_modified"),
            files_created=_strings(payload, "filesCreated", "files_created"),
            test_results=dict(test_results),
            blocker=str(blocker) if blocker else None,
            notes=str(notes) if notes else None,
            exports_added=_strings(payload, "exportsAdded", "exports_added"),
            test_files=_strings(payload, "testFiles", "test_files"),
        )


class Worker(ABC):
    """Single-use executor for one task.

    Implementations keep no state between calls; the orchestrator creates a
    fresh instance for every attempt.
    """

    name: str = "worker"

    @abstractmethod
    async def execute(self, bundle: ContextBundle) -> WorkerResult:
        """Run the task described by ``bundle`` and return a structured result."""
