from __future__ import annotations

from pathlib import Path


class TasklaneError(RuntimeError):
    """Base class for engine errors surfaced to the invoking layer."""


class ValidationError(TasklaneError):
    """Raised when an entry, task or document is rejected before any write."""


class SchemaError(ValidationError):
    """Raised when a progress entry payload misses or mistypes a required field."""


class UnsupportedVersionError(ValidationError):
    """Raised when a task graph schema version does not support the operation."""


class UnknownTaskError(ValidationError):
    """Raised when a task id is not present in the graph."""


class GraphIntegrityError(ValidationError):
    """Raised when a task graph violates its structural invariants."""


class CorruptStoreError(TasklaneError):
    """Raised when an existing store file cannot be parsed.

    Corruption is fail-stop: the store is never silently recreated, the caller
    has to restore it from an archive or checkpoint.
    """

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidTransitionError(TasklaneError):
    """Raised when a task status change is not allowed by the lifecycle."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task {task_id}: cannot move from '{current}' to '{target}'.")
        self.task_id = task_id
        self.current = current
        self.target = target


class IncompleteArtifactsError(TasklaneError):
    """Raised when a parent task is passed before its subtasks or artifacts are complete."""


class CollaboratorError(TasklaneError):
    """Raised when an external collaborator (verifier, hand-off command) cannot be run."""


class AbortThresholdExceeded(TasklaneError):
    """Raised when too many consecutive tasks end blocked during a run."""

    def __init__(self, consecutive_blocked: int, threshold: int) -> None:
        super().__init__(
            f"{consecutive_blocked} consecutive blocked tasks (threshold {threshold})."
        )
        self.consecutive_blocked = consecutive_blocked
        self.threshold = threshold


# Errors the orchestrator converts into blocked-task bookkeeping.
RECOVERABLE_STATE_ERRORS: tuple[type[TasklaneError], ...] = (
    ValidationError,
    InvalidTransitionError,
    IncompleteArtifactsError,
)
