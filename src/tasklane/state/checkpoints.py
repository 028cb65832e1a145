from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from tasklane.errors import CorruptStoreError, ValidationError
from tasklane.state.atomic import atomic_write_json, read_json_document
from tasklane.timeutil import format_instant

logger = logging.getLogger(__name__)

_NAME_FORMAT = "%Y%m%dT%H%M%S%fZ"


def _precise_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    name: str
    created_at: str
    external_revision: str = "none"
    session_duration_minutes: int = 0
    tasks_completed: int = 0
    reason: str = "session_end"
    spec: str | None = None
    resume: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at,
            "external_revision": self.external_revision,
            "session_duration_minutes": self.session_duration_minutes,
            "tasks_completed": self.tasks_completed,
            "reason": self.reason,
            "spec": self.spec,
            "resume": dict(self.resume),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        return cls(
            name=str(data["name"]),
            created_at=str(data["created_at"]),
            external_revision=str(data.get("external_revision") or "none"),
            session_duration_minutes=int(data.get("session_duration_minutes") or 0),
            tasks_completed=int(data.get("tasks_completed") or 0),
            reason=str(data.get("reason") or "session_end"),
            spec=data.get("spec"),
            resume=dict(data.get("resume") or {}),
        )

    @property
    def remaining_plan(self) -> list[str]:
        return [str(item) for item in self.resume.get("remaining", [])]


class CheckpointManager:
    """Write-once checkpoint files named by creation time, bounded to ``retain`` files."""

    def __init__(
        self,
        state_root: Path,
        *,
        retain: int = 10,
        clock: Callable[[], datetime] = _precise_now,
    ) -> None:
        if retain < 1:
            raise ValidationError("Checkpoint retention must be at least 1.")
        self.directory = state_root / "state" / "checkpoints"
        self.retain = retain
        self._clock = clock

    def _paths(self) -> list[Path]:
        if not self.directory.exists():
            return []
        # Names sort chronologically; dot-prefixed files are in-flight temp writes.
        return sorted(path for path in self.directory.glob("*.json") if not path.name.startswith("."))

    def create(
        self,
        *,
        external_revision: str = "none",
        session_duration_minutes: int = 0,
        tasks_completed: int = 0,
        reason: str = "session_end",
        spec: str | None = None,
        resume: Mapping[str, Any] | None = None,
    ) -> Checkpoint:
        instant = self._clock()
        path = self.directory / f"{instant.strftime(_NAME_FORMAT)}.json"
        while path.exists():
            instant += timedelta(microseconds=1)
            path = self.directory / f"{instant.strftime(_NAME_FORMAT)}.json"

        checkpoint = Checkpoint(
            name=path.stem,
            created_at=format_instant(instant),
            external_revision=external_revision,
            session_duration_minutes=session_duration_minutes,
            tasks_completed=tasks_completed,
            reason=reason,
            spec=spec,
            resume=dict(resume or {}),
        )
        atomic_write_json(path, checkpoint.to_dict())
        logger.info("Checkpoint %s written (%s)", checkpoint.name, reason)
        self._prune()
        return checkpoint

    def _prune(self) -> None:
        paths = self._paths()
        for stale in paths[: max(0, len(paths) - self.retain)]:
            stale.unlink(missing_ok=True)
            logger.debug("Dropped checkpoint %s", stale.name)

    def list(self) -> list[Checkpoint]:
        """Checkpoints newest first."""
        return [self.load(path.stem) for path in reversed(self._paths())]

    def latest(self) -> Checkpoint | None:
        paths = self._paths()
        return self.load(paths[-1].stem) if paths else None

    def load(self, name: str) -> Checkpoint:
        path = self.directory / f"{name}.json"
        data = read_json_document(path)
        if data is None:
            raise ValidationError(f"Unknown checkpoint: {name}")
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStoreError(f"Checkpoint {path} is malformed: {exc}", path=path) from exc
