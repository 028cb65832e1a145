"""Session lifecycle: explicit SessionState passed into and returned from start/end."""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from tasklane.errors import CorruptStoreError, ValidationError
from tasklane.state.atomic import atomic_write_json, read_json_document
from tasklane.state.checkpoints import Checkpoint, CheckpointManager
from tasklane.state.progress_log import ArchiveResult, EntryType, LogEntry, ProgressLog
from tasklane.state.task_graph import TaskGraphStore
from tasklane.timeutil import format_instant, minutes_between, parse_instant, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionState:
    started_at: str
    active_task_id: str | None = None
    spec: str | None = None
    flags: dict[str, Any] = field(default_factory=dict)

    @property
    def started(self) -> datetime:
        return parse_instant(self.started_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "active_task_id": self.active_task_id,
            "spec": self.spec,
            "flags": dict(self.flags),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionState:
        return cls(
            started_at=str(data["started_at"]),
            active_task_id=data.get("active_task_id"),
            spec=data.get("spec"),
            flags=dict(data.get("flags") or {}),
        )


@dataclass(slots=True)
class StartupBriefing:
    recent_entries: list[LogEntry] = field(default_factory=list)
    active_task: dict[str, Any] | None = None
    next_task: dict[str, Any] | None = None
    progress_line: str | None = None
    latest_checkpoint: str | None = None
    recovered_session: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "recent_entries": [entry.to_dict() for entry in self.recent_entries],
            "active_task": self.active_task,
            "next_task": self.next_task,
            "progress_line": self.progress_line,
            "latest_checkpoint": self.latest_checkpoint,
            "recovered_session": self.recovered_session,
        }


@dataclass(slots=True)
class SessionSummary:
    duration_minutes: int
    tasks_completed: int
    checkpoint: Checkpoint
    archive: ArchiveResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "duration_minutes": self.duration_minutes,
            "tasks_completed": self.tasks_completed,
            "checkpoint": self.checkpoint.name,
            "archived_entries": self.archive.moved,
        }


class SessionManager:
    def __init__(
        self,
        state_root: Path,
        *,
        log: ProgressLog,
        graphs: TaskGraphStore,
        checkpoints: CheckpointManager,
        recent_count: int = 3,
        revision: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.path = state_root / "state" / "session.json"
        self.log = log
        self.graphs = graphs
        self.checkpoints = checkpoints
        self.recent_count = recent_count
        self._revision = revision
        self._clock = clock

    def current(self) -> SessionState | None:
        data = read_json_document(self.path)
        if data is None:
            return None
        try:
            return SessionState.from_dict(data)
        except (KeyError, TypeError) as exc:
            raise CorruptStoreError(f"Session record {self.path} is malformed: {exc}", path=self.path) from exc

    def _completed_since(self, started: datetime) -> int:
        return sum(
            1
            for entry in self.log.entries_of_type(EntryType.TASK_COMPLETED)
            if entry.timestamp >= started
        )

    def _has_matching_end(self, state: SessionState) -> bool:
        return any(
            entry.payload.get("started_at") == state.started_at
            for entry in self.log.entries_of_type(EntryType.SESSION_ENDED)
        )

    def _reconcile(self, leftover: SessionState) -> str | None:
        """Close a session whose process exited without running end()."""
        if self._has_matching_end(leftover):
            return None
        started = leftover.started
        recent = self.log.recent_entries(1)
        last_activity = recent[0].timestamp if recent else started
        self.log.append(
            EntryType.SESSION_ENDED,
            {
                "duration_minutes": minutes_between(started, max(last_activity, started)),
                "tasks_completed": self._completed_since(started),
                "started_at": leftover.started_at,
                "recovered": True,
            },
        )
        logger.warning(
            "Previous session started at %s ended without cleanup; recorded a recovery entry",
            leftover.started_at,
        )
        return leftover.started_at

    def _resolve_spec(self, spec: str | None, leftover: SessionState | None) -> str | None:
        if spec:
            return spec
        if leftover is not None and leftover.spec:
            return leftover.spec
        specs = self.graphs.list_specs()
        return specs[0] if len(specs) == 1 else None

    def start(
        self,
        now: datetime | None = None,
        *,
        spec: str | None = None,
        active_task_id: str | None = None,
        flags: Mapping[str, Any] | None = None,
    ) -> tuple[SessionState, StartupBriefing]:
        at = now or self._clock()
        leftover = self.current()
        recovered = self._reconcile(leftover) if leftover is not None else None

        briefing = StartupBriefing(
            recent_entries=self.log.recent_entries(self.recent_count),
            recovered_session=recovered,
        )
        latest = self.checkpoints.latest()
        briefing.latest_checkpoint = latest.name if latest else None

        resolved_spec = self._resolve_spec(spec, leftover)
        if resolved_spec and self.graphs.exists(resolved_spec):
            graph = self.graphs.load(resolved_spec)
            overview = graph.status_overview()
            briefing.active_task = overview["current_task"]
            briefing.next_task = overview["next_task"]
            briefing.progress_line = graph.progress_line()
            if active_task_id is None and briefing.active_task:
                active_task_id = briefing.active_task["id"]

        state = SessionState(
            started_at=format_instant(at),
            active_task_id=active_task_id,
            spec=resolved_spec,
            flags=dict(flags or {}),
        )
        payload: dict[str, Any] = {"started_at": state.started_at}
        if resolved_spec:
            payload["spec"] = resolved_spec
        self.log.append(EntryType.SESSION_STARTED, payload)
        atomic_write_json(self.path, state.to_dict())
        logger.info("Session started at %s (spec=%s)", state.started_at, resolved_spec)
        return state, briefing

    def update(self, state: SessionState) -> SessionState:
        atomic_write_json(self.path, state.to_dict())
        return state

    def end(
        self,
        state: SessionState | None = None,
        now: datetime | None = None,
        *,
        reason: str = "session_end",
        resume: Mapping[str, Any] | None = None,
    ) -> SessionSummary:
        if state is None:
            state = self.current()
        if state is None:
            raise ValidationError("No active session to end.")
        at = now or self._clock()
        started = state.started
        duration = minutes_between(started, at)
        completed = self._completed_since(started)

        payload: dict[str, Any] = {
            "duration_minutes": duration,
            "tasks_completed": completed,
            "started_at": state.started_at,
        }
        if state.spec:
            payload["spec"] = state.spec
        if reason != "session_end":
            payload["reason"] = reason
        self.log.append(EntryType.SESSION_ENDED, payload)
        archived = self.log.archive(now=at)

        checkpoint = self.checkpoints.create(
            external_revision=self._revision() if self._revision else "none",
            session_duration_minutes=duration,
            tasks_completed=completed,
            reason=reason,
            spec=state.spec,
            resume=resume,
        )
        self.path.unlink(missing_ok=True)
        logger.info("Session ended after %d min, %d task(s) completed", duration, completed)
        return SessionSummary(
            duration_minutes=duration,
            tasks_completed=completed,
            checkpoint=checkpoint,
            archive=archived,
        )
