"""Engine facade wiring the stores together, plus the fixed operation dispatch table."""
from __future__ import annotations

import inspect
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from tasklane.collaborators import CommandVerifier, GitVersionControl, Verifier, VersionControl
from tasklane.config import DEFAULT_CONFIG_FILENAME, TasklaneConfig, load_config
from tasklane.errors import ValidationError
from tasklane.graduation import FileBacklog, GraduationResult, graduate, promote, promote_wave
from tasklane.orchestrator import Orchestrator, RunReport
from tasklane.render import MarkdownSync, SyncResult
from tasklane.scope_gate import ScopeGate
from tasklane.state.checkpoints import Checkpoint, CheckpointManager
from tasklane.state.progress_log import ArchiveResult, EntryType, LogEntry, ProgressLog
from tasklane.state.session import SessionManager, SessionState, SessionSummary, StartupBriefing
from tasklane.state.task_graph import (
    DEFAULT_VERSION,
    Artifacts,
    DeferredItem,
    Task,
    TaskGraph,
    TaskGraphStore,
)
from tasklane.workers.base import Worker
from tasklane.workers.command import CommandWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Engine:
    repo_root: Path
    state_root: Path
    config: TasklaneConfig
    log: ProgressLog
    graphs: TaskGraphStore
    checkpoints: CheckpointManager
    sessions: SessionManager
    markdown: MarkdownSync
    scope_gate: ScopeGate
    backlog: FileBacklog
    verifier: Verifier
    version_control: VersionControl
    worker_factory: Callable[[], Worker] | None = None

    # ----- task graph -----

    def init_spec(
        self,
        spec: str,
        *,
        version: str = DEFAULT_VERSION,
        tasks: Sequence[dict[str, Any]] = (),
    ) -> TaskGraph:
        graph = self.graphs.create(spec, version=version)
        for raw in tasks:
            graph.add_task(Task.from_dict(raw))
        self.graphs.save(graph)
        self.markdown.sync(spec)
        logger.info("Initialized task graph %s (%d tasks)", spec, len(graph.tasks))
        return graph

    def status(self, spec: str) -> dict[str, Any]:
        return self.graphs.load(spec).status_overview()

    def _mutate(self, spec: str, mutation: Callable[[TaskGraph], Any]) -> Any:
        graph = self.graphs.load(spec)
        outcome = mutation(graph)
        self.graphs.save(graph)
        self.markdown.sync(spec)
        return outcome

    def update_status(
        self,
        spec: str,
        task_id: str,
        status: str,
        *,
        notes: str | None = None,
        blocker: str | None = None,
    ) -> Task:
        task = self._mutate(
            spec,
            lambda graph: graph.set_status(task_id, status, notes=notes, blocker=blocker),
        )
        if status == "pass":
            self.append(EntryType.TASK_COMPLETED, {"task_id": task_id, "spec": spec})
        elif status == "blocked":
            self.append(
                EntryType.TASK_BLOCKED,
                {"task_id": task_id, "blocker": task.blocker or "", "spec": spec},
            )
        return task

    def reopen(self, spec: str, task_id: str, reason: str) -> Task:
        return self._mutate(spec, lambda graph: graph.reopen(task_id, reason))

    def set_artifacts(self, spec: str, task_id: str, artifacts: Artifacts, *, merge: bool = False) -> Task:
        return self._mutate(spec, lambda graph: graph.set_artifacts(task_id, artifacts, merge=merge))

    def defer(
        self,
        spec: str,
        description: str,
        *,
        origin: str = "",
        destination_hint: str = "wave_task",
        file_context: Sequence[str] = (),
        priority: str | None = None,
        item_id: str | None = None,
    ) -> DeferredItem:
        if not description.strip():
            raise ValidationError("Deferred item needs a description.")
        item = DeferredItem.from_dict(
            {
                "id": item_id or "",
                "description": description,
                "origin": origin,
                "destination_hint": destination_hint,
                "file_context": list(file_context),
                "priority": priority,
            }
        )
        return self._mutate(spec, lambda graph: graph.add_deferred(item))

    def graduate(self, spec: str, *, allow_duplicates: bool = False) -> GraduationResult:
        return self._mutate(
            spec,
            lambda graph: graduate(
                graph,
                self.backlog,
                allow_duplicates=allow_duplicates,
                threshold=self.config.graduation.duplicate_threshold,
            ),
        )

    def promote(self, spec: str, item_id: str, wave: int) -> dict[str, Any]:
        return self._mutate(spec, lambda graph: promote(graph, item_id, wave))

    def promote_wave(self, spec: str, wave: int) -> list[dict[str, Any]]:
        return self._mutate(spec, lambda graph: promote_wave(graph, wave))

    # ----- progress log -----

    def append(self, entry_type: EntryType | str, payload: dict[str, Any], *, spec: str | None = None) -> LogEntry:
        entry = self.log.append(entry_type, payload)
        target = spec or entry.payload.get("spec")
        if target and self.graphs.exists(target):
            self.markdown.sync(target)
        return entry

    def progress(self, entry_type: str | None = None, count: int = 10) -> list[LogEntry]:
        if entry_type:
            return self.log.entries_of_type(entry_type, count)
        return self.log.recent_entries(count)

    def archive(self) -> ArchiveResult:
        return self.log.archive()

    def render(self, spec: str | None = None) -> list[SyncResult]:
        if spec:
            return [self.markdown.sync(spec)]
        return self.markdown.sync_all()

    # ----- sessions and checkpoints -----

    def checkpoint(self, *, reason: str = "manual", spec: str | None = None) -> Checkpoint:
        session = self.sessions.current()
        completed = 0
        if session is not None:
            completed = sum(
                1
                for entry in self.log.entries_of_type(EntryType.TASK_COMPLETED)
                if entry.timestamp >= session.started
            )
        return self.checkpoints.create(
            external_revision=self.version_control.current_revision(),
            tasks_completed=completed,
            reason=reason,
            spec=spec or (session.spec if session else None),
        )

    def start_session(self, spec: str | None = None) -> tuple[SessionState, StartupBriefing]:
        return self.sessions.start(spec=spec)

    def end_session(self) -> SessionSummary:
        return self.sessions.end()

    def post_file_change(self, path: Path) -> dict[str, Any]:
        """Hook for edited files: graduate and re-render when a task graph changed."""
        target = path if path.is_absolute() else self.repo_root / path
        target = target.resolve()
        if target.name != "tasks.json" or target.parent.parent != self.graphs.specs_dir.resolve():
            return {"handled": False, "path": str(path)}
        spec = target.parent.name
        graph = self.graphs.load(spec)
        if not graph.supported:
            return {"handled": False, "path": str(path), "reason": "unsupported_version"}
        result: dict[str, Any] = {"handled": True, "spec": spec}
        if graph.future_tasks:
            result["graduation"] = dispatch(self, OperationKind.GRADUATE, spec=spec)
        result["render"] = dispatch(self, OperationKind.RENDER, spec=spec)
        return result

    # ----- orchestration -----

    def orchestrator(self) -> Orchestrator:
        if self.worker_factory is None:
            raise ValidationError("No worker configured; set [orchestrator] worker_command.")
        return Orchestrator(
            self.state_root,
            graphs=self.graphs,
            log=self.log,
            checkpoints=self.checkpoints,
            sessions=self.sessions,
            scope_gate=self.scope_gate,
            markdown=self.markdown,
            worker_factory=self.worker_factory,
            verifier=self.verifier,
            version_control=self.version_control,
            config=self.config.orchestrator,
        )

    async def run(
        self,
        spec: str,
        task_ids: Sequence[str] = (),
        *,
        override: bool = False,
        resume: bool = False,
    ) -> RunReport:
        return await self.orchestrator().run(spec, list(task_ids), override=override, resume=resume)


def load_engine(
    repo_root: Path,
    config_path: Path | None = None,
    *,
    worker_factory: Callable[[], Worker] | None = None,
    verifier: Verifier | None = None,
    version_control: VersionControl | None = None,
) -> Engine:
    repo_root = repo_root.resolve()
    config = load_config(config_path or repo_root / DEFAULT_CONFIG_FILENAME)
    state_root = config.state_root(repo_root)
    log = ProgressLog(
        state_root,
        archive_max_entries=config.log.archive_max_entries,
        archive_age_days=config.log.archive_age_days,
    )
    graphs = TaskGraphStore(state_root)
    checkpoints = CheckpointManager(state_root, retain=config.checkpoints.retain)
    version_control = version_control or GitVersionControl(repo_root, config.project.handoff_command)
    sessions = SessionManager(
        state_root,
        log=log,
        graphs=graphs,
        checkpoints=checkpoints,
        recent_count=config.log.recent_count,
        revision=version_control.current_revision,
    )
    if worker_factory is None and config.orchestrator.worker_command.strip():
        command = config.orchestrator.worker_command

        def _command_worker() -> Worker:
            return CommandWorker(command, working_directory=repo_root)

        worker_factory = _command_worker

    return Engine(
        repo_root=repo_root,
        state_root=state_root,
        config=config,
        log=log,
        graphs=graphs,
        checkpoints=checkpoints,
        sessions=sessions,
        markdown=MarkdownSync(graphs, log, recent_count=config.log.render_count),
        scope_gate=ScopeGate(log),
        backlog=FileBacklog(state_root),
        verifier=verifier or CommandVerifier(config.project.verify_command, repo_root),
        version_control=version_control,
        worker_factory=worker_factory,
    )


class OperationKind(str, Enum):
    APPEND = "append"
    RENDER = "render"
    GRADUATE = "graduate"
    CHECKPOINT = "checkpoint"


def _handle_append(
    engine: Engine,
    *,
    entry_type: str,
    payload: dict[str, Any],
    spec: str | None = None,
) -> dict[str, Any]:
    return engine.append(entry_type, payload, spec=spec).to_dict()


def _handle_render(engine: Engine, *, spec: str | None = None) -> dict[str, Any]:
    results = engine.render(spec)
    return {
        "rendered": [
            {
                "spec": item.spec,
                "path": str(item.path),
                "written": item.written,
                "skipped_reason": item.skipped_reason,
            }
            for item in results
        ]
    }


def _handle_graduate(engine: Engine, *, spec: str, allow_duplicates: bool = False) -> dict[str, Any]:
    return engine.graduate(spec, allow_duplicates=allow_duplicates).to_dict()


def _handle_checkpoint(engine: Engine, *, reason: str = "manual", spec: str | None = None) -> dict[str, Any]:
    return engine.checkpoint(reason=reason, spec=spec).to_dict()


OPERATION_HANDLERS: dict[OperationKind, Callable[..., dict[str, Any]]] = {
    OperationKind.APPEND: _handle_append,
    OperationKind.RENDER: _handle_render,
    OperationKind.GRADUATE: _handle_graduate,
    OperationKind.CHECKPOINT: _handle_checkpoint,
}


def dispatch(engine: Engine, kind: OperationKind | str, **params: Any) -> dict[str, Any]:
    try:
        operation = OperationKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Unknown operation: {kind!r}") from exc
    handler = OPERATION_HANDLERS[operation]
    try:
        inspect.signature(handler).bind(engine, **params)
    except TypeError as exc:
        raise ValidationError(f"Bad parameters for {operation.value}: {exc}") from exc
    return handler(engine, **params)
