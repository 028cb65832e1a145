from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from tasklane.collaborators import Verifier, VersionControl
from tasklane.config import OrchestratorConfig
from tasklane.errors import (
    RECOVERABLE_STATE_ERRORS,
    AbortThresholdExceeded,
    CorruptStoreError,
    TasklaneError,
    UnsupportedVersionError,
)
from tasklane.render import MarkdownSync
from tasklane.scope_gate import ExecutionPlan, ScopeGate
from tasklane.state.checkpoints import Checkpoint, CheckpointManager
from tasklane.state.progress_log import EntryType, ProgressLog
from tasklane.state.runs import RunStore, new_run_id
from tasklane.state.session import SessionManager, SessionState
from tasklane.state.task_graph import Artifacts, TaskGraph, TaskGraphStore, TaskIndex, natural_key
from tasklane.timeutil import format_instant, minutes_between, utcnow
from tasklane.workers.base import Worker
from tasklane.workers.context import build_context_bundle, load_precomputed_context
from tasklane.workers.resilient import ResilientWorker, RetryPolicy, WorkerOutcome

logger = logging.getLogger(__name__)

ABORT_THRESHOLD_REASON = "consecutive_blocked_threshold_exceeded"


class OrchestratorPhase(str, Enum):
    INIT = "init"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETING = "completing"
    TERMINATED = "terminated"


PHASE_TRANSITIONS: dict[OrchestratorPhase, frozenset[OrchestratorPhase]] = {
    OrchestratorPhase.INIT: frozenset({OrchestratorPhase.PLANNING}),
    OrchestratorPhase.PLANNING: frozenset({OrchestratorPhase.EXECUTING}),
    OrchestratorPhase.EXECUTING: frozenset({OrchestratorPhase.VERIFYING, OrchestratorPhase.COMPLETING}),
    OrchestratorPhase.VERIFYING: frozenset({OrchestratorPhase.COMPLETING}),
    OrchestratorPhase.COMPLETING: frozenset(),
    OrchestratorPhase.TERMINATED: frozenset(),
}


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ABORTED = "aborted"


EXIT_CODES = {RunStatus.SUCCESS: 0, RunStatus.PARTIAL: 2, RunStatus.ABORTED: 3}


@dataclass(slots=True)
class UnitResult:
    task_id: str
    status: str
    attempts: int = 0
    blocker: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "attempts": self.attempts,
            "blocker": self.blocker,
            "notes": self.notes,
        }


@dataclass(slots=True)
class RunReport:
    run_id: str
    spec: str
    status: RunStatus = RunStatus.SUCCESS
    phase: OrchestratorPhase = OrchestratorPhase.INIT
    plan: list[str] = field(default_factory=list)
    requested: list[str] = field(default_factory=list)
    requires_confirmation: bool = False
    units: list[str] = field(default_factory=list)
    results: list[UnitResult] = field(default_factory=list)
    phase_history: list[dict[str, str]] = field(default_factory=list)
    reason: str | None = None
    checkpoint: str | None = None
    verification: dict[str, Any] | None = None
    handoff_reference: str | None = None
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    @property
    def passed(self) -> list[str]:
        return [item.task_id for item in self.results if item.status == "pass"]

    @property
    def blocked(self) -> list[str]:
        return [item.task_id for item in self.results if item.status == "blocked"]

    def remaining(self) -> list[str]:
        done = {item.task_id for item in self.results if item.status == "pass"}
        return [task_id for task_id in self.units if task_id not in done]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "spec": self.spec,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "phase": self.phase.value,
            "plan": list(self.plan),
            "requested": list(self.requested),
            "requires_confirmation": self.requires_confirmation,
            "units": list(self.units),
            "results": [item.to_dict() for item in self.results],
            "phase_history": [dict(item) for item in self.phase_history],
            "reason": self.reason,
            "checkpoint": self.checkpoint,
            "verification": self.verification,
            "handoff_reference": self.handoff_reference,
            "summary": dict(self.summary),
        }


class Orchestrator:
    """Drives one run over a task graph: plan, delegate, verify, hand off."""

    def __init__(
        self,
        state_root: Path,
        *,
        graphs: TaskGraphStore,
        log: ProgressLog,
        checkpoints: CheckpointManager,
        sessions: SessionManager,
        scope_gate: ScopeGate,
        markdown: MarkdownSync,
        worker_factory: Callable[[], Worker],
        verifier: Verifier,
        version_control: VersionControl,
        config: OrchestratorConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.state_root = state_root
        self.graphs = graphs
        self.log = log
        self.checkpoints = checkpoints
        self.sessions = sessions
        self.scope_gate = scope_gate
        self.markdown = markdown
        self.worker_factory = worker_factory
        self.verifier = verifier
        self.version_control = version_control
        self.config = config or OrchestratorConfig()
        self.runs = RunStore(state_root)
        self._clock = clock

    # ----- bookkeeping -----

    def _transition(self, report: RunReport, phase: OrchestratorPhase, status: str = "started") -> None:
        if phase is not OrchestratorPhase.TERMINATED and phase not in PHASE_TRANSITIONS[report.phase]:
            raise RuntimeError(f"Illegal phase transition {report.phase.value} -> {phase.value}")
        self._record_phase(report, phase, status)

    def _record_phase(self, report: RunReport, phase: OrchestratorPhase, status: str) -> None:
        report.phase = phase
        at = format_instant(self._clock())
        report.phase_history.append({"phase": phase.value, "status": status, "at": at})
        self.runs.append_phase(report.run_id, phase.value, status, at)
        logger.info("Run %s: %s (%s)", report.run_id, phase.value, status)

    def _on_worker_event(self, event: dict[str, Any]) -> None:
        logger.info("Worker event %s for task %s: %s", event.get("event"), event.get("task_id"), event)

    def _write_checkpoint(self, report: RunReport, session: SessionState | None, reason: str) -> Checkpoint:
        duration = minutes_between(session.started, self._clock()) if session else 0
        checkpoint = self.checkpoints.create(
            external_revision=self.version_control.current_revision(),
            session_duration_minutes=duration,
            tasks_completed=len(report.passed),
            reason=reason,
            spec=report.spec,
            resume={"run_id": report.run_id, "plan": list(report.plan), "remaining": report.remaining()},
        )
        report.checkpoint = checkpoint.name
        return checkpoint

    def _abort_session(
        self,
        report: RunReport,
        session: SessionState,
        reason: str,
        detail: str | None = None,
    ) -> RunReport:
        """End the run's session with an abort reason; its checkpoint keeps the remaining plan."""
        summary = self.sessions.end(
            session,
            reason=reason,
            resume={"run_id": report.run_id, "plan": report.plan, "remaining": report.remaining()},
        )
        report.checkpoint = summary.checkpoint.name
        self.markdown.sync(report.spec)
        return self._finish(report, RunStatus.ABORTED, f"{reason}: {detail}" if detail else reason)

    def _finish(self, report: RunReport, status: RunStatus, reason: str | None = None) -> RunReport:
        report.status = status
        if reason is not None:
            report.reason = reason
        if report.phase is not OrchestratorPhase.TERMINATED:
            self._transition(report, OrchestratorPhase.TERMINATED, status.value)
        self.runs.upsert(
            report.run_id,
            {
                "status": status.value,
                "reason": report.reason,
                "checkpoint": report.checkpoint,
                "results": [item.to_dict() for item in report.results],
                "ended_at": format_instant(self._clock()),
            },
        )
        return report

    # ----- planning -----

    @staticmethod
    def _default_request(index: TaskIndex) -> list[str]:
        parents = sorted(
            (entry for entry in index.entries if entry.kind == "parent"),
            key=lambda entry: natural_key(entry.id),
        )
        for entry in parents:
            if entry.status != "pass" and not (entry.needs_expansion and not index.children(entry.id)):
                return [entry.id]
        return []

    def _resume_request(self, spec: str) -> list[str]:
        for checkpoint in self.checkpoints.list():
            if checkpoint.spec == spec and checkpoint.remaining_plan:
                return checkpoint.remaining_plan
        return []

    @staticmethod
    def _expand_units(index: TaskIndex, plan: ExecutionPlan) -> tuple[list[str], list[UnitResult]]:
        units: list[str] = []
        skipped: list[UnitResult] = []
        for task_id in plan.task_ids:
            entry = index.get(task_id)
            if entry is None:
                continue
            if entry.kind == "parent":
                children = index.children(task_id)
                if children:
                    units.extend(child.id for child in children if child.status != "pass")
                elif entry.needs_expansion:
                    skipped.append(
                        UnitResult(task_id=task_id, status="skipped", notes="needs subtask expansion")
                    )
                elif entry.status != "pass":
                    units.append(task_id)
            elif entry.status != "pass":
                units.append(task_id)
        return list(dict.fromkeys(units)), skipped

    # ----- execution -----

    def _mark_blocked(self, graph: TaskGraph, task_id: str, reason: str) -> None:
        task = graph.find(task_id)
        if task is None:
            return
        if task.status == "pending":
            graph.set_status(task_id, "in_progress", now=self._clock())
        if task.status == "in_progress":
            graph.set_status(task_id, "blocked", now=self._clock(), blocker=reason, notes=reason)
        elif task.status == "blocked":
            task.blocker = reason
            task.notes = reason
        self.graphs.save(graph)

    def _complete_unit(
        self,
        graph: TaskGraph,
        task_id: str,
        notes: str | None,
        artifacts: Artifacts,
    ) -> list[str]:
        """Pass ``task_id`` and, when it was the last open subtask, its parent."""
        task = graph.get(task_id)
        now = self._clock()
        # Artifacts live on parent tasks.
        owner = task if task.is_parent else graph.parent_of(task)
        if owner is not None:
            graph.set_artifacts(owner.id, artifacts, merge=True)
        graph.set_status(task_id, "pass", now=now, notes=notes)
        completed = [task_id]

        parent = graph.parent_of(task)
        if parent is not None and parent.status == "in_progress":
            if all(child.status == "pass" for child in graph.children(parent.id)):
                if parent.artifacts.is_empty():
                    parent.notes = "all subtasks passed; parent is waiting for artifacts"
                    logger.warning("Task %s/%s has no artifacts; left in progress", graph.spec, parent.id)
                else:
                    graph.set_status(parent.id, "pass", now=now)
                    completed.append(parent.id)
        self.graphs.save(graph)
        return completed

    async def _execute_unit(
        self,
        spec: str,
        task_id: str,
        context: dict[str, Any],
        resilient: ResilientWorker,
    ) -> UnitResult:
        graph = self.graphs.load(spec)
        outcome: WorkerOutcome | None = None
        try:
            task = graph.get(task_id)
            if task.status in {"pending", "blocked"}:
                graph.set_status(task_id, "in_progress", now=self._clock())
                self.graphs.save(graph)
            bundle = build_context_bundle(graph, task, context)
            outcome = await resilient.execute(bundle)
            result = outcome.result

            if result.status == "pass":
                completed = self._complete_unit(graph, task_id, result.notes, result.artifacts())
                for completed_id in completed:
                    self.log.append(
                        EntryType.TASK_COMPLETED,
                        {"task_id": completed_id, "spec": spec, "attempts": outcome.attempts},
                    )
                return UnitResult(task_id=task_id, status="pass", attempts=outcome.attempts, notes=result.notes)

            blocker = result.blocker or result.notes or "worker reported blocked"
        except RECOVERABLE_STATE_ERRORS as exc:
            blocker = f"{type(exc).__name__}: {exc}"
            graph = self.graphs.load(spec)

        try:
            self._mark_blocked(graph, task_id, blocker)
        except RECOVERABLE_STATE_ERRORS as exc:
            logger.warning("Could not record blocker on %s/%s: %s", spec, task_id, exc)
        self.log.append(EntryType.TASK_BLOCKED, {"task_id": task_id, "blocker": blocker, "spec": spec})
        logger.warning("Task %s/%s blocked: %s", spec, task_id, blocker)
        return UnitResult(
            task_id=task_id,
            status="blocked",
            attempts=outcome.attempts if outcome else 0,
            blocker=blocker,
        )

    async def _run_units(self, report: RunReport, context: dict[str, Any]) -> None:
        resilient = ResilientWorker(
            self.worker_factory,
            RetryPolicy(
                max_retries=self.config.worker_retries,
                timeout_seconds=self.config.worker_timeout_seconds,
            ),
            event_hook=self._on_worker_event,
        )
        consecutive_blocked = 0
        for task_id in report.units:
            result = await self._execute_unit(report.spec, task_id, context, resilient)
            report.results.append(result)
            if result.status == "blocked":
                consecutive_blocked += 1
                if consecutive_blocked > self.config.max_consecutive_blocked:
                    raise AbortThresholdExceeded(consecutive_blocked, self.config.max_consecutive_blocked)
            else:
                consecutive_blocked = 0

    async def _verify(self, report: RunReport) -> bool:
        """Run full verification; on failure reopen the last passed unit and set the reason."""
        try:
            verification = await asyncio.to_thread(self.verifier.run_full_verification)
        except CorruptStoreError:
            raise
        except TasklaneError as exc:
            logger.error("Run %s: verification could not run: %s", report.run_id, exc)
            report.verification = {"passed": False, "error": str(exc)}
            report.reason = f"verification_failed: {exc}"
        else:
            report.verification = {"passed": verification.passed, **verification.details}
            if verification.passed:
                return True
            report.reason = "verification_failed"
        last_passed = next((item.task_id for item in reversed(report.results) if item.status == "pass"), None)
        if last_passed is not None:
            graph = self.graphs.load(report.spec)
            graph.reopen(last_passed, "full verification failed", now=self._clock())
            self.graphs.save(graph)
            for item in report.results:
                if item.task_id == last_passed:
                    item.status = "reopened"
                    item.notes = "full verification failed"
        return False

    # ----- entry point -----

    async def run(
        self,
        spec: str,
        requested_ids: Sequence[str] | None = None,
        *,
        override: bool = False,
        resume: bool = False,
    ) -> RunReport:
        report = RunReport(run_id=new_run_id(), spec=spec)
        self.runs.upsert(
            report.run_id,
            {
                "run_id": report.run_id,
                "spec": spec,
                "status": "in_progress",
                "started_at": format_instant(self._clock()),
            },
        )
        self._record_phase(report, OrchestratorPhase.INIT, "started")
        session: SessionState | None = None

        try:
            try:
                index = self.graphs.load_index(spec)
                if not index.supported:
                    raise UnsupportedVersionError(
                        f"Task graph {spec} has unsupported version {index.version!r}."
                    )
                session = self.sessions.current()
                if session is None:
                    session, _ = self.sessions.start(spec=spec)
            except CorruptStoreError:
                raise
            except TasklaneError as exc:
                logger.error("Run %s failed during init: %s", report.run_id, exc)
                self._write_checkpoint(report, session, "init_failed")
                return self._finish(report, RunStatus.ABORTED, f"init_failed: {exc}")

            self._transition(report, OrchestratorPhase.PLANNING)
            try:
                requested = list(requested_ids or [])
                if not requested and resume:
                    requested = self._resume_request(spec)
                if not requested:
                    requested = self._default_request(index)
                report.requested = requested
                if requested:
                    plan = self.scope_gate.decide(requested, override=override, graph=index)
                else:
                    plan = ExecutionPlan(task_ids=(), requested_ids=())
                report.plan = list(plan.task_ids)
                report.requires_confirmation = plan.requires_confirmation
                report.units, skipped = self._expand_units(index, plan)
                report.results.extend(skipped)
                self.runs.upsert(report.run_id, {"plan": report.plan, "units": report.units})
            except CorruptStoreError:
                raise
            except TasklaneError as exc:
                logger.error("Run %s failed during planning: %s", report.run_id, exc)
                return self._abort_session(report, session, "planning_failed", str(exc))

            self._transition(report, OrchestratorPhase.EXECUTING)
            context = load_precomputed_context(self.state_root, spec)
            try:
                await self._run_units(report, context)
            except AbortThresholdExceeded as exc:
                logger.error("Run %s aborted: %s", report.run_id, exc)
                return self._abort_session(report, session, ABORT_THRESHOLD_REASON)

            verified = True
            if self.config.verify and report.passed:
                self._transition(report, OrchestratorPhase.VERIFYING)
                verified = await self._verify(report)

            self._transition(report, OrchestratorPhase.COMPLETING)
            try:
                graph = self.graphs.load(spec)
                self.graphs.save(graph)
                self.markdown.sync(spec)
                report.summary = dict(graph.summary)
                if report.passed and verified:
                    report.handoff_reference = self.version_control.commit_and_open_request(
                        {
                            "spec": spec,
                            "run_id": report.run_id,
                            "completed": report.passed,
                            "blocked": report.blocked,
                            "summary": report.summary,
                        }
                    )
                summary = self.sessions.end(
                    session,
                    resume={"run_id": report.run_id, "plan": report.plan, "remaining": report.remaining()},
                )
                report.checkpoint = summary.checkpoint.name
            except CorruptStoreError:
                raise
            except TasklaneError as exc:
                logger.error("Run %s failed while completing: %s", report.run_id, exc)
                self._write_checkpoint(report, session, "completing_failed")
                return self._finish(report, RunStatus.ABORTED, f"completing_failed: {exc}")

            unfinished = any(item.status != "pass" for item in report.results)
            status = RunStatus.PARTIAL if unfinished else RunStatus.SUCCESS
            return self._finish(report, status)

        except CorruptStoreError as exc:
            logger.error("Run %s stopped on corrupt store %s", report.run_id, exc.path)
            self._write_checkpoint(report, session, "corrupt_store")
            self._finish(report, RunStatus.ABORTED, "corrupt_store")
            raise
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.error("Run %s cancelled", report.run_id)
            self._write_checkpoint(report, session, "cancelled")
            self._finish(report, RunStatus.ABORTED, "cancelled")
            raise
