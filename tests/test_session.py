import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tasklane.errors import CorruptStoreError, ValidationError
from tasklane.state.checkpoints import CheckpointManager
from tasklane.state.progress_log import EntryType, ProgressLog
from tasklane.state.session import SessionManager
from tasklane.state.task_graph import Task, TaskGraph, TaskGraphStore

START = datetime(2026, 7, 20, 8, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _manager(tmp_path: Path, clock: FakeClock) -> SessionManager:
    log = ProgressLog(tmp_path, clock=clock)
    graphs = TaskGraphStore(tmp_path, clock=clock)
    return SessionManager(
        tmp_path,
        log=log,
        graphs=graphs,
        checkpoints=CheckpointManager(tmp_path),
        revision=lambda: "abc123",
        clock=clock,
    )


def _seed_graph(manager: SessionManager) -> None:
    graph = TaskGraph(
        spec="api",
        tasks=[
            Task(id="1", description="Routing"),
            Task(id="1.1", kind="subtask", description="Router table", parent="1"),
            Task(id="1.2", kind="subtask", description="Middleware", parent="1"),
        ],
    )
    graph.set_status("1.1", "in_progress", now=START)
    manager.graphs.save(graph)


def test_start_builds_briefing_and_records_session(tmp_path: Path) -> None:
    clock = FakeClock(START)
    manager = _manager(tmp_path, clock)
    _seed_graph(manager)
    manager.log.append(EntryType.TASK_COMPLETED, {"task_id": "0.1", "spec": "api"})

    state, briefing = manager.start()

    assert state.spec == "api"
    assert state.active_task_id == "1.1"
    assert briefing.active_task["id"] == "1.1"
    assert briefing.next_task["id"] == "1.2"
    assert briefing.progress_line == "Spec: api | Progress: 0% (0/3 tasks)"
    assert [entry.payload["task_id"] for entry in briefing.recent_entries] == ["0.1"]
    assert briefing.recovered_session is None
    assert manager.log.recent_entries(1)[0].type == "session_started"
    assert json.loads(manager.path.read_text(encoding="utf-8"))["spec"] == "api"


def test_end_records_duration_and_writes_checkpoint(tmp_path: Path) -> None:
    clock = FakeClock(START)
    manager = _manager(tmp_path, clock)
    state, _ = manager.start(spec="api")
    clock.advance(minutes=10)
    manager.log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1", "spec": "api"})
    clock.advance(minutes=15)

    summary = manager.end(state)

    assert summary.duration_minutes == 25
    assert summary.tasks_completed == 1
    ended = manager.log.entries_of_type(EntryType.SESSION_ENDED)[-1]
    assert ended.payload["duration_minutes"] == 25
    assert ended.payload["started_at"] == "2026-07-20T08:00:00Z"
    assert "reason" not in ended.payload
    assert summary.checkpoint.external_revision == "abc123"
    assert summary.checkpoint.tasks_completed == 1
    assert manager.checkpoints.latest().name == summary.checkpoint.name
    assert not manager.path.exists()


def test_end_without_session_is_rejected(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeClock(START))

    with pytest.raises(ValidationError):
        manager.end()


def test_unclean_shutdown_is_reconciled_on_next_start(tmp_path: Path) -> None:
    clock = FakeClock(START)
    manager = _manager(tmp_path, clock)
    manager.start(spec="api")
    clock.advance(minutes=30)
    manager.log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})

    # Process died here: session.json is left behind without a session_ended entry.
    clock.advance(hours=5)
    state, briefing = manager.start()

    assert briefing.recovered_session == "2026-07-20T08:00:00Z"
    ended = manager.log.entries_of_type(EntryType.SESSION_ENDED)
    assert len(ended) == 1
    assert ended[0].payload["recovered"] is True
    assert ended[0].payload["duration_minutes"] == 30
    assert ended[0].payload["tasks_completed"] == 1
    assert state.spec == "api"
    assert state.started_at == "2026-07-20T13:30:00Z"


def test_leftover_with_recorded_end_is_not_recovered_twice(tmp_path: Path) -> None:
    clock = FakeClock(START)
    manager = _manager(tmp_path, clock)
    state, _ = manager.start()
    manager.log.append(
        EntryType.SESSION_ENDED,
        {"duration_minutes": 3, "tasks_completed": 0, "started_at": state.started_at},
    )

    _, briefing = manager.start()

    assert briefing.recovered_session is None
    assert len(manager.log.entries_of_type(EntryType.SESSION_ENDED)) == 1


def test_malformed_session_record_is_corrupt(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeClock(START))
    manager.path.parent.mkdir(parents=True)
    manager.path.write_text(json.dumps({"spec": "api"}), encoding="utf-8")

    with pytest.raises(CorruptStoreError):
        manager.current()
