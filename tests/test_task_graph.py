import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tasklane.errors import (
    CorruptStoreError,
    GraphIntegrityError,
    IncompleteArtifactsError,
    InvalidTransitionError,
    UnknownTaskError,
    UnsupportedVersionError,
    ValidationError,
)
from tasklane.state.task_graph import (
    Artifacts,
    DeferredItem,
    Task,
    TaskGraph,
    TaskGraphStore,
    natural_key,
)

NOW = datetime(2026, 4, 2, 10, 0, 0, tzinfo=UTC)


def _graph() -> TaskGraph:
    return TaskGraph(
        spec="auth",
        tasks=[
            Task(id="1", description="Login flow", wave=1),
            Task(id="1.1", kind="subtask", description="Form", parent="1"),
            Task(id="1.2", kind="subtask", description="Session cookie", parent="1"),
            Task(id="2", description="Password reset", wave=2),
        ],
    )


def test_natural_ordering_of_task_ids() -> None:
    ids = ["10", "2.10", "2", "2.1", "2.2"]
    assert sorted(ids, key=natural_key) == ["2", "2.1", "2.2", "2.10", "10"]


def test_subtask_parent_is_inferred_from_id() -> None:
    task = Task.from_dict({"id": "3.4", "type": "subtask", "description": "x"})
    assert task.parent == "3"
    assert task.to_dict()["type"] == "subtask"


def test_lifecycle_transitions_and_bookkeeping() -> None:
    graph = _graph()

    graph.set_status("1.1", "in_progress", now=NOW)
    parent = graph.get("1")
    assert parent.status == "in_progress"
    assert parent.started_at == "2026-04-02T10:00:00Z"

    task = graph.set_status("1.1", "pass", now=NOW + timedelta(minutes=42), notes="done")
    assert task.completed_at == "2026-04-02T10:42:00Z"
    assert task.duration_minutes == 42
    assert task.attempts == 1
    assert parent.progress_percent == 50
    assert graph.summary["completed"] == 1
    assert graph.summary["in_progress"] == 1


def test_disallowed_transitions_raise() -> None:
    graph = _graph()

    with pytest.raises(InvalidTransitionError):
        graph.set_status("1.1", "pass", now=NOW)
    with pytest.raises(ValidationError):
        graph.set_status("1.1", "done", now=NOW)
    with pytest.raises(UnknownTaskError):
        graph.set_status("9.9", "in_progress", now=NOW)


def test_blocked_task_records_blocker_and_can_resume() -> None:
    graph = _graph()
    graph.set_status("1.2", "in_progress", now=NOW)
    graph.set_status("1.2", "blocked", now=NOW, blocker="missing redis")

    assert graph.get("1.2").blocker == "missing redis"
    graph.set_status("1.2", "in_progress", now=NOW)
    task = graph.get("1.2")
    assert task.blocker is None
    assert task.attempts == 2


def test_parent_cannot_pass_with_unfinished_subtasks() -> None:
    graph = _graph()
    graph.set_status("1.1", "in_progress", now=NOW)
    graph.set_status("1.1", "pass", now=NOW)
    graph.set_artifacts("1", Artifacts(files_created=["auth/login.py"]))

    with pytest.raises(IncompleteArtifactsError):
        graph.set_status("1", "pass", now=NOW)
    assert graph.get("1").status == "in_progress"


def test_parent_cannot_pass_without_artifacts() -> None:
    graph = _graph()
    for child in ("1.1", "1.2"):
        graph.set_status(child, "in_progress", now=NOW)
        graph.set_status(child, "pass", now=NOW)

    with pytest.raises(IncompleteArtifactsError):
        graph.set_status("1", "pass", now=NOW)

    graph.set_artifacts("1", Artifacts(files_modified=["auth/views.py"]))
    graph.set_status("1", "pass", now=NOW)
    assert graph.get("1").status == "pass"
    assert graph.get("1").progress_percent == 100


def test_reopen_moves_passed_subtask_and_parent_back() -> None:
    graph = _graph()
    for child in ("1.1", "1.2"):
        graph.set_status(child, "in_progress", now=NOW)
        graph.set_status(child, "pass", now=NOW)
    graph.set_artifacts("1", Artifacts(files_created=["auth/login.py"]))
    graph.set_status("1", "pass", now=NOW)

    graph.reopen("1.2", "regression in CI", now=NOW)

    assert graph.get("1.2").status == "in_progress"
    assert graph.get("1.2").completed_at is None
    assert graph.get("1").status == "in_progress"
    assert graph.get("1").progress_percent == 50

    with pytest.raises(InvalidTransitionError):
        graph.reopen("2", "never passed")


def test_artifacts_merge_keeps_first_seen_order() -> None:
    graph = _graph()
    graph.set_artifacts("1", Artifacts(files_created=["a.py"], test_files=["test_a.py"]))
    graph.set_artifacts("1", Artifacts(files_created=["b.py", "a.py"]), merge=True)

    assert graph.get("1").artifacts.files_created == ["a.py", "b.py"]
    assert graph.get("1").artifacts.test_files == ["test_a.py"]


def test_add_task_rules() -> None:
    graph = _graph()

    with pytest.raises(GraphIntegrityError):
        graph.add_task(Task(id="1.1", kind="subtask", parent="1"))
    with pytest.raises(GraphIntegrityError):
        graph.add_task(Task(id="7.1", kind="subtask", parent="7"))

    graph.add_task(Task(id="2.1", kind="subtask", description="Email token", parent="2"))
    assert [child.id for child in graph.children("2")] == ["2.1"]
    assert graph.summary["subtasks"] == 3


def test_deferred_ids_and_priorities() -> None:
    graph = _graph()
    first = graph.add_deferred(DeferredItem(id="", description="Rate limiting", priority="wave_3"))
    second = graph.add_deferred(DeferredItem(id="", description="Audit log"))

    assert (first.id, second.id) == ("future-1", "future-2")
    grouped = graph.future_by_priority()
    assert list(grouped) == ["unprioritized", "wave_3"]
    with pytest.raises(GraphIntegrityError):
        graph.add_deferred(DeferredItem(id="1", description="clash"))


def test_unsupported_version_blocks_mutation() -> None:
    graph = TaskGraph(spec="legacy", version="2.1", tasks=[Task(id="1")])

    assert not graph.supported
    with pytest.raises(UnsupportedVersionError):
        graph.set_status("1", "in_progress", now=NOW)


def test_status_overview_reports_current_and_next() -> None:
    graph = _graph()
    graph.set_status("1.1", "in_progress", now=NOW)

    overview = graph.status_overview()

    assert overview["current_task"]["id"] == "1.1"
    assert overview["next_task"]["id"] == "1.2"
    assert overview["summary"]["total_tasks"] == 4
    assert graph.progress_line() == "Spec: auth | Progress: 0% (0/4 tasks)"


def test_store_round_trip_and_no_op_save(tmp_path: Path) -> None:
    clock_values = iter([NOW, NOW + timedelta(minutes=1), NOW + timedelta(minutes=2)])
    store = TaskGraphStore(tmp_path, clock=lambda: next(clock_values))
    graph = store.create("auth")
    for task in _graph().tasks:
        graph.add_task(Task.from_dict(task.to_dict()))

    assert store.save(graph) is True
    first_bytes = store.path("auth").read_bytes()

    loaded = store.load("auth")
    assert [task.id for task in loaded.tasks] == ["1", "1.1", "1.2", "2"]
    assert store.save(loaded) is False
    assert store.path("auth").read_bytes() == first_bytes
    assert store.list_specs() == ["auth"]


def test_store_preserves_unknown_fields(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path)
    path = store.path("auth")
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps(
            {
                "version": "3.2",
                "spec": "auth",
                "owner": "platform",
                "tasks": [{"id": "1", "type": "parent", "status": "pending", "estimate": "2d"}],
                "future_tasks": [],
            }
        ),
        encoding="utf-8",
    )

    graph = store.load("auth")
    graph.set_status("1", "in_progress", now=NOW)
    store.save(graph)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["owner"] == "platform"
    assert data["tasks"][0]["estimate"] == "2d"
    assert data["summary"]["in_progress"] == 1


def test_store_load_rejects_malformed_graph(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path)
    path = store.path("auth")
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"spec": "auth", "tasks": [{"id": "1", "status": "finished"}]}), encoding="utf-8")

    with pytest.raises(CorruptStoreError):
        store.load("auth")


def test_store_rejects_path_like_spec_ids(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path)

    with pytest.raises(ValidationError):
        store.path("../outside")


def test_index_view_has_no_descriptions(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path)
    graph = store.create("auth")
    for task in _graph().tasks:
        graph.add_task(Task.from_dict(task.to_dict()))
    store.save(graph)

    index = store.load_index("auth")

    assert index.parent_id("1.2") == "1"
    assert [entry.id for entry in index.children("1")] == ["1.1", "1.2"]
    assert not hasattr(index.get("1"), "description")
