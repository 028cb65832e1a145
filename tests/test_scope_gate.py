from pathlib import Path

import pytest

from tasklane.errors import UnknownTaskError, ValidationError
from tasklane.scope_gate import ScopeGate
from tasklane.state.progress_log import EntryType, ProgressLog
from tasklane.state.task_graph import Task, TaskGraph


def _graph() -> TaskGraph:
    return TaskGraph(
        spec="docs",
        tasks=[
            Task(id="1"),
            Task(id="1.1", kind="subtask", parent="1"),
            Task(id="1.2", kind="subtask", parent="1"),
            Task(id="2"),
            Task(id="3"),
        ],
    )


def test_multiple_parents_need_confirmation(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path)
    plan = ScopeGate(log).decide(["1", "2", "3"])

    assert plan.task_ids == ("1",)
    assert plan.requested_ids == ("1", "2", "3")
    assert plan.requires_confirmation is True
    assert log.entries_of_type(EntryType.SCOPE_OVERRIDE) == []


def test_override_runs_everything_and_is_logged(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path)
    plan = ScopeGate(log).decide(["1", "2", "3"], override=True, graph=_graph())

    assert plan.task_ids == ("1", "2", "3")
    assert plan.overridden is True
    entries = log.entries_of_type(EntryType.SCOPE_OVERRIDE)
    assert len(entries) == 1
    assert entries[0].payload["requested_ids"] == ["1", "2", "3"]
    assert entries[0].payload["spec"] == "docs"


def test_subtasks_of_one_parent_pass_without_confirmation(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path)
    plan = ScopeGate(log).decide(["1.2", "1", "1.1", "1.2"], override=True, graph=_graph())

    assert plan.task_ids == ("1.2", "1", "1.1")
    assert plan.requires_confirmation is False
    assert plan.overridden is False
    assert not log.path.exists()


def test_unknown_ids_and_empty_requests(tmp_path: Path) -> None:
    gate = ScopeGate(ProgressLog(tmp_path))

    with pytest.raises(UnknownTaskError):
        gate.decide(["8"], graph=_graph())
    with pytest.raises(ValidationError):
        gate.decide([])
