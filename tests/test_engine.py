from pathlib import Path
from typing import Any

import pytest

from tasklane.collaborators import VerificationResult, Verifier, VersionControl
from tasklane.engine import Engine, OperationKind, dispatch, load_engine
from tasklane.errors import IncompleteArtifactsError, SchemaError, ValidationError
from tasklane.state.progress_log import EntryType
from tasklane.state.task_graph import Artifacts


class PassingVerifier(Verifier):
    def run_full_verification(self) -> VerificationResult:
        return VerificationResult(passed=True)


class StaticVersionControl(VersionControl):
    def current_revision(self) -> str:
        return "0f1e2d"

    def commit_and_open_request(self, summary: Any) -> str | None:
        return None


def _engine(tmp_path: Path) -> Engine:
    engine = load_engine(tmp_path, verifier=PassingVerifier(), version_control=StaticVersionControl())
    engine.init_spec(
        "notes",
        tasks=[
            {"id": "1", "type": "parent", "description": "Editor"},
            {"id": "1.1", "type": "subtask", "description": "Toolbar"},
            {"id": "1.2", "type": "subtask", "description": "Autosave"},
        ],
    )
    return engine


def test_init_spec_renders_markdown(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    markdown = engine.markdown.markdown_path("notes")
    assert markdown.exists()
    assert "### Task 1: Editor" in markdown.read_text(encoding="utf-8")
    with pytest.raises(ValidationError):
        engine.init_spec("notes")


def test_appending_completion_rerenders_recent_progress(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    dispatch(
        engine,
        OperationKind.APPEND,
        entry_type="task_completed",
        payload={"task_id": "1.2", "spec": "notes"},
    )

    text = engine.markdown.markdown_path("notes").read_text(encoding="utf-8")
    assert "## Recent Progress" in text
    assert "`task_completed` Task 1.2 completed" in text


def test_update_status_logs_completion_and_blockers(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    engine.update_status("notes", "1.1", "in_progress")
    engine.update_status("notes", "1.1", "pass", notes="shipped")
    engine.update_status("notes", "1.2", "in_progress")
    engine.update_status("notes", "1.2", "blocked", blocker="storage quota")

    types = [entry.type for entry in engine.progress()]
    assert types == ["task_completed", "task_blocked"]
    status = engine.status("notes")
    assert status["summary"]["blocked"] == 1
    assert status["current_task"]["id"] == "1"


def test_parent_pass_requires_artifacts(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    for task_id in ("1.1", "1.2"):
        engine.update_status("notes", task_id, "in_progress")
        engine.update_status("notes", task_id, "pass")

    with pytest.raises(IncompleteArtifactsError):
        engine.update_status("notes", "1", "pass")

    engine.set_artifacts("notes", "1", Artifacts(files_created=["editor/toolbar.py"]))
    task = engine.update_status("notes", "1", "pass")
    assert task.status == "pass"
    assert engine.status("notes")["summary"]["overall_percent"] == 100


def test_defer_and_graduate_through_dispatch(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.defer("notes", "Markdown export", origin="1.2")
    engine.defer("notes", "Collaborative editing", destination_hint="roadmap_item")

    result = dispatch(engine, OperationKind.GRADUATE, spec="notes")

    assert result["promoted"] == [{"item_id": "future-1", "task_id": "2", "wave": 2}]
    assert result["graduated"] == ["future-2"]
    graph = engine.graphs.load("notes")
    assert graph.future_tasks == []
    assert engine.backlog.items()[0]["description"] == "Collaborative editing"


def test_post_file_change_only_handles_task_graphs(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.defer("notes", "Spell checker")

    ignored = engine.post_file_change(Path("README.md"))
    handled = engine.post_file_change(engine.graphs.path("notes"))

    assert ignored["handled"] is False
    assert handled["handled"] is True
    assert handled["graduation"]["promoted"][0]["item_id"] == "future-1"
    assert handled["render"]["rendered"][0]["spec"] == "notes"


def test_dispatch_rejects_unknown_operations_and_parameters(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    with pytest.raises(ValidationError):
        dispatch(engine, "delete_everything")
    with pytest.raises(ValidationError):
        dispatch(engine, OperationKind.RENDER, spec="notes", colour="red")
    with pytest.raises(SchemaError):
        dispatch(engine, OperationKind.APPEND, entry_type="task_blocked", payload={"task_id": "1.1"})


def test_manual_checkpoint_counts_session_completions(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start_session("notes")
    engine.append(EntryType.TASK_COMPLETED, {"task_id": "1.1", "spec": "notes"})

    payload = dispatch(engine, OperationKind.CHECKPOINT, reason="before-refactor")

    assert payload["reason"] == "before-refactor"
    assert payload["tasks_completed"] == 1
    assert payload["external_revision"] == "0f1e2d"
    assert payload["spec"] == "notes"

    summary = engine.end_session()
    assert summary.tasks_completed == 1


def test_run_without_worker_is_rejected(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    with pytest.raises(ValidationError):
        engine.orchestrator()
