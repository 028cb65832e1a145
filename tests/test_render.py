from datetime import UTC, datetime
from pathlib import Path

import pytest

from tasklane.errors import UnsupportedVersionError
from tasklane.render import MarkdownSync, render
from tasklane.state.progress_log import EntryType, ProgressLog
from tasklane.state.task_graph import Artifacts, DeferredItem, Task, TaskGraph, TaskGraphStore

NOW = datetime(2026, 5, 1, 9, 0, 0, tzinfo=UTC)


def _graph() -> TaskGraph:
    graph = TaskGraph(
        spec="billing",
        tasks=[
            Task(id="1", description="Invoices", wave=1),
            Task(id="1.1", kind="subtask", description="Invoice model", parent="1"),
            Task(id="1.2", kind="subtask", description="PDF export", parent="1"),
            Task(id="2", description="Refunds", wave=2, needs_expansion=True),
        ],
        future_tasks=[
            DeferredItem(id="future-1", description="Currency rounding", origin="1.2", priority="wave_3")
        ],
    )
    graph.set_status("1.1", "in_progress", now=NOW)
    graph.set_status("1.1", "pass", now=NOW)
    graph.set_artifacts("1", Artifacts(files_created=["billing/invoice.py"], exports_added=["Invoice"]))
    return graph


def test_render_lists_sections_and_checkboxes() -> None:
    text = render(_graph())

    assert text.startswith("# Tasks: billing\n")
    assert "| Total Tasks | 4 |" in text
    assert "- **Wave 1** [in progress]: Tasks 1" in text
    assert "- **Wave 2** [pending]: Tasks 2" in text
    assert "- [x] **1.1** Invoice model" in text
    assert "- [ ] **1.2** PDF export" in text
    assert "**Status**: in_progress [#####.....] 50%" in text
    assert "**Files Created**: billing/invoice.py" in text
    assert "**Exports Added**: `Invoice`" in text
    assert "**Needs expansion**: subtasks not yet planned" in text
    assert "- **future-1** (wave_task) [wave_3] Currency rounding _(from 1.2)_" in text


def test_render_is_deterministic() -> None:
    assert render(_graph()) == render(_graph())


def test_render_shows_recent_progress_newest_first(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=lambda: NOW)
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1", "spec": "billing"})
    log.append(EntryType.TASK_BLOCKED, {"task_id": "9.1", "blocker": "n/a", "spec": "other"})
    log.append(EntryType.TASK_BLOCKED, {"task_id": "1.2", "blocker": "no fonts", "spec": "billing"})

    text = render(_graph(), log.snapshot().entries)

    section = text.split("## Recent Progress", 1)[1]
    assert section.index("Task 1.2 blocked: no fonts") < section.index("Task 1.1 completed")
    assert "9.1" not in section


def test_render_refuses_unsupported_versions() -> None:
    with pytest.raises(UnsupportedVersionError):
        render(TaskGraph(spec="old", version="2.0"))


def test_markdown_sync_writes_only_on_change(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path, clock=lambda: NOW)
    log = ProgressLog(tmp_path, clock=lambda: NOW)
    graph = _graph()
    store.save(graph)
    sync = MarkdownSync(store, log)

    first = sync.sync("billing")
    second = sync.sync("billing")

    assert first.written is True
    assert second.written is False
    assert sync.markdown_path("billing").read_text(encoding="utf-8").startswith("# Tasks: billing")

    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1", "spec": "billing"})
    assert sync.sync("billing").written is True


def test_markdown_sync_skips_unsupported_graphs(tmp_path: Path) -> None:
    store = TaskGraphStore(tmp_path, clock=lambda: NOW)
    store.save(TaskGraph(spec="legacy", version="2.0", tasks=[Task(id="1")]))
    sync = MarkdownSync(store, ProgressLog(tmp_path))

    result = sync.sync("legacy")

    assert result.written is False
    assert result.skipped_reason == "unsupported_version"
    assert not sync.markdown_path("legacy").exists()
