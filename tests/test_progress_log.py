import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tasklane.errors import CorruptStoreError, SchemaError, ValidationError
from tasklane.state.progress_log import EntryType, ProgressLog


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=UTC)


def test_append_persists_entry_with_sequenced_id(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))

    first = log.append(EntryType.TASK_COMPLETED, {"task_id": "1.2", "spec": "auth"})
    second = log.append("debug_resolved", {"description": "flaky import"})

    assert first.id == "entry-20260315-120000-000001"
    assert second.id == "entry-20260315-120000-000002"
    data = json.loads(log.path.read_text(encoding="utf-8"))
    assert [item["type"] for item in data["entries"]] == ["task_completed", "debug_resolved"]
    assert data["metadata"]["total_entries"] == 2
    assert data["metadata"]["oldest"] == "2026-03-15T12:00:00Z"


def test_append_rejects_missing_field_without_touching_store(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))

    with pytest.raises(SchemaError):
        log.append(EntryType.TASK_BLOCKED, {"task_id": "2.1"})

    assert not log.path.exists()


def test_append_rejects_bool_counts_and_unknown_types(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))

    with pytest.raises(SchemaError):
        log.append(EntryType.SESSION_ENDED, {"duration_minutes": True, "tasks_completed": 0})
    with pytest.raises(SchemaError):
        log.append("lunch_break", {"task_id": "1"})


def test_corrupt_log_fails_append_and_leaves_bytes_untouched(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    log.path.parent.mkdir(parents=True)
    log.path.write_bytes(b'{"entries": [ {"id": "entry-1", ')
    before = log.path.read_bytes()

    with pytest.raises(CorruptStoreError) as excinfo:
        log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})

    assert excinfo.value.path == log.path
    assert log.path.read_bytes() == before


def test_clock_behind_newest_entry_keeps_order(tmp_path: Path) -> None:
    clock = FakeClock(NOW)
    log = ProgressLog(tmp_path, clock=clock)
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})

    clock.advance(minutes=-5)
    entry = log.append(EntryType.TASK_COMPLETED, {"task_id": "1.2"})

    assert entry.timestamp == NOW
    stamps = [item.timestamp for item in log.snapshot().entries]
    assert stamps == sorted(stamps)


def test_explicit_timestamp_older_than_newest_is_rejected(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})

    with pytest.raises(ValidationError):
        log.append(EntryType.TASK_COMPLETED, {"task_id": "1.2"}, timestamp=NOW - timedelta(days=1))


def test_naive_timestamps_are_read_as_utc(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})
    naive = NOW.replace(tzinfo=None)

    with pytest.raises(ValidationError):
        log.append(EntryType.TASK_COMPLETED, {"task_id": "1.2"}, timestamp=naive - timedelta(hours=1))
    entry = log.append(EntryType.TASK_COMPLETED, {"task_id": "1.3"}, timestamp=naive + timedelta(minutes=5))

    assert entry.timestamp == NOW + timedelta(minutes=5)
    assert entry.timestamp.tzinfo is not None


def test_archive_moves_only_old_entries_once_over_threshold(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    old = NOW - timedelta(days=40)
    log.append(EntryType.TASK_COMPLETED, {"task_id": "0.1"}, timestamp=old)
    for number in range(500):
        log.append(EntryType.TASK_COMPLETED, {"task_id": f"1.{number + 1}"}, timestamp=NOW)

    assert log.needs_archive()
    result = log.archive(now=NOW)

    assert result.moved == 1
    assert result.live_count == 500
    assert result.periods == ("2026-02",)
    archived = log.load_archive("2026-02")
    assert [entry.payload["task_id"] for entry in archived] == ["0.1"]
    assert len(log.snapshot()) == 500
    assert log.archive_periods() == ["2026-02"]


def test_archive_is_noop_at_or_below_threshold(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, archive_max_entries=3, clock=FakeClock(NOW))
    for number in range(3):
        log.append(
            EntryType.TASK_COMPLETED,
            {"task_id": str(number + 1)},
            timestamp=NOW - timedelta(days=90),
        )

    result = log.archive(now=NOW)

    assert result.moved == 0
    assert not log.archive_dir.exists()


def test_archive_merges_into_existing_partition_without_duplicates(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, archive_max_entries=1, clock=FakeClock(NOW))
    old = datetime(2026, 1, 5, 9, 30, tzinfo=UTC)
    first = log.append(EntryType.TASK_COMPLETED, {"task_id": "1"}, timestamp=old)
    log.append(EntryType.TASK_COMPLETED, {"task_id": "2"}, timestamp=old + timedelta(hours=1))
    log.append(EntryType.TASK_COMPLETED, {"task_id": "3"}, timestamp=NOW)

    # A partition left behind by an interrupted archive already holds the first entry.
    log.archive_dir.mkdir(parents=True)
    log.archive_path("2026-01").write_text(
        json.dumps({"version": "1", "period": "2026-01", "entries": [first.to_dict()]}),
        encoding="utf-8",
    )

    result = log.archive(now=NOW)

    assert result.moved == 2
    ids = [entry.payload["task_id"] for entry in log.load_archive("2026-01")]
    assert ids == ["1", "2"]


def test_legacy_data_field_is_read_as_payload(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    log.path.parent.mkdir(parents=True)
    log.path.write_text(
        json.dumps(
            {
                "entries": [
                    {
                        "id": "entry-legacy",
                        "timestamp": "2026-03-01T08:00:00Z",
                        "type": "task_completed",
                        "data": {"task_id": "4.1"},
                    }
                ]
            }
        ),
        encoding="utf-8",
    )

    entry = log.recent_entries(1)[0]
    assert entry.payload["task_id"] == "4.1"

    appended = log.append(EntryType.TASK_COMPLETED, {"task_id": "4.2"})
    assert appended.id.endswith("000002")


def test_recent_and_typed_queries(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    log.append(EntryType.SESSION_STARTED, {"started_at": "2026-03-15T12:00:00Z"})
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})
    log.append(EntryType.TASK_BLOCKED, {"task_id": "1.2", "blocker": "missing fixture"})
    log.append(EntryType.TASK_COMPLETED, {"task_id": "1.3"})

    assert [entry.type for entry in log.recent_entries(2)] == ["task_blocked", "task_completed"]
    assert [entry.payload["task_id"] for entry in log.entries_of_type("task_completed")] == [
        "1.1",
        "1.3",
    ]
    assert [entry.payload["task_id"] for entry in log.entries_of_type("task_completed", 1)] == ["1.3"]
    assert log.recent_entries(0) == []


def test_entry_payload_is_read_only(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path, clock=FakeClock(NOW))
    entry = log.append(EntryType.TASK_COMPLETED, {"task_id": "1.1"})

    with pytest.raises(TypeError):
        entry.payload["task_id"] = "9"  # type: ignore[index]
