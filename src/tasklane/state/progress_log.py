"""Append-only progress log with atomic replace writes and monthly archival."""
from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from tasklane.errors import CorruptStoreError, SchemaError, ValidationError
from tasklane.state.atomic import atomic_write_json, read_json_document
from tasklane.timeutil import as_utc, format_instant, parse_instant, utcnow

logger = logging.getLogger(__name__)

LOG_VERSION = "1"
ARCHIVE_PREFIX = "progress-"


class EntryType(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_ENDED = "session_ended"
    TASK_COMPLETED = "task_completed"
    TASK_BLOCKED = "task_blocked"
    DEBUG_RESOLVED = "debug_resolved"
    SCOPE_OVERRIDE = "scope_override"


# Required payload fields per entry type. Extra fields are allowed.
ENTRY_SCHEMAS: dict[EntryType, dict[str, type]] = {
    EntryType.SESSION_STARTED: {"started_at": str},
    EntryType.SESSION_ENDED: {"duration_minutes": int, "tasks_completed": int},
    EntryType.TASK_COMPLETED: {"task_id": str},
    EntryType.TASK_BLOCKED: {"task_id": str, "blocker": str},
    EntryType.DEBUG_RESOLVED: {"description": str},
    EntryType.SCOPE_OVERRIDE: {"requested_ids": list},
}


@dataclass(frozen=True, slots=True)
class LogEntry:
    id: str
    timestamp: datetime
    type: str
    payload: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @property
    def period(self) -> str:
        return self.timestamp.strftime("%Y-%m")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_instant(self.timestamp),
            "type": self.type,
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LogEntry:
        payload = data.get("payload")
        if payload is None:
            # Entries written before the payload rename carry "data".
            payload = data.get("data") or {}
        return cls(
            id=str(data["id"]),
            timestamp=parse_instant(str(data["timestamp"])),
            type=str(data["type"]),
            payload=payload,
        )


@dataclass(frozen=True, slots=True)
class LogMetadata:
    total_entries: int = 0
    oldest: str | None = None
    newest: str | None = None
    last_updated: str | None = None
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "oldest": self.oldest,
            "newest": self.newest,
            "last_updated": self.last_updated,
            "sequence": self.sequence,
        }


@dataclass(frozen=True, slots=True)
class LogSnapshot:
    entries: tuple[LogEntry, ...] = ()
    metadata: LogMetadata = field(default_factory=LogMetadata)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    moved: int
    periods: tuple[str, ...]
    live_count: int


def validate_payload(entry_type: EntryType | str, payload: Mapping[str, Any]) -> EntryType:
    """Check a payload against its entry type schema and return the resolved type."""
    try:
        resolved = EntryType(entry_type)
    except ValueError as exc:
        raise SchemaError(f"Unknown progress entry type: {entry_type!r}") from exc
    if not isinstance(payload, Mapping):
        raise SchemaError(f"{resolved.value} payload must be a mapping.")

    for name, expected in ENTRY_SCHEMAS[resolved].items():
        if name not in payload or payload[name] is None:
            raise SchemaError(f"{resolved.value} payload is missing required field '{name}'.")
        value = payload[name]
        # bool is an int subclass but never a valid count.
        if isinstance(value, bool) or not isinstance(value, expected):
            raise SchemaError(
                f"{resolved.value} payload field '{name}' must be {expected.__name__}, "
                f"got {type(value).__name__}."
            )
    try:
        json.dumps(dict(payload))
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"{resolved.value} payload is not JSON serializable: {exc}") from exc
    return resolved


def _entries_from_document(data: Mapping[str, Any], path: Path) -> list[LogEntry]:
    raw_entries = data.get("entries", [])
    if not isinstance(raw_entries, list):
        raise CorruptStoreError(f"Store entries must be a list: {path}", path=path)
    entries: list[LogEntry] = []
    for index, item in enumerate(raw_entries):
        if not isinstance(item, Mapping):
            raise CorruptStoreError(f"Entry #{index} is not an object: {path}", path=path)
        try:
            entries.append(LogEntry.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptStoreError(f"Entry #{index} is malformed in {path}: {exc}", path=path) from exc
    return entries


class ProgressLog:
    """Durable log of session and task events.

    Every mutation is a read-modify-atomic-replace cycle: a reader never sees a
    partially written file and an interrupted write leaves the prior state intact.
    """

    def __init__(
        self,
        state_root: Path,
        *,
        archive_max_entries: int = 500,
        archive_age_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.state_root = state_root
        self.path = state_root / "progress" / "progress.json"
        self.archive_dir = state_root / "progress" / "archive"
        self.archive_max_entries = archive_max_entries
        self.archive_age_days = archive_age_days
        self._clock = clock

    def _read(self) -> tuple[list[LogEntry], int]:
        data = read_json_document(self.path)
        if data is None:
            return [], 0
        entries = _entries_from_document(data, self.path)
        metadata = data.get("metadata") or {}
        try:
            sequence = int(metadata.get("sequence", 0)) if isinstance(metadata, Mapping) else 0
        except (TypeError, ValueError):
            sequence = 0
        return entries, max(sequence, len(entries))

    def _write(self, entries: list[LogEntry], sequence: int) -> None:
        metadata = LogMetadata(
            total_entries=len(entries),
            oldest=format_instant(entries[0].timestamp) if entries else None,
            newest=format_instant(entries[-1].timestamp) if entries else None,
            last_updated=format_instant(self._clock()),
            sequence=sequence,
        )
        atomic_write_json(
            self.path,
            {
                "version": LOG_VERSION,
                "entries": [entry.to_dict() for entry in entries],
                "metadata": metadata.to_dict(),
            },
        )

    def snapshot(self) -> LogSnapshot:
        data = read_json_document(self.path)
        if data is None:
            return LogSnapshot()
        entries = _entries_from_document(data, self.path)
        raw_meta = data.get("metadata") if isinstance(data.get("metadata"), Mapping) else {}
        metadata = LogMetadata(
            total_entries=len(entries),
            oldest=raw_meta.get("oldest"),
            newest=raw_meta.get("newest"),
            last_updated=raw_meta.get("last_updated"),
            sequence=int(raw_meta.get("sequence", len(entries)) or 0),
        )
        return LogSnapshot(entries=tuple(entries), metadata=metadata)

    def append(
        self,
        entry_type: EntryType | str,
        payload: Mapping[str, Any],
        *,
        timestamp: datetime | None = None,
    ) -> LogEntry:
        resolved = validate_payload(entry_type, payload)
        entries, sequence = self._read()

        newest = entries[-1].timestamp if entries else None
        if timestamp is not None:
            at = as_utc(timestamp).replace(microsecond=0)
            if newest is not None and at < newest:
                raise ValidationError(
                    f"Entry timestamp {format_instant(at)} precedes the newest entry "
                    f"({format_instant(newest)})."
                )
        else:
            at = as_utc(self._clock())
            if newest is not None and at < newest:
                at = newest

        existing_ids = {entry.id for entry in entries}
        sequence += 1
        entry_id = f"entry-{at:%Y%m%d-%H%M%S}-{sequence:06d}"
        while entry_id in existing_ids:
            sequence += 1
            entry_id = f"entry-{at:%Y%m%d-%H%M%S}-{sequence:06d}"

        entry = LogEntry(id=entry_id, timestamp=at, type=resolved.value, payload=payload)
        entries.append(entry)
        self._write(entries, sequence)
        logger.debug("Appended %s (%s)", entry.id, entry.type)
        return entry

    def needs_archive(self) -> bool:
        return len(self.snapshot()) > self.archive_max_entries

    def archive(self, *, now: datetime | None = None) -> ArchiveResult:
        entries, sequence = self._read()
        if len(entries) <= self.archive_max_entries:
            return ArchiveResult(moved=0, periods=(), live_count=len(entries))

        cutoff = (now or self._clock()) - timedelta(days=self.archive_age_days)
        old = [entry for entry in entries if entry.timestamp < cutoff]
        if not old:
            return ArchiveResult(moved=0, periods=(), live_count=len(entries))

        grouped: dict[str, list[LogEntry]] = {}
        for entry in old:
            grouped.setdefault(entry.period, []).append(entry)

        # Partitions first: a crash before the live rewrite only leaves entries
        # that the id merge skips on the next run.
        for period in sorted(grouped):
            self._merge_into_archive(period, grouped[period])

        moved_ids = {entry.id for entry in old}
        live = [entry for entry in entries if entry.id not in moved_ids]
        self._write(live, sequence)
        logger.info(
            "Archived %d progress entries into %d period(s); %d remain live",
            len(old),
            len(grouped),
            len(live),
        )
        return ArchiveResult(moved=len(old), periods=tuple(sorted(grouped)), live_count=len(live))

    def archive_path(self, period: str) -> Path:
        return self.archive_dir / f"{ARCHIVE_PREFIX}{period}.json"

    def _merge_into_archive(self, period: str, new_entries: list[LogEntry]) -> None:
        path = self.archive_path(period)
        data = read_json_document(path)
        existing = _entries_from_document(data, path) if data is not None else []
        known = {entry.id for entry in existing}
        merged = existing + [entry for entry in new_entries if entry.id not in known]
        atomic_write_json(
            path,
            {
                "version": LOG_VERSION,
                "period": period,
                "entries": [entry.to_dict() for entry in merged],
            },
        )

    def archive_periods(self) -> list[str]:
        if not self.archive_dir.exists():
            return []
        return sorted(
            path.stem[len(ARCHIVE_PREFIX):]
            for path in self.archive_dir.glob(f"{ARCHIVE_PREFIX}*.json")
        )

    def load_archive(self, period: str) -> list[LogEntry]:
        path = self.archive_path(period)
        data = read_json_document(path)
        if data is None:
            return []
        return _entries_from_document(data, path)

    def recent_entries(self, n: int) -> list[LogEntry]:
        if n <= 0:
            return []
        return list(self.snapshot().entries[-n:])

    def entries_of_type(self, entry_type: EntryType | str, n: int | None = None) -> list[LogEntry]:
        wanted = EntryType(entry_type).value
        matching = [entry for entry in self.snapshot().entries if entry.type == wanted]
        if n is None:
            return matching
        return matching[-n:] if n > 0 else []
