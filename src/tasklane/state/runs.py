from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from tasklane.errors import ValidationError
from tasklane.state.atomic import atomic_write_json, read_json_document


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class RunStore:
    """Per-run records (plan, phase history, outcome) under ``state/runs``."""

    def __init__(self, state_root: Path) -> None:
        self.directory = state_root / "state" / "runs"

    def path(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.json"

    def load(self, run_id: str) -> dict[str, Any]:
        data = read_json_document(self.path(run_id))
        if data is None:
            raise ValidationError(f"Unknown run: {run_id}")
        return data

    def update(self, run_id: str, updater: Callable[[dict[str, Any]], dict[str, Any]]) -> dict[str, Any]:
        current = read_json_document(self.path(run_id)) or {"run_id": run_id}
        payload = updater(dict(current))
        atomic_write_json(self.path(run_id), payload)
        return payload

    def upsert(self, run_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        def _updater(payload: dict[str, Any]) -> dict[str, Any]:
            payload.update(updates)
            return payload

        return self.update(run_id, _updater)

    def append_phase(self, run_id: str, phase: str, status: str, at: str) -> dict[str, Any]:
        def _updater(payload: dict[str, Any]) -> dict[str, Any]:
            history = payload.setdefault("phase_history", [])
            history.append({"phase": phase, "status": status, "at": at})
            return payload

        return self.update(run_id, _updater)

    def list_runs(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(
            path.stem for path in self.directory.glob("run-*.json") if not path.name.startswith(".")
        )
