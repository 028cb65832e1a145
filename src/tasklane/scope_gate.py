from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from tasklane.errors import UnknownTaskError, ValidationError
from tasklane.state.progress_log import EntryType, ProgressLog
from tasklane.state.task_graph import TaskGraph, TaskIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    task_ids: tuple[str, ...]
    requested_ids: tuple[str, ...]
    requires_confirmation: bool = False
    overridden: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_ids": list(self.task_ids),
            "requested_ids": list(self.requested_ids),
            "requires_confirmation": self.requires_confirmation,
            "overridden": self.overridden,
        }


class ScopeGate:
    """Single parent task per run unless the caller overrides; overrides are logged."""

    def __init__(self, log: ProgressLog) -> None:
        self.log = log

    @staticmethod
    def _parent_id(task_id: str, graph: TaskGraph | TaskIndex | None) -> str:
        if graph is None:
            return task_id.split(".", 1)[0]
        if isinstance(graph, TaskIndex):
            parent = graph.parent_id(task_id)
        else:
            task = graph.find(task_id)
            parent = None if task is None else (task.id if task.is_parent else task.parent)
        if parent is None:
            raise UnknownTaskError(f"Unknown task id in {graph.spec}: {task_id}")
        return parent

    def decide(
        self,
        requested_ids: Sequence[str],
        *,
        override: bool = False,
        graph: TaskGraph | TaskIndex | None = None,
    ) -> ExecutionPlan:
        requested = tuple(dict.fromkeys(str(task_id) for task_id in requested_ids))
        if not requested:
            raise ValidationError("No tasks requested.")

        parents = {task_id: self._parent_id(task_id, graph) for task_id in requested}
        if len(set(parents.values())) <= 1:
            return ExecutionPlan(task_ids=requested, requested_ids=requested)

        if not override:
            first_parent = parents[requested[0]]
            restricted = tuple(task_id for task_id in requested if parents[task_id] == first_parent)
            logger.info(
                "Scope limited to task %s; %d other request(s) need confirmation",
                first_parent,
                len(requested) - len(restricted),
            )
            return ExecutionPlan(
                task_ids=restricted,
                requested_ids=requested,
                requires_confirmation=True,
            )

        payload: dict[str, Any] = {"requested_ids": list(requested)}
        if graph is not None:
            payload["spec"] = graph.spec
        self.log.append(EntryType.SCOPE_OVERRIDE, payload)
        logger.warning("Scope override: running %d parent tasks", len(set(parents.values())))
        return ExecutionPlan(task_ids=requested, requested_ids=requested, overridden=True)
