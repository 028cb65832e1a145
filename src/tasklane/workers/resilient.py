from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tasklane.workers.base import (
    ContextBundle,
    Worker,
    WorkerExecutionError,
    WorkerResult,
    WorkerTimeoutError,
)

logger = logging.getLogger(__name__)

WorkerEventHook = Callable[[dict[str, Any]], None]
WorkerFactory = Callable[[], Worker]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.0
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class WorkerOutcome:
    result: WorkerResult
    attempts: int
    errors: list[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return bool(self.errors) and self.result.status == "blocked"


class ResilientWorker:
    """Runs a task on fresh workers with a timeout and bounded retry.

    A ``fail`` result, a timeout or a retriable error triggers another attempt
    with the same bundle. Once attempts run out the outcome is a ``blocked``
    result, never an exception. A ``blocked`` result is final immediately.
    """

    def __init__(
        self,
        factory: WorkerFactory,
        retry_policy: RetryPolicy,
        event_hook: WorkerEventHook | None = None,
    ) -> None:
        self.factory = factory
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _attempt(self, bundle: ContextBundle) -> WorkerResult:
        worker = self.factory()
        try:
            return await asyncio.wait_for(
                worker.execute(bundle), timeout=self.retry_policy.timeout_seconds
            )
        except TimeoutError as exc:
            raise WorkerTimeoutError(
                f"Worker timed out after {self.retry_policy.timeout_seconds:.1f}s",
                worker=worker.name,
                retriable=True,
            ) from exc

    async def execute(self, bundle: ContextBundle) -> WorkerOutcome:
        errors: list[str] = []
        attempts = 0
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "worker_retry",
                        "task_id": bundle.task_id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                logger.info("Retrying task %s (attempt %d)", bundle.task_id, attempt + 1)
                if delay > 0:
                    await asyncio.sleep(delay)
            attempts += 1
            try:
                result = await self._attempt(bundle)
            except WorkerExecutionError as exc:
                errors.append(f"attempt {attempt + 1}: {exc}")
                self._emit(
                    {
                        "event": "worker_attempt_failed",
                        "task_id": bundle.task_id,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    break
                continue
            except Exception as exc:
                errors.append(f"attempt {attempt + 1}: {exc}")
                self._emit(
                    {
                        "event": "worker_attempt_failed",
                        "task_id": bundle.task_id,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": True,
                    }
                )
                continue

            if result.status == "fail":
                reason = result.blocker or result.notes or "worker reported failure"
                errors.append(f"attempt {attempt + 1}: {reason}")
                self._emit(
                    {
                        "event": "worker_attempt_failed",
                        "task_id": bundle.task_id,
                        "attempt": attempt,
                        "error": reason,
                        "retriable": True,
                    }
                )
                continue
            return WorkerOutcome(result=result, attempts=attempts, errors=errors)

        summary = "; ".join(errors[-4:]) or "worker produced no result"
        return WorkerOutcome(
            result=WorkerResult(
                status="blocked",
                blocker=f"Worker failed after {attempts} attempt(s): {summary}",
            ),
            attempts=attempts,
            errors=errors,
        )
