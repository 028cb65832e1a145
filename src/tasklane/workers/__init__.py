from tasklane.workers.base import (
    ContextBundle,
    Worker,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerResult,
    WorkerTimeoutError,
)
from tasklane.workers.command import CommandWorker
from tasklane.workers.context import build_context_bundle, load_precomputed_context
from tasklane.workers.resilient import ResilientWorker, RetryPolicy, WorkerOutcome

__all__ = [
    "CommandWorker",
    "ContextBundle",
    "ResilientWorker",
    "RetryPolicy",
    "Worker",
    "WorkerExecutionError",
    "WorkerOutcome",
    "WorkerProcessError",
    "WorkerResult",
    "WorkerTimeoutError",
    "build_context_bundle",
    "load_precomputed_context",
]
