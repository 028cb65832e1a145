from tasklane.state.checkpoints import Checkpoint, CheckpointManager
from tasklane.state.progress_log import EntryType, LogEntry, ProgressLog
from tasklane.state.runs import RunStore
from tasklane.state.session import SessionManager, SessionState, StartupBriefing
from tasklane.state.task_graph import Artifacts, DeferredItem, Task, TaskGraph, TaskGraphStore

__all__ = [
    "Artifacts",
    "Checkpoint",
    "CheckpointManager",
    "DeferredItem",
    "EntryType",
    "LogEntry",
    "ProgressLog",
    "RunStore",
    "SessionManager",
    "SessionState",
    "StartupBriefing",
    "Task",
    "TaskGraph",
    "TaskGraphStore",
]
