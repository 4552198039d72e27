"""Runtime services around the executor: events, run logs and pause/resume."""

from blockflow.runtime.event_bus import EventBus, EventType, WorkflowEvent
from blockflow.runtime.execution_log_store import ExecutionLogStore
from blockflow.runtime.execution_logger import ExecutionLogger
from blockflow.runtime.pause_resume import PauseResumeManager, restore_context, serialize_context

__all__ = [
    "EventBus",
    "EventType",
    "WorkflowEvent",
    "ExecutionLogStore",
    "ExecutionLogger",
    "PauseResumeManager",
    "serialize_context",
    "restore_context",
]
