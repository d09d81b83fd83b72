"""Task and execution-log persistence."""

from __future__ import annotations

from .log_store import ExecutionLogStore
from .models import ExecutionLog, LogStatus, Task, TaskKind, TaskStatus
from .ports import UNSET, TaskRepository
from .repository import JsonTaskRepository
from .task_store import TaskStore

__all__ = [
    "UNSET",
    "ExecutionLog",
    "ExecutionLogStore",
    "JsonTaskRepository",
    "LogStatus",
    "Task",
    "TaskKind",
    "TaskRepository",
    "TaskStatus",
    "TaskStore",
]
