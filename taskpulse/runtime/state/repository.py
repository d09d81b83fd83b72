"""JSON-backed implementation of :class:`TaskRepository`."""

from __future__ import annotations

from typing import Any

from .log_store import ExecutionLogStore
from .models import ExecutionLog, Task
from .ports import UNSET, _Unset
from .task_store import TaskStore


class JsonTaskRepository:
    def __init__(
        self,
        tasks: TaskStore | None = None,
        logs: ExecutionLogStore | None = None,
    ) -> None:
        self.tasks = tasks or TaskStore()
        self.logs = logs or ExecutionLogStore()

    def load_active_tasks(self) -> list[Task]:
        return self.tasks.load_active_tasks()

    def append_log(self, entry: ExecutionLog) -> None:
        self.logs.append_log(entry)

    def update_log(self, log_id: str, **patch: Any) -> ExecutionLog | None:
        return self.logs.update_log(log_id, **patch)

    def get_log(self, log_id: str) -> ExecutionLog | None:
        return self.logs.get_log(log_id)

    def update_task_timestamps(
        self,
        task_id: str,
        *,
        next_execution_time: str | None | _Unset = UNSET,
        last_execution_time: str | None | _Unset = UNSET,
    ) -> None:
        self.tasks.update_task_timestamps(
            task_id,
            next_execution_time=next_execution_time,
            last_execution_time=last_execution_time,
        )
