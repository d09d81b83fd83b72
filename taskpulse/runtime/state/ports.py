"""Persistence interface the scheduler consumes.

The CRUD layer owns tasks and execution logs; the scheduler only talks to
it through :class:`TaskRepository`. ``JsonTaskRepository`` is the bundled
file-backed implementation.
"""

from __future__ import annotations

from typing import Any, Final, Protocol

from .models import ExecutionLog, Task


class _Unset:
    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


# Distinguishes "leave unchanged" from "clear" (None) in timestamp updates.
UNSET: Final = _Unset()


class TaskRepository(Protocol):
    def load_active_tasks(self) -> list[Task]: ...

    def append_log(self, entry: ExecutionLog) -> None: ...

    def update_log(self, log_id: str, **patch: Any) -> ExecutionLog | None: ...

    def get_log(self, log_id: str) -> ExecutionLog | None: ...

    def update_task_timestamps(
        self,
        task_id: str,
        *,
        next_execution_time: str | None | _Unset = UNSET,
        last_execution_time: str | None | _Unset = UNSET,
    ) -> None: ...
