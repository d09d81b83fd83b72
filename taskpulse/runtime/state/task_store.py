"""File-backed task store -- a minimal stand-in for the CRUD layer."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from ..config.settings import cfg
from ..errors import PersistenceError
from ._json_store import JsonStore
from .models import Task, to_iso, utc_now
from .ports import UNSET, _Unset

logger = logging.getLogger(__name__)


class TaskStore:
    """Tasks kept as a JSON array at ``data_dir/tasks.json``."""

    def __init__(self, path: Path | None = None) -> None:
        self._json = JsonStore(path or cfg.tasks_path, default=[])
        self._lock = threading.Lock()
        self.items: dict[str, Task] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._json.path

    def load(self) -> None:
        raw = self._json.load(strict=True)
        if not isinstance(raw, list):
            raise PersistenceError(f"{self.path} must contain a JSON array of tasks")
        items: dict[str, Task] = {}
        for entry in raw:
            try:
                task = Task.from_dict(entry)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[state] skipping malformed task entry: %s", exc)
                continue
            items[task.id] = task
        with self._lock:
            self.items = items
            self._loaded = True

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def save(self) -> None:
        with self._lock:
            data = [t.to_dict() for t in self.items.values()]
        self._json.save(data)

    def get(self, task_id: str) -> Task | None:
        self._ensure_loaded()
        return self.items.get(task_id)

    def list_tasks(self) -> list[Task]:
        self._ensure_loaded()
        return list(self.items.values())

    def put(self, task: Task) -> Task:
        self._ensure_loaded()
        task.updated_at = to_iso(utc_now()) or task.updated_at
        with self._lock:
            self.items[task.id] = task
        self.save()
        return task

    def remove(self, task_id: str) -> bool:
        self._ensure_loaded()
        with self._lock:
            removed = self.items.pop(task_id, None) is not None
        if removed:
            self.save()
        return removed

    def load_active_tasks(self) -> list[Task]:
        self.load()
        return [t for t in self.items.values() if t.is_active]

    def update_task_timestamps(
        self,
        task_id: str,
        *,
        next_execution_time: str | None | _Unset = UNSET,
        last_execution_time: str | None | _Unset = UNSET,
    ) -> None:
        self._ensure_loaded()
        changes: dict[str, Any] = {}
        if next_execution_time is not UNSET:
            changes["next_execution_time"] = next_execution_time
        if last_execution_time is not UNSET:
            changes["last_execution_time"] = last_execution_time
        if not changes:
            return
        with self._lock:
            task = self.items.get(task_id)
            if task is None:
                logger.debug("[state] timestamp update for unknown task %s", task_id)
                return
            for name, value in changes.items():
                setattr(task, name, value)
            task.updated_at = to_iso(utc_now()) or task.updated_at
        self.save()
