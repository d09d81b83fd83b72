"""Execution log store -- one JSON line per attempt state change."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from ..config.settings import cfg
from .models import ExecutionLog

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset({
    "status", "finished_at", "duration", "result", "error", "retry_count",
})


class ExecutionLogStore:
    """Append-only log of execution attempts.

    Every create or update appends the full record to
    ``data_dir/execution_logs.jsonl``; on load the last line for an id wins.
    An in-memory index serves reads.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or cfg.logs_path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._entries: dict[str, ExecutionLog] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            return
        with self._lock:
            for lineno, line in enumerate(self._path.read_text().splitlines(), 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = ExecutionLog.from_dict(json.loads(line))
                except (json.JSONDecodeError, TypeError) as exc:
                    logger.warning("[state] bad log line %d in %s: %s", lineno, self._path, exc)
                    continue
                self._entries[entry.id] = entry

    def _write(self, entry: ExecutionLog) -> None:
        with open(self._path, "a") as f:
            f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    def append_log(self, entry: ExecutionLog) -> None:
        with self._lock:
            self._entries[entry.id] = entry
            self._write(entry)

    def update_log(self, log_id: str, **patch: Any) -> ExecutionLog | None:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update log fields: {', '.join(sorted(unknown))}")
        with self._lock:
            entry = self._entries.get(log_id)
            if entry is None:
                logger.warning("[state] update for unknown log %s", log_id)
                return None
            for name, value in patch.items():
                setattr(entry, name, value)
            self._write(entry)
            return entry

    def get_log(self, log_id: str) -> ExecutionLog | None:
        with self._lock:
            return self._entries.get(log_id)

    def query(
        self,
        *,
        task_id: str = "",
        status: str = "",
        limit: int = 500,
        offset: int = 0,
    ) -> dict[str, Any]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.started_at, reverse=True)
        if task_id:
            entries = [e for e in entries if e.task_id == task_id]
        if status:
            entries = [e for e in entries if e.status == status]
        total = len(entries)
        page = entries[offset : offset + limit]
        return {
            "entries": [e.to_dict() for e in page],
            "total": total,
            "offset": offset,
            "limit": limit,
        }
