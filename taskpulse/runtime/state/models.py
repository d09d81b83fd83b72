"""Task and execution-log records exchanged with the persistence layer.

Both records serialise to the camelCase JSON the CRUD layer stores, so a
row can round-trip through ``from_dict``/``to_dict`` untouched.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class TaskKind(enum.Enum):
    http = "http"
    command = "command"
    script = "script"


class TaskStatus(enum.Enum):
    active = "active"
    paused = "paused"
    completed = "completed"


class LogStatus(enum.Enum):
    running = "running"
    success = "success"
    failed = "failed"


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _json_field(value: Any, default: Any) -> Any:
    # SQLite-backed collaborators hand over TEXT columns as JSON strings.
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("[state] unparseable JSON field %r", value[:80])
            return default
    return default if value is None else value


@dataclass
class Task:
    id: str
    name: str = ""
    type: str = TaskKind.command.value
    config: dict[str, Any] = field(default_factory=dict)
    trigger_type: str = "interval"
    trigger_config: dict[str, Any] = field(default_factory=dict)
    status: str = TaskStatus.active.value
    max_retries: int = 3
    retry_interval: int = 5000  # ms
    timeout: int = 30_000  # ms
    description: str = ""
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: to_iso(utc_now()) or "")
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()) or "")
    next_execution_time: str | None = None
    last_execution_time: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == TaskStatus.active.value

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in raw:
                return raw[camel]
            return raw.get(snake, default)

        return cls(
            id=str(raw["id"]),
            name=raw.get("name") or "",
            type=raw.get("type") or TaskKind.command.value,
            config=_json_field(raw.get("config"), {}),
            trigger_type=pick("triggerType", "trigger_type", "interval"),
            trigger_config=_json_field(pick("triggerConfig", "trigger_config"), {}),
            status=raw.get("status") or TaskStatus.active.value,
            max_retries=int(pick("maxRetries", "max_retries", 3) or 0),
            retry_interval=int(pick("retryInterval", "retry_interval", 5000) or 0),
            timeout=int(raw.get("timeout") or 30_000),
            description=raw.get("description") or "",
            category=raw.get("category"),
            tags=list(_json_field(raw.get("tags"), [])),
            created_at=pick("createdAt", "created_at") or to_iso(utc_now()) or "",
            updated_at=pick("updatedAt", "updated_at") or to_iso(utc_now()) or "",
            next_execution_time=pick("nextExecutionTime", "next_execution_time"),
            last_execution_time=pick("lastExecutionTime", "last_execution_time"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "config": self.config,
            "triggerType": self.trigger_type,
            "triggerConfig": self.trigger_config,
            "status": self.status,
            "category": self.category,
            "tags": self.tags,
            "maxRetries": self.max_retries,
            "retryInterval": self.retry_interval,
            "timeout": self.timeout,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "nextExecutionTime": self.next_execution_time,
            "lastExecutionTime": self.last_execution_time,
        }


@dataclass
class ExecutionLog:
    """One execution attempt. Retries are separate rows."""

    id: str
    task_id: str
    status: str = LogStatus.running.value
    started_at: str = ""
    finished_at: str | None = None
    duration: int | None = None  # ms
    result: Any = None
    error: str | None = None
    retry_count: int = 0

    _FIELD_MAP = {
        "taskId": "task_id",
        "startedAt": "started_at",
        "finishedAt": "finished_at",
        "retryCount": "retry_count",
    }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionLog:
        data: dict[str, Any] = {}
        for key, value in raw.items():
            name = cls._FIELD_MAP.get(key, key)
            if name in cls.__dataclass_fields__:
                data[name] = value
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "status": self.status,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "duration": self.duration,
            "result": self.result,
            "error": self.error,
            "retryCount": self.retry_count,
        }
