"""Kind-specific task actions parsed from ``Task.config``."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import TaskConfigError, TaskExecutionError
from ..sandbox.policy import normalize_language
from ..state.models import Task, TaskKind


class _Action(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HttpAction(_Action):
    url: str = Field(description="Absolute http(s) URL to call")
    method: str = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = Field(default=None, description="JSON-serialisable request body")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"url must start with http:// or https://, got {value!r}")
        return value

    @field_validator("method")
    @classmethod
    def _upper(cls, value: str) -> str:
        return (value or "GET").strip().upper()


class CommandAction(_Action):
    command: str = Field(min_length=1)


class ScriptAction(_Action):
    script: str = Field(min_length=1)
    language: str = "javascript"

    @field_validator("language", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> str:
        return normalize_language(value if isinstance(value, str) else None)


Action = HttpAction | CommandAction | ScriptAction

ACTION_MODELS: dict[TaskKind, type[_Action]] = {
    TaskKind.http: HttpAction,
    TaskKind.command: CommandAction,
    TaskKind.script: ScriptAction,
}


def parse_action(task: Task) -> Action:
    """Validate ``task.config`` for the task's kind.

    Raises :class:`TaskExecutionError` (``unsupported_task_type``) for an
    unknown kind and :class:`TaskConfigError` for a malformed config.
    """
    try:
        kind = TaskKind(task.type)
    except ValueError:
        raise TaskExecutionError("unsupported_task_type", f"unsupported task type: {task.type!r}") from None
    model = ACTION_MODELS[kind]
    try:
        return model.model_validate(task.config or {})  # type: ignore[return-value]
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise TaskConfigError(f"invalid {kind.value} task config: {problems}") from None
