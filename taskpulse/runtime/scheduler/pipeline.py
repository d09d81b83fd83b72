"""Execution pipeline -- one execution attempt end to end.

An attempt writes a ``running`` log row, stamps the task's
``lastExecutionTime``, runs the task's action, seals the row as ``success``
or ``failed`` and, on failure, arms a retry in the task's dispatch slot
while the retry budget lasts. Nothing raised by an action escapes
:meth:`ExecutionPipeline.execute`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any

import aiohttp

from ..errors import TaskConfigError, TaskExecutionError
from ..sandbox import SandboxExecutor, SandboxResult
from ..state.models import ExecutionLog, LogStatus, Task, to_iso, utc_now
from ..state.ports import TaskRepository
from .actions import CommandAction, HttpAction, ScriptAction, parse_action
from .dispatch import DispatchTable

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _sandbox_outcome(result: SandboxResult) -> dict[str, Any]:
    if not result.success:
        reason = result.cause.value if result.cause else "execution_error"
        message = result.stderr or f"process exited with code {result.exit_code}"
        raise TaskExecutionError(reason, message)
    return {
        "stdout": result.stdout,
        "stderr": result.stderr,
        "exitCode": result.exit_code,
        "durationMs": result.duration_ms,
        "truncated": result.truncated,
    }


class ExecutionPipeline:
    def __init__(
        self,
        repository: TaskRepository,
        dispatch: DispatchTable,
        sandbox: SandboxExecutor | None = None,
    ) -> None:
        self._repo = repository
        self._dispatch = dispatch
        self._sandbox = sandbox or SandboxExecutor()

    @property
    def sandbox(self) -> SandboxExecutor:
        return self._sandbox

    # ------------------------------------------------------------------
    # Logged attempt
    # ------------------------------------------------------------------

    async def execute(
        self,
        task: Task,
        *,
        retry_count: int = 0,
        generation: int | None = None,
    ) -> ExecutionLog:
        """Run one logged attempt of *task* and return its sealed log row.

        *generation* is the dispatch-slot generation the attempt belongs to;
        a retry is only armed while the slot is still in that generation.
        """
        gen = self._dispatch.generation(task.id) if generation is None else generation
        entry = ExecutionLog(
            id=uuid.uuid4().hex,
            task_id=task.id,
            status=LogStatus.running.value,
            started_at=to_iso(utc_now()) or "",
            retry_count=retry_count,
        )
        try:
            self._repo.append_log(entry)
            self._repo.update_task_timestamps(task.id, last_execution_time=entry.started_at)
        except Exception as exc:
            logger.error("[pipeline] could not record start of task %s: %s", task.id, exc, exc_info=True)

        logger.info(
            "[pipeline] executing task %s (%s, type=%s, attempt=%d)",
            task.id, task.name, task.type, retry_count + 1,
        )
        start = time.monotonic()
        error: str | None = None
        result: Any = None
        try:
            result = await self.run_task_logic(task)
        except TaskExecutionError as exc:
            error = str(exc)
        except TaskConfigError as exc:
            error = f"[{exc.reason}] {exc}"
        except Exception as exc:
            logger.error("[pipeline] task %s raised unexpectedly: %s", task.id, exc, exc_info=True)
            error = f"[execution_error] {exc}"

        entry.finished_at = to_iso(utc_now())
        entry.duration = _elapsed_ms(start)
        if error is None:
            entry.status = LogStatus.success.value
            entry.result = result
            self._seal(entry, result=result)
            logger.info("[pipeline] task %s succeeded in %d ms", task.id, entry.duration)
            return entry

        entry.status = LogStatus.failed.value
        entry.error = error
        self._seal(entry, error=error)
        logger.warning("[pipeline] task %s failed in %d ms: %s", task.id, entry.duration, error)
        self._retry(task, entry, gen)
        return entry

    def _seal(self, entry: ExecutionLog, **fields: Any) -> None:
        try:
            self._repo.update_log(
                entry.id,
                status=entry.status,
                finished_at=entry.finished_at,
                duration=entry.duration,
                **fields,
            )
        except Exception as exc:
            logger.error("[pipeline] could not seal log %s: %s", entry.id, exc, exc_info=True)

    def _retry(self, task: Task, entry: ExecutionLog, generation: int) -> bool:
        try:
            current = self._repo.get_log(entry.id)
        except Exception as exc:
            logger.error("[pipeline] could not read log %s: %s", entry.id, exc, exc_info=True)
            current = None
        count = current.retry_count if current is not None else entry.retry_count

        if count >= task.max_retries:
            logger.warning(
                "[pipeline] task %s gave up after %d retries (max=%d)",
                task.id, count, task.max_retries,
            )
            return False

        next_count = count + 1
        try:
            self._repo.update_log(entry.id, retry_count=next_count)
        except Exception as exc:
            logger.error("[pipeline] could not bump retry count on %s: %s", entry.id, exc, exc_info=True)
        entry.retry_count = next_count

        delay = max(task.retry_interval, 0) / 1000

        async def fire() -> None:
            await self.execute(task, retry_count=next_count, generation=generation)

        handle = self._dispatch.arm_retry(task.id, fire, delay, generation=generation)
        if handle is None:
            return False
        logger.info(
            "[pipeline] task %s retry %d/%d in %d ms",
            task.id, next_count, task.max_retries, task.retry_interval,
        )
        return True

    # ------------------------------------------------------------------
    # Task logic (shared with preview)
    # ------------------------------------------------------------------

    async def run_task_logic(self, task: Task) -> Any:
        """Run the task's action once and return its result.

        Raises :class:`TaskExecutionError` or :class:`TaskConfigError`.
        """
        action = parse_action(task)
        timeout_ms = task.timeout or None
        if isinstance(action, HttpAction):
            return await self._run_http(action, task.timeout)
        if isinstance(action, CommandAction):
            outcome = await self._sandbox.run_command(action.command, task.id, timeout_ms=timeout_ms)
            return _sandbox_outcome(outcome)
        if isinstance(action, ScriptAction):
            outcome = await self._sandbox.run_script(
                action.script, action.language, task.id, timeout_ms=timeout_ms,
            )
            return _sandbox_outcome(outcome)
        raise TaskExecutionError("unsupported_task_type", f"unsupported task type: {task.type!r}")

    async def _run_http(self, action: HttpAction, timeout_ms: int) -> Any:
        kwargs: dict[str, Any] = {"headers": action.headers}
        if action.body is not None and action.method not in _BODYLESS_METHODS:
            if isinstance(action.body, (str, bytes)):
                kwargs["data"] = action.body
            else:
                kwargs["json"] = action.body

        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000 if timeout_ms else None)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as http:
                async with http.request(action.method, action.url, **kwargs) as resp:
                    text = await resp.text()
                    if not 200 <= resp.status < 300:
                        raise TaskExecutionError("http_error", f"HTTP {resp.status}: {resp.reason}")
        except asyncio.TimeoutError:
            raise TaskExecutionError(
                "http_error", f"request to {action.url} timed out after {timeout_ms} ms",
            ) from None
        except aiohttp.ClientError as exc:
            raise TaskExecutionError("http_error", f"request to {action.url} failed: {exc}") from None

        try:
            return json.loads(text)
        except ValueError:
            return text
