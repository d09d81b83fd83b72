"""Scheduler -- arms trigger timers for tasks and runs them through the pipeline.

:class:`TaskScheduler` is what the CRUD layer talks to. It re-arms every
active task at startup, replaces a task's timer whenever the task is
(re)scheduled and keeps recurring triggers as a self-renewing chain: each
fire computes and arms the next one before the execution starts.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, tzinfo
from typing import Any

from ..config.settings import cfg
from ..errors import PersistenceError, TaskConfigError, TaskExecutionError
from ..sandbox import SandboxExecutor
from ..state.models import ExecutionLog, Task, to_iso
from ..state.ports import TaskRepository
from ..state.repository import JsonTaskRepository
from ..util.singletons import register_singleton
from .conditions import CONDITION_TYPES, ConditionMonitor, ConditionRegistry
from .dispatch import DispatchTable
from .pipeline import ExecutionPipeline
from .timers import TimerFactory, TimerHandle
from .triggers import (
    STARTUP_CONDITIONS,
    NeverReason,
    NextFire,
    TriggerKind,
    is_recurring,
    next_fire_time,
)

logger = logging.getLogger(__name__)


class TaskScheduler:
    def __init__(
        self,
        repository: TaskRepository,
        *,
        sandbox: SandboxExecutor | None = None,
        timer_factory: TimerFactory | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        monitors: Iterable[ConditionMonitor] = (),
    ) -> None:
        self._repo = repository
        self._tz = tz or cfg.timezone
        self._clock = clock
        self._dispatch = DispatchTable(timer_factory)
        self._pipeline = ExecutionPipeline(repository, self._dispatch, sandbox)
        self._conditions = ConditionRegistry()
        self._monitors = list(monitors)
        self._initialized = False

    @property
    def dispatch(self) -> DispatchTable:
        return self._dispatch

    @property
    def pipeline(self) -> ExecutionPipeline:
        return self._pipeline

    @property
    def conditions(self) -> ConditionRegistry:
        return self._conditions

    @property
    def timezone(self) -> tzinfo:
        return self._tz

    def _now(self) -> datetime:
        if self._clock is not None:
            now = self._clock()
            return now if now.tzinfo else now.replace(tzinfo=self._tz)
        return datetime.now(self._tz)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Arm every active task. Returns how many were armed or registered."""
        try:
            tasks = self._repo.load_active_tasks()
        except Exception as exc:
            raise PersistenceError(f"could not load active tasks: {exc}") from exc

        armed = 0
        for task in tasks:
            if await self.schedule_task(task):
                armed += 1
        for monitor in self._monitors:
            try:
                await monitor.start(self.notify_condition)
            except Exception as exc:
                logger.error("[scheduler] condition monitor %r failed to start: %s", monitor, exc, exc_info=True)
        self._initialized = True
        logger.info(
            "[scheduler] initialized: %d/%d active tasks armed, %d awaiting conditions",
            armed, len(tasks), len(self._conditions),
        )
        return armed

    async def shutdown(self) -> int:
        """Cancel every timer. Executions already running are left alone."""
        for monitor in self._monitors:
            try:
                await monitor.stop()
            except Exception as exc:
                logger.error("[scheduler] condition monitor %r failed to stop: %s", monitor, exc, exc_info=True)
        cancelled = self._dispatch.cancel_all()
        self._conditions.clear()
        self._initialized = False
        logger.info("[scheduler] shutdown: %d timers cancelled", cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_task(self, task: Task) -> bool:
        """(Re)arm *task* from its trigger.

        Returns ``True`` when a timer was armed or the task is now waiting
        for a condition event. Never raises.
        """
        try:
            async with self._dispatch.lock(task.id):
                return self._schedule_locked(task)
        except Exception as exc:
            logger.error("[scheduler] scheduling task %s failed: %s", task.id, exc, exc_info=True)
            return False

    def _schedule_locked(self, task: Task) -> bool:
        self._dispatch.cancel_primary(task.id)
        self._conditions.unregister(task.id)

        if not task.is_active:
            logger.debug("[scheduler] task %s is %s, not arming", task.id, task.status)
            self._set_next(task.id, None)
            return False

        now = self._now()
        nxt = next_fire_time(task.trigger_type, task.trigger_config, now, tz=self._tz)
        if task.trigger_type == TriggerKind.conditional.value:
            self._conditions.register(task)

        if nxt.at is None:
            self._set_next(task.id, None)
            if nxt.reason is NeverReason.awaiting_condition:
                logger.info("[scheduler] task %s (%s) %s", task.id, task.name, nxt.detail)
                return True
            if nxt.reason is NeverReason.invalid_config:
                logger.warning(
                    "[scheduler] task %s (%s) has an invalid %s trigger: %s",
                    task.id, task.name, task.trigger_type, nxt.detail,
                )
            else:
                logger.info("[scheduler] task %s (%s) has no future fire: %s", task.id, task.name, nxt.detail)
            return False

        self._arm(task, nxt.at, now)
        return True

    def _arm(self, task: Task, at: datetime, now: datetime) -> TimerHandle:
        holder: list[TimerHandle] = []

        async def fire() -> None:
            await self._on_fire(task, holder[0])

        delay = max((at - now).total_seconds(), 0.0)
        handle = self._dispatch.arm(task.id, fire, delay, kind=task.trigger_type, fire_at=at)
        holder.append(handle)
        self._set_next(task.id, to_iso(at))
        logger.info(
            "[scheduler] task %s (%s) armed: %s trigger fires at %s",
            task.id, task.name, task.trigger_type, at.isoformat(),
        )
        return handle

    async def _on_fire(self, task: Task, handle: TimerHandle) -> None:
        async with self._dispatch.lock(task.id):
            if self._dispatch.primary(task.id) is not handle:
                logger.debug("[scheduler] stale timer for task %s ignored", task.id)
                return
            self._dispatch.release(task.id, handle)
            generation = self._dispatch.generation(task.id)
            if is_recurring(task.trigger_type, task.trigger_config):
                self._schedule_locked(task)
            else:
                self._set_next(task.id, None)

        logger.info("[scheduler] FIRING task %s (%s)", task.id, task.name)
        await self._pipeline.execute(task, generation=generation)

    async def stop_task(self, task_id: str) -> int:
        """Cancel the task's next fire and pending retries. Idempotent."""
        async with self._dispatch.lock(task_id):
            cancelled = self._dispatch.stop(task_id)
            self._conditions.unregister(task_id)
            self._set_next(task_id, None)
        self._dispatch.discard(task_id)
        if cancelled:
            logger.info("[scheduler] task %s stopped (%d timers cancelled)", task_id, cancelled)
        return cancelled

    def _set_next(self, task_id: str, value: str | None) -> None:
        try:
            self._repo.update_task_timestamps(task_id, next_execution_time=value)
        except Exception as exc:
            logger.error("[scheduler] could not update nextExecutionTime of %s: %s", task_id, exc, exc_info=True)

    def preview_next_fire(self, task: Task, now: datetime | None = None) -> NextFire:
        return next_fire_time(task.trigger_type, task.trigger_config, now or self._now(), tz=self._tz)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_task(self, task: Task) -> ExecutionLog:
        """Run one logged attempt now (retries armed on failure)."""
        return await self._pipeline.execute(task)

    async def execute_task_logic(self, task: Task) -> Any:
        """Dry run: no log rows, no retries, no timestamp updates."""
        try:
            return await self._pipeline.run_task_logic(task)
        except TaskExecutionError:
            raise
        except TaskConfigError as exc:
            raise TaskExecutionError(exc.reason, str(exc)) from exc
        except Exception as exc:
            raise TaskExecutionError("execution_error", str(exc)) from exc

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    async def notify_condition(self, condition_type: str, value: float | None = None) -> int:
        """Fire tasks waiting for *condition_type*; returns how many were armed."""
        if condition_type not in CONDITION_TYPES:
            logger.warning("[scheduler] unknown condition %r ignored", condition_type)
            return 0

        if condition_type in STARTUP_CONDITIONS:
            count = 0
            for task in self._conditions.waiting(condition_type):
                if await self.schedule_task(task):
                    count += 1
            return count

        count = 0
        for task, trigger in self._conditions.matching(condition_type, value):
            async with self._dispatch.lock(task.id):
                if not self._conditions.unregister(task.id):
                    continue
                now = self._now()
                self._arm(task, now + trigger.delay, now)
                count += 1
        if count:
            logger.info("[scheduler] condition %s (value=%s) armed %d tasks", condition_type, value, count)
        return count

    def armed_task_ids(self) -> list[str]:
        return self._dispatch.armed_ids()

    def next_fire_of(self, task_id: str) -> datetime | None:
        return self._dispatch.fire_at(task_id)


def upcoming(
    task: Task, count: int, *, now: datetime, tz: tzinfo,
) -> list[datetime]:
    """The next *count* fire times of *task*, chaining the calculator."""
    times: list[datetime] = []
    cursor = now
    while len(times) < count:
        nxt = next_fire_time(task.trigger_type, task.trigger_config, cursor, tz=tz)
        if nxt.at is None:
            break
        times.append(nxt.at)
        if not is_recurring(task.trigger_type, task.trigger_config):
            break
        # Interval-style triggers count from the previous fire.
        cursor = nxt.at
    return times


_scheduler: TaskScheduler | None = None


def get_scheduler() -> TaskScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = TaskScheduler(JsonTaskRepository())
    return _scheduler


def set_scheduler(instance: TaskScheduler) -> None:
    global _scheduler
    _scheduler = instance


def _reset_scheduler() -> None:
    global _scheduler
    _scheduler = None


register_singleton(_reset_scheduler)
