"""Conditional triggers that wait for an external event.

The scheduler does not poll system resources itself. A
:class:`ConditionMonitor` (for example a psutil-based sampler living in the
host application) calls the ``emit`` callback it is started with, which
lands in ``TaskScheduler.notify_condition``. This module keeps track of
which tasks are waiting for which condition.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from ..errors import TaskConfigError
from ..state.models import Task
from .triggers import STARTUP_CONDITIONS, ConditionalTrigger, TriggerKind, parse_trigger

logger = logging.getLogger(__name__)

RESOURCE_CONDITIONS = frozenset({"cpu_usage", "memory_usage", "network_activity"})
CONDITION_TYPES = STARTUP_CONDITIONS | RESOURCE_CONDITIONS

ConditionEmitter = Callable[[str, float | None], Awaitable[int]]


class ConditionMonitor(Protocol):
    async def start(self, emit: ConditionEmitter) -> None: ...

    async def stop(self) -> None: ...


class ConditionRegistry:
    def __init__(self) -> None:
        self._waiting: dict[str, dict[str, tuple[Task, ConditionalTrigger]]] = {}

    def register(self, task: Task) -> bool:
        """Track *task* under its condition type; ``False`` if not conditional."""
        if task.trigger_type != TriggerKind.conditional.value:
            return False
        try:
            trigger = parse_trigger(TriggerKind.conditional, task.trigger_config)
        except TaskConfigError as exc:
            logger.warning("[conditions] task %s not registered: %s", task.id, exc)
            return False
        assert isinstance(trigger, ConditionalTrigger)
        self.unregister(task.id)
        self._waiting.setdefault(trigger.condition_type, {})[task.id] = (task, trigger)
        logger.debug("[conditions] task %s waits for %s", task.id, trigger.condition_type)
        return True

    def unregister(self, task_id: str) -> bool:
        removed = False
        for bucket in self._waiting.values():
            removed = bucket.pop(task_id, None) is not None or removed
        return removed

    def waiting(self, condition_type: str) -> list[Task]:
        return [task for task, _ in self._waiting.get(condition_type, {}).values()]

    def matching(self, condition_type: str, value: float | None = None) -> list[tuple[Task, ConditionalTrigger]]:
        """Tasks whose threshold is met by an observed *value*."""
        return [
            (task, trigger)
            for task, trigger in self._waiting.get(condition_type, {}).values()
            if trigger.is_satisfied(value)
        ]

    def clear(self) -> None:
        self._waiting.clear()

    def __contains__(self, task_id: object) -> bool:
        return any(task_id in bucket for bucket in self._waiting.values())

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._waiting.values())
