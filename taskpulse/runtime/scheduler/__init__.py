"""Trigger calculation, timer dispatch and the execution pipeline."""

from __future__ import annotations

from .conditions import ConditionMonitor, ConditionRegistry
from .dispatch import DispatchTable
from .engine import TaskScheduler, get_scheduler, set_scheduler, upcoming
from .pipeline import ExecutionPipeline
from .timers import AsyncioTimerFactory, TimerFactory, TimerHandle
from .triggers import NeverReason, NextFire, TriggerKind, is_recurring, next_fire_time

__all__ = [
    "AsyncioTimerFactory",
    "ConditionMonitor",
    "ConditionRegistry",
    "DispatchTable",
    "ExecutionPipeline",
    "NeverReason",
    "NextFire",
    "TaskScheduler",
    "TimerFactory",
    "TimerHandle",
    "TriggerKind",
    "get_scheduler",
    "is_recurring",
    "next_fire_time",
    "set_scheduler",
    "upcoming",
]
