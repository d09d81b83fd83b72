"""Dispatch table -- the live mapping from task id to its armed timers.

Each task id owns one slot holding at most one primary timer (the next
trigger fire) and any number of pending retry timers. Slots carry a
generation that :meth:`DispatchTable.stop` moves to a fresh table-wide
value, so an execution that was already running when its task was stopped
cannot arm a retry afterwards, even once the idle slot has been dropped.

Arm/cancel calls are synchronous and expect the caller to hold the task's
lock (:meth:`DispatchTable.lock`) when it needs to compose them with other
work, as the scheduler engine does.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from .timers import AsyncioTimerFactory, TimerCallback, TimerFactory, TimerHandle

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    primary: TimerHandle | None = None
    kind: str | None = None
    fire_at: datetime | None = None
    retries: set[TimerHandle] = field(default_factory=set)
    generation: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def cancel_primary(self) -> bool:
        if self.primary is None:
            return False
        self.primary.cancel()
        self.primary = None
        self.kind = None
        self.fire_at = None
        return True


class DispatchTable:
    def __init__(self, timer_factory: TimerFactory | None = None) -> None:
        self._timers = timer_factory or AsyncioTimerFactory()
        self._slots: dict[str, _Slot] = {}
        # Only grows; a slot recreated after a stop never reuses a generation.
        self._epoch = 0

    def _slot(self, task_id: str) -> _Slot:
        slot = self._slots.get(task_id)
        if slot is None:
            slot = self._slots[task_id] = _Slot(generation=self._epoch)
        return slot

    def lock(self, task_id: str) -> asyncio.Lock:
        return self._slot(task_id).lock

    def generation(self, task_id: str) -> int:
        return self._slot(task_id).generation

    # ------------------------------------------------------------------
    # Primary timer
    # ------------------------------------------------------------------

    def arm(
        self,
        task_id: str,
        callback: TimerCallback,
        delay_seconds: float,
        *,
        kind: str | None = None,
        fire_at: datetime | None = None,
    ) -> TimerHandle:
        """Install the primary timer for *task_id*, cancelling any previous one."""
        slot = self._slot(task_id)
        if slot.cancel_primary():
            logger.debug("[dispatch] replaced primary timer for task %s", task_id)
        handle = self._timers.arm(callback, delay_seconds)
        slot.primary = handle
        slot.kind = kind
        slot.fire_at = fire_at
        return handle

    def cancel_primary(self, task_id: str) -> bool:
        slot = self._slots.get(task_id)
        return bool(slot and slot.cancel_primary())

    def release(self, task_id: str, handle: TimerHandle) -> None:
        """Forget *handle* once it has fired, if it is still the primary."""
        slot = self._slots.get(task_id)
        if slot is not None and slot.primary is handle:
            slot.primary = None
            slot.kind = None
            slot.fire_at = None

    def primary(self, task_id: str) -> TimerHandle | None:
        slot = self._slots.get(task_id)
        return slot.primary if slot else None

    def fire_at(self, task_id: str) -> datetime | None:
        slot = self._slots.get(task_id)
        return slot.fire_at if slot else None

    def kind(self, task_id: str) -> str | None:
        slot = self._slots.get(task_id)
        return slot.kind if slot else None

    # ------------------------------------------------------------------
    # Retry timers
    # ------------------------------------------------------------------

    def arm_retry(
        self,
        task_id: str,
        callback: TimerCallback,
        delay_seconds: float,
        *,
        generation: int,
    ) -> TimerHandle | None:
        """Arm a retry unless the task was stopped since *generation*."""
        slot = self._slot(task_id)
        if slot.generation != generation:
            logger.info("[dispatch] retry for task %s refused: task was stopped", task_id)
            return None

        holder: list[TimerHandle] = []

        async def fire() -> None:
            if holder:
                slot.retries.discard(holder[0])
            await callback()

        handle = self._timers.arm(fire, delay_seconds)
        holder.append(handle)
        slot.retries.add(handle)
        return handle

    def pending_retries(self, task_id: str) -> int:
        slot = self._slots.get(task_id)
        return len(slot.retries) if slot else 0

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def stop(self, task_id: str) -> int:
        """Cancel the primary and every pending retry; returns how many."""
        slot = self._slots.get(task_id)
        if slot is None:
            return 0
        self._epoch += 1
        slot.generation = self._epoch
        cancelled = 1 if slot.cancel_primary() else 0
        for handle in slot.retries:
            handle.cancel()
            cancelled += 1
        slot.retries.clear()
        return cancelled

    def discard(self, task_id: str) -> bool:
        """Drop the slot of *task_id* if nothing is armed and nobody holds its lock."""
        slot = self._slots.get(task_id)
        if slot is None or slot.primary is not None or slot.retries or slot.lock.locked():
            return False
        del self._slots[task_id]
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for task_id in list(self._slots):
            cancelled += self.stop(task_id)
            self.discard(task_id)
        return cancelled

    def armed_ids(self) -> list[str]:
        return [task_id for task_id, slot in self._slots.items() if slot.primary is not None]

    def __contains__(self, task_id: object) -> bool:
        slot = self._slots.get(task_id) if isinstance(task_id, str) else None
        return bool(slot and slot.primary is not None)

    def __len__(self) -> int:
        return len(self.armed_ids())
