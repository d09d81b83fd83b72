"""Cancelable timer handles backing armed fires and retries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...

    @property
    def when(self) -> float: ...


class TimerFactory(Protocol):
    def arm(self, callback: TimerCallback, delay_seconds: float) -> TimerHandle: ...


class AsyncioTimer:
    """A ``loop.call_later`` handle that runs its coroutine as its own task.

    Cancelling before the deadline drops the fire. Cancelling after it has
    fired leaves the spawned task alone: running executions are not
    interrupted.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: TimerCallback, delay: float) -> None:
        self._loop = loop
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self._task: asyncio.Task[None] | None = None
        self._handle = loop.call_later(max(delay, 0.0), self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        self._fired = True
        self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        try:
            await self._callback()
        except Exception as exc:
            logger.error("[timers] timer callback failed: %s", exc, exc_info=True)

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def when(self) -> float:
        return self._handle.when()


class AsyncioTimerFactory:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def arm(self, callback: TimerCallback, delay_seconds: float) -> AsyncioTimer:
        loop = self._loop or asyncio.get_running_loop()
        return AsyncioTimer(loop, callback, delay_seconds)
