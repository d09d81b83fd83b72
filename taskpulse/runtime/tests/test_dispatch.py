"""Tests for the dispatch table and asyncio timers."""

from __future__ import annotations

import asyncio

from taskpulse.runtime.scheduler.dispatch import DispatchTable
from taskpulse.runtime.scheduler.timers import AsyncioTimerFactory


async def _noop() -> None:
    return None


class TestPrimaryTimer:
    def test_arm_replaces_previous(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        first = table.arm("t1", _noop, 10)
        second = table.arm("t1", _noop, 20)
        assert first.cancelled
        assert not second.cancelled
        assert table.primary("t1") is second
        assert len(fake_timers.live()) == 1

    def test_kind_and_fire_time_tracked(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("t1", _noop, 10, kind="cron")
        assert table.kind("t1") == "cron"
        assert "t1" in table
        assert table.armed_ids() == ["t1"]

    def test_cancel_primary(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        handle = table.arm("t1", _noop, 10)
        assert table.cancel_primary("t1")
        assert handle.cancelled
        assert not table.cancel_primary("t1")
        assert "t1" not in table

    def test_release_only_forgets_current_primary(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        old = table.arm("t1", _noop, 10)
        new = table.arm("t1", _noop, 10)
        table.release("t1", old)
        assert table.primary("t1") is new
        table.release("t1", new)
        assert table.primary("t1") is None


class TestRetries:
    def test_retry_kept_alongside_primary(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("t1", _noop, 10)
        assert table.arm_retry("t1", _noop, 5, generation=table.generation("t1")) is not None
        assert table.pending_retries("t1") == 1
        assert len(fake_timers.live()) == 2

    async def test_fired_retry_leaves_pending_set(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        calls: list[str] = []

        async def cb() -> None:
            calls.append("fired")

        handle = table.arm_retry("t1", cb, 5, generation=0)
        await handle.fire()
        assert calls == ["fired"]
        assert table.pending_retries("t1") == 0

    def test_retry_refused_after_stop(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        generation = table.generation("t1")
        table.stop("t1")
        assert table.arm_retry("t1", _noop, 5, generation=generation) is None
        assert fake_timers.live() == []


class TestStop:
    def test_stop_cancels_primary_and_retries(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("t1", _noop, 10)
        table.arm_retry("t1", _noop, 5, generation=0)
        table.arm_retry("t1", _noop, 5, generation=0)
        assert table.stop("t1") == 3
        assert fake_timers.live() == []
        assert table.pending_retries("t1") == 0

    def test_stop_is_idempotent(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("t1", _noop, 10)
        table.stop("t1")
        assert table.stop("t1") == 0
        assert table.stop("never-armed") == 0

    def test_cancel_all(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("t1", _noop, 10)
        table.arm("t2", _noop, 10)
        table.arm_retry("t2", _noop, 1, generation=0)
        assert table.cancel_all() == 3
        assert len(table) == 0

    def test_stop_of_unknown_task_creates_nothing(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        assert table.stop("ghost") == 0
        assert "ghost" not in table._slots

    def test_discard_drops_idle_slot_only(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.arm("busy", _noop, 10)
        table.lock("idle")
        assert not table.discard("busy")
        assert table.discard("idle")
        assert "idle" not in table._slots
        assert "busy" in table._slots

    async def test_discard_keeps_held_slot(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        async with table.lock("t1"):
            assert not table.discard("t1")
        assert table.discard("t1")

    def test_retry_still_refused_after_slot_dropped(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        generation = table.generation("t1")
        table.stop("t1")
        assert table.discard("t1")
        assert table.arm_retry("t1", _noop, 5, generation=generation) is None
        assert fake_timers.live() == []

    def test_recreated_slot_accepts_its_own_generation(self, fake_timers) -> None:
        table = DispatchTable(fake_timers)
        table.stop("t1")
        table.discard("t1")
        generation = table.generation("t1")
        assert table.arm_retry("t1", _noop, 5, generation=generation) is not None


class TestAsyncioTimers:
    async def test_fires_callback(self) -> None:
        fired = asyncio.Event()

        async def cb() -> None:
            fired.set()

        AsyncioTimerFactory().arm(cb, 0.01)
        await asyncio.wait_for(fired.wait(), timeout=1)

    async def test_cancel_before_deadline(self) -> None:
        fired: list[bool] = []

        async def cb() -> None:
            fired.append(True)

        handle = AsyncioTimerFactory().arm(cb, 0.05)
        handle.cancel()
        await asyncio.sleep(0.1)
        assert fired == []
        assert handle.cancelled

    async def test_callback_errors_are_contained(self) -> None:
        done = asyncio.Event()

        async def boom() -> None:
            done.set()
            raise RuntimeError("boom")

        handle = AsyncioTimerFactory().arm(boom, 0)
        await asyncio.wait_for(done.wait(), timeout=1)
        await asyncio.sleep(0)
        assert handle.fired
