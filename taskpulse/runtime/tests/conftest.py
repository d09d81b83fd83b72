"""Shared pytest fixtures for taskpulse.runtime tests."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    monkeypatch.setenv("TASKPULSE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("DOTENV_PATH", str(tmp_path / ".env"))
    for key in (
        "TASKPULSE_SANDBOX_DIR",
        "TASKPULSE_TIMEZONE",
        "TASKPULSE_DEFAULT_TIMEOUT_MS",
        "TASKPULSE_MAX_OUTPUT_BYTES",
        "TASKPULSE_LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)
    return data_dir


@pytest.fixture(autouse=True)
def _reset_singletons(_isolate_data_dir: Path):
    from taskpulse.runtime.util.singletons import reset_all_singletons

    reset_all_singletons()
    yield
    reset_all_singletons()


@pytest.fixture()
def data_dir(_isolate_data_dir: Path) -> Path:
    return _isolate_data_dir


# ---------------------------------------------------------------------------
# Scheduler collaborators
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, callback, delay: float) -> None:
        self.callback = callback
        self.delay = delay
        self._cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def when(self) -> float:
        return self.delay

    async def fire(self) -> None:
        self.fired = True
        await self.callback()


class FakeTimerFactory:
    """Records armed timers; tests fire them by hand."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def arm(self, callback, delay_seconds: float) -> FakeTimer:
        timer = FakeTimer(callback, delay_seconds)
        self.timers.append(timer)
        return timer

    def live(self) -> list[FakeTimer]:
        return [t for t in self.timers if not (t.cancelled or t.fired)]


class FakeRepository:
    """In-memory TaskRepository that hands out copies, like a database would."""

    def __init__(self) -> None:
        from taskpulse.runtime.state import UNSET

        self._unset = UNSET
        self.tasks: list = []
        self.logs: dict = {}
        self.timestamps: dict[str, dict] = {}

    def load_active_tasks(self):
        return [t for t in self.tasks if t.is_active]

    def append_log(self, entry) -> None:
        self.logs[entry.id] = dataclasses.replace(entry)

    def update_log(self, log_id: str, **patch):
        entry = self.logs.get(log_id)
        if entry is None:
            return None
        for name, value in patch.items():
            setattr(entry, name, value)
        return dataclasses.replace(entry)

    def get_log(self, log_id: str):
        entry = self.logs.get(log_id)
        return dataclasses.replace(entry) if entry else None

    def update_task_timestamps(self, task_id: str, **changes) -> None:
        slot = self.timestamps.setdefault(task_id, {})
        for name, value in changes.items():
            if value is not self._unset:
                slot[name] = value

    def logs_for(self, task_id: str) -> list:
        return [e for e in self.logs.values() if e.task_id == task_id]


class FakeSandbox:
    def __init__(self) -> None:
        from taskpulse.runtime.sandbox import SandboxResult

        self.default = SandboxResult(success=True, stdout="ok", exit_code=0)
        self.results: list = []
        self.calls: list[tuple] = []
        self.gate: asyncio.Event | None = None

    async def _next(self, call: tuple):
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        return self.results.pop(0) if self.results else self.default

    async def run_command(self, command, task_id, *, timeout_ms=None, limits=None):
        return await self._next(("command", task_id, command, timeout_ms))

    async def run_script(self, source, language, task_id, *, timeout_ms=None, limits=None):
        return await self._next(("script", task_id, language, timeout_ms))


@pytest.fixture()
def fake_timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture()
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture()
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()
