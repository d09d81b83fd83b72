"""Tests for the taskpulse CLI (taskpulse.cli.main)."""

from __future__ import annotations

import asyncio
import json
import os
import signal
from unittest.mock import AsyncMock, patch

import pytest

from taskpulse.cli.main import _build_parser, _load_task, _logs, _next, _preview, _serve, main
from taskpulse.runtime.errors import PersistenceError, TaskExecutionError
from taskpulse.runtime.state import ExecutionLog, ExecutionLogStore

INTERVAL_TASK = {
    "id": "42",
    "type": "command",
    "config": {"command": "echo hi"},
    "triggerType": "interval",
    "triggerConfig": {"interval": 60000},
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def parser():
    return _build_parser()


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestBuildParser:
    def test_serve(self, parser):
        assert parser.parse_args(["serve"]).command == "serve"

    def test_preview(self, parser):
        args = parser.parse_args(["preview", "task.json"])
        assert args.command == "preview"
        assert args.task == "task.json"

    def test_next_count(self, parser):
        args = parser.parse_args(["next", "task.json", "--count", "3"])
        assert args.count == 3

    def test_next_default_count(self, parser):
        assert parser.parse_args(["next", "-"]).count == 5

    def test_logs_filters(self, parser):
        args = parser.parse_args(["logs", "--task", "42", "--status", "failed", "--limit", "5"])
        assert (args.task, args.status, args.limit) == ("42", "failed", 5)

    def test_logs_rejects_unknown_status(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["logs", "--status", "exploded"])

    def test_no_command_prints_help(self):
        with pytest.raises(SystemExit) as info:
            main([])
        assert info.value.code == 1


# ---------------------------------------------------------------------------
# Task loading
# ---------------------------------------------------------------------------


class TestLoadTask:
    def test_from_file(self, tmp_path):
        f = tmp_path / "task.json"
        f.write_text(json.dumps(INTERVAL_TASK))
        task = _load_task(str(f))
        assert task.id == "42"
        assert task.trigger_config == {"interval": 60000}

    def test_inline_json_gets_default_id(self):
        task = _load_task('{"type": "command", "config": {"command": "ls"}}')
        assert task.id == "preview"

    def test_from_stdin(self, monkeypatch):
        import io

        monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(INTERVAL_TASK)))
        assert _load_task("-").id == "42"

    def test_invalid_json_exits(self):
        with pytest.raises(SystemExit):
            _load_task("{not json")

    def test_non_object_exits(self):
        with pytest.raises(SystemExit):
            _load_task("[1, 2]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    async def test_preview_success(self, parser, capsys):
        args = parser.parse_args(["preview", json.dumps(INTERVAL_TASK)])
        with patch("taskpulse.cli.main.get_scheduler") as get:
            get.return_value.execute_task_logic = AsyncMock(return_value={"stdout": "hi"})
            assert await _preview(args) == 0
        assert "hi" in capsys.readouterr().out

    async def test_preview_failure(self, parser, capsys):
        args = parser.parse_args(["preview", json.dumps(INTERVAL_TASK)])
        with patch("taskpulse.cli.main.get_scheduler") as get:
            get.return_value.execute_task_logic = AsyncMock(
                side_effect=TaskExecutionError("runtime_nonzero_exit", "boom"),
            )
            assert await _preview(args) == 1
        assert "boom" in capsys.readouterr().out

    def test_next_prints_fire_times(self, parser, capsys):
        args = parser.parse_args(["next", json.dumps(INTERVAL_TASK), "-n", "3"])
        assert _next(args) == 0
        out = capsys.readouterr().out
        assert "interval trigger" in out
        assert "3" in out

    def test_next_without_fire(self, parser, capsys):
        task = {**INTERVAL_TASK, "triggerType": "date", "triggerConfig": {"date": "2000-01-01T00:00:00"}}
        args = parser.parse_args(["next", json.dumps(task)])
        assert _next(args) == 1
        assert "exhausted" in capsys.readouterr().out

    def test_logs_lists_entries(self, parser, capsys, data_dir):
        store = ExecutionLogStore(data_dir / "execution_logs.jsonl")
        store.append_log(ExecutionLog(id="l1", task_id="42", started_at="2024-01-01T00:00:00"))
        store.update_log("l1", status="failed", error="[http_error] HTTP 500: Internal Server Error")

        args = parser.parse_args(["logs", "--task", "42"])
        assert _logs(args) == 0
        out = capsys.readouterr().out
        assert "1 total" in out
        assert "failed" in out

    def test_missing_file_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            _load_task(str(tmp_path / "nope.json"))


class TestServe:
    async def test_persistence_error_exits_1(self, parser, capsys):
        args = parser.parse_args(["serve"])
        with (
            patch(
                "taskpulse.cli.main.TaskScheduler.initialize",
                AsyncMock(side_effect=PersistenceError("could not load active tasks: disk gone")),
            ),
            patch("taskpulse.cli.main.TaskScheduler.shutdown", AsyncMock()) as shutdown,
        ):
            assert await _serve(args) == 1
        shutdown.assert_not_awaited()
        assert "disk gone" in capsys.readouterr().out

    async def test_runs_until_sigterm(self, parser, capsys):
        args = parser.parse_args(["serve"])
        loop = asyncio.get_running_loop()
        with (
            patch("taskpulse.cli.main.TaskScheduler.initialize", AsyncMock(return_value=2)) as init,
            patch("taskpulse.cli.main.TaskScheduler.shutdown", AsyncMock(return_value=0)) as shutdown,
        ):
            loop.call_later(0.05, os.kill, os.getpid(), signal.SIGTERM)
            assert await asyncio.wait_for(_serve(args), timeout=5) == 0
        init.assert_awaited_once()
        shutdown.assert_awaited_once()
        out = capsys.readouterr().out
        assert "serving 2 task(s)" in out
        assert "Stopped." in out
