"""Tests for the sandbox executor (spawns real local processes)."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from taskpulse.runtime.sandbox import (
    FINISH_MARKER,
    START_MARKER,
    FailureCause,
    SandboxExecutor,
    SandboxLimits,
)
from taskpulse.runtime.sandbox.harness import FAILURE_MARKER, write_script


@pytest.fixture()
def sandbox(tmp_path: Path) -> SandboxExecutor:
    return SandboxExecutor(root=tmp_path / "sandbox", limits=SandboxLimits(timeout_ms=5000))


class TestWorkspace:
    def test_layout(self, sandbox: SandboxExecutor) -> None:
        ws = sandbox.workspace_for("42")
        assert ws == sandbox.root / "task_42"
        for sub in ("tmp", "logs", "output"):
            assert (ws / sub).is_dir()

    def test_task_id_cannot_escape_root(self, sandbox: SandboxExecutor) -> None:
        ws = sandbox.workspace_for("../../etc")
        assert ws.parent == sandbox.root

    def test_write_script_wraps_body(self, tmp_path: Path) -> None:
        argv = write_script(tmp_path, "print('x')", "python")
        assert argv[-1] == str(tmp_path / "script.py")
        assert (tmp_path / "script_body.py").read_text() == "print('x')"
        assert START_MARKER in (tmp_path / "script.py").read_text()


class TestRunCommand:
    async def test_echo(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("echo hello", "t1", timeout_ms=1000)
        assert result.success
        assert "hello" in result.stdout
        assert result.exit_code == 0
        assert result.cause is None

    async def test_timeout_kills_process(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("sleep 2", "t1", timeout_ms=500)
        assert not result.success
        assert result.cause is FailureCause.timeout_killed
        assert "killed after timeout of 500 ms" in result.stderr
        assert 400 <= result.duration_ms < 1500

    async def test_rejected_before_spawn(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("sudo ls", "t1")
        assert not result.success
        assert result.cause is FailureCause.validation_rejected
        assert "sudo" in result.stderr
        assert not (sandbox.root / "task_t1").exists()

    async def test_nonzero_exit(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("ls /definitely/not/here", "t1")
        assert not result.success
        assert result.cause is FailureCause.runtime_nonzero_exit
        assert result.exit_code != 0
        assert result.stderr

    async def test_spawn_error(self, tmp_path: Path) -> None:
        limits = SandboxLimits(environment={"PATH": str(tmp_path / "empty")})
        sandbox = SandboxExecutor(root=tmp_path / "sandbox", limits=limits)
        result = await sandbox.run_command("echo hi", "t1")
        assert not result.success
        assert result.cause is FailureCause.spawn_error
        assert result.stderr.startswith("spawn error:")

    async def test_nul_byte_rejected_before_spawn(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("echo a\x00b", "t1")
        assert not result.success
        assert result.cause is FailureCause.validation_rejected
        assert not (sandbox.root / "task_t1").exists()

    async def test_unspawnable_environment_is_spawn_error(self, tmp_path: Path) -> None:
        limits = SandboxLimits(environment={"BROKEN": "a\x00b"})
        sandbox = SandboxExecutor(root=tmp_path / "sandbox", limits=limits)
        result = await sandbox.run_command("echo hi", "t1")
        assert not result.success
        assert result.cause is FailureCause.spawn_error

    async def test_output_ceiling_truncates(self, tmp_path: Path) -> None:
        limits = SandboxLimits(max_output_bytes=16)
        sandbox = SandboxExecutor(root=tmp_path / "sandbox", limits=limits)
        result = await sandbox.run_command("echo " + "x" * 200, "t1")
        assert result.success
        assert result.truncated
        assert result.cause is FailureCause.output_truncated
        assert result.stdout.endswith("[output truncated]")

    async def test_runs_in_workspace(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_command("pwd", "t9")
        assert result.stdout == str(sandbox.root / "task_t9")


class TestRunScript:
    async def test_python_script(self, sandbox: SandboxExecutor) -> None:
        source = "import os\nprint('home=' + os.environ['HOME'])\n"
        result = await sandbox.run_script(source, "python", "t1")
        assert result.success, result.stderr
        lines = result.stdout.splitlines()
        assert lines[0] == START_MARKER
        assert lines[-1] == FINISH_MARKER
        assert f"home={sandbox.root / 'task_t1'}" in lines

    async def test_python_exception_fails(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("raise ValueError('bad input')", "python", "t1")
        assert not result.success
        assert result.cause is FailureCause.runtime_nonzero_exit
        assert FAILURE_MARKER in result.stderr
        assert "bad input" in result.stderr
        assert FINISH_MARKER not in result.stdout

    async def test_bash_script(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("echo from bash\n", "bash", "t1")
        assert result.success, result.stderr
        assert "from bash" in result.stdout

    async def test_bash_failure(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("false\n", "bash", "t1")
        assert not result.success
        assert FAILURE_MARKER in result.stderr

    @pytest.mark.skipif(shutil.which("node") is None, reason="node is not installed")
    async def test_javascript_script(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("console.log('from node')", "javascript", "t1")
        assert result.success, result.stderr
        assert "from node" in result.stdout

    async def test_dangerous_script_rejected(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("import subprocess", "python", "t1")
        assert result.cause is FailureCause.validation_rejected

    async def test_unsupported_language(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("puts 1", "ruby", "t1")
        assert result.cause is FailureCause.validation_rejected

    async def test_script_timeout(self, sandbox: SandboxExecutor) -> None:
        result = await sandbox.run_script("import time\ntime.sleep(5)", "python", "t1", timeout_ms=300)
        assert result.cause is FailureCause.timeout_killed
        assert result.duration_ms < 1500


class TestLimits:
    def test_from_settings_with_overrides(self) -> None:
        limits = SandboxLimits.from_settings(max_output_bytes=99, timeout_ms=None)
        assert limits.max_output_bytes == 99
        assert limits.timeout_ms > 0
        assert limits.max_command_length == 1000

    def test_result_to_dict(self) -> None:
        from taskpulse.runtime.sandbox import SandboxResult

        data = SandboxResult(success=False, cause=FailureCause.spawn_error).to_dict()
        assert data["cause"] == "spawn_error"
        assert data["success"] is False
