"""Sandbox executor -- runs validated commands and scripts as local processes.

Each task gets its own workspace under the sandbox root
(``task_<id>/`` with ``tmp``, ``logs`` and ``output``). Processes run
without a shell, in their own session, with a minimal environment, a hard
timeout and a ceiling on captured output.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import re
import shlex
import signal
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from ..config.settings import cfg
from .harness import write_script
from .policy import normalize_language, validate_command, validate_script

logger = logging.getLogger(__name__)

WORKSPACE_SUBDIRS = ("tmp", "logs", "output")
TRUNCATION_NOTICE = "[output truncated]"
_READ_CHUNK = 64 * 1024
_DRAIN_GRACE_SECONDS = 1.0


class FailureCause(enum.Enum):
    validation_rejected = "validation_rejected"
    runtime_nonzero_exit = "runtime_nonzero_exit"
    timeout_killed = "timeout_killed"
    output_truncated = "output_truncated"
    spawn_error = "spawn_error"


@dataclass
class SandboxLimits:
    timeout_ms: int = 30_000
    max_output_bytes: int = 1024 * 1024
    max_command_length: int = 1000
    max_script_bytes: int = 10_000
    environment: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, **overrides: Any) -> SandboxLimits:
        limits = cls(
            timeout_ms=cfg.default_timeout_ms,
            max_output_bytes=cfg.max_output_bytes,
            max_command_length=cfg.max_command_length,
            max_script_bytes=cfg.max_script_bytes,
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(limits, key, value)
        return limits


@dataclass
class SandboxResult:
    """Outcome of one sandboxed run.

    ``cause`` names why a run failed. On a successful run it is ``None``,
    or ``output_truncated`` when output hit the ceiling (informational).
    """

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_ms: int = 0
    cause: FailureCause | None = None
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["cause"] = self.cause.value if self.cause else None
        return data


class _Capture:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.buf = bytearray()
        self.overflowed = False

    def add(self, chunk: bytes) -> bool:
        room = self.limit - len(self.buf)
        if len(chunk) > room:
            self.buf.extend(chunk[:max(room, 0)])
            self.overflowed = True
            return False
        self.buf.extend(chunk)
        return True

    def text(self) -> str:
        out = self.buf.decode("utf-8", errors="replace")
        if self.overflowed:
            out = out + "\n" + TRUNCATION_NOTICE
        return out.strip()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class SandboxExecutor:
    def __init__(self, root: Path | None = None, limits: SandboxLimits | None = None) -> None:
        self._root = root or cfg.sandbox_dir
        self._limits = limits or SandboxLimits.from_settings()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def limits(self) -> SandboxLimits:
        return self._limits

    def workspace_for(self, task_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", str(task_id)) or "anonymous"
        workspace = self._root / f"task_{safe}"
        for sub in WORKSPACE_SUBDIRS:
            (workspace / sub).mkdir(parents=True, exist_ok=True)
        return workspace

    def _merge_limits(self, timeout_ms: int | None, limits: SandboxLimits | None) -> SandboxLimits:
        base = limits or self._limits
        if timeout_ms is None:
            return base
        return SandboxLimits(
            timeout_ms=timeout_ms,
            max_output_bytes=base.max_output_bytes,
            max_command_length=base.max_command_length,
            max_script_bytes=base.max_script_bytes,
            environment=dict(base.environment),
        )

    async def run_command(
        self,
        command: str,
        task_id: str,
        *,
        timeout_ms: int | None = None,
        limits: SandboxLimits | None = None,
    ) -> SandboxResult:
        start = time.monotonic()
        lim = self._merge_limits(timeout_ms, limits)

        verdict = validate_command(command, max_length=lim.max_command_length)
        if not verdict.allowed:
            logger.warning("[sandbox] task %s command rejected: %s", task_id, verdict.reason)
            return self._rejected(verdict.reason, start)

        argv = shlex.split(command.strip())
        try:
            workspace = self.workspace_for(task_id)
        except OSError as exc:
            return self._spawn_failed(f"cannot prepare workspace: {exc}", start)
        logger.info("[sandbox] task %s running command: %s", task_id, command.strip()[:200])
        return await self._spawn(argv, workspace, lim, start)

    async def run_script(
        self,
        source: str,
        language: str,
        task_id: str,
        *,
        timeout_ms: int | None = None,
        limits: SandboxLimits | None = None,
    ) -> SandboxResult:
        start = time.monotonic()
        lim = self._merge_limits(timeout_ms, limits)
        lang = normalize_language(language)

        verdict = validate_script(source, lang, max_bytes=lim.max_script_bytes)
        if not verdict.allowed:
            logger.warning("[sandbox] task %s %s script rejected: %s", task_id, lang, verdict.reason)
            return self._rejected(verdict.reason, start)

        try:
            workspace = self.workspace_for(task_id)
            argv = write_script(workspace, source, lang)
        except OSError as exc:
            return self._spawn_failed(f"cannot write script: {exc}", start)
        logger.info("[sandbox] task %s running %s script (%d bytes)", task_id, lang, len(source))
        return await self._spawn(argv, workspace, lim, start)

    def _environment(self, workspace: Path, lim: SandboxLimits) -> dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(workspace),
            "TMPDIR": str(workspace / "tmp"),
            "LANG": os.environ.get("LANG", "C.UTF-8"),
            "PYTHONIOENCODING": "utf-8",
        }
        env.update(lim.environment)
        return env

    async def _spawn(
        self, argv: list[str], workspace: Path, lim: SandboxLimits, start: float,
    ) -> SandboxResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workspace),
                env=self._environment(workspace, lim),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            logger.error("[sandbox] spawn failed for %s: %s", argv[0], exc)
            return self._spawn_failed(str(exc), start)

        out = _Capture(lim.max_output_bytes)
        err = _Capture(lim.max_output_bytes)

        async def pump(stream: asyncio.StreamReader | None, capture: _Capture) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                if not capture.overflowed and not capture.add(chunk):
                    logger.warning("[sandbox] output ceiling reached, killing pid %s", proc.pid)
                    self._kill(proc)

        work = asyncio.gather(pump(proc.stdout, out), pump(proc.stderr, err), proc.wait())
        timed_out = False
        try:
            await asyncio.wait_for(asyncio.shield(work), timeout=lim.timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            self._kill(proc)
            try:
                await asyncio.wait_for(work, timeout=_DRAIN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("[sandbox] pipes still open after kill of pid %s", proc.pid)
            if proc.returncode is None:
                await proc.wait()
        except asyncio.CancelledError:
            self._kill(proc)
            raise

        duration = _elapsed_ms(start)
        stdout, stderr = out.text(), err.text()
        truncated = out.overflowed or err.overflowed
        code = proc.returncode

        if timed_out:
            notice = f"[process killed after timeout of {lim.timeout_ms} ms]"
            stderr = f"{stderr}\n{notice}".strip()
            logger.warning("[sandbox] pid %s killed after %d ms timeout", proc.pid, lim.timeout_ms)
            return SandboxResult(
                success=False, stdout=stdout, stderr=stderr, exit_code=code,
                duration_ms=duration, cause=FailureCause.timeout_killed, truncated=truncated,
            )
        if truncated:
            # Killed by us for producing too much output; the run itself is fine.
            return SandboxResult(
                success=True, stdout=stdout, stderr=stderr, exit_code=code,
                duration_ms=duration, cause=FailureCause.output_truncated, truncated=True,
            )
        if code != 0:
            return SandboxResult(
                success=False, stdout=stdout, stderr=stderr, exit_code=code,
                duration_ms=duration, cause=FailureCause.runtime_nonzero_exit,
            )
        return SandboxResult(success=True, stdout=stdout, stderr=stderr, exit_code=code, duration_ms=duration)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        except (AttributeError, OSError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    def _rejected(reason: str, start: float) -> SandboxResult:
        return SandboxResult(
            success=False, stderr=reason, duration_ms=_elapsed_ms(start),
            cause=FailureCause.validation_rejected,
        )

    @staticmethod
    def _spawn_failed(message: str, start: float) -> SandboxResult:
        return SandboxResult(
            success=False, stderr=f"spawn error: {message}", duration_ms=_elapsed_ms(start),
            cause=FailureCause.spawn_error,
        )
