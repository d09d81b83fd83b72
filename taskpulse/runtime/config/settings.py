"""Application settings -- reads from environment and ``.env`` file."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..util.env_file import EnvFile
from ..util.singletons import register_singleton

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Shanghai"


class Settings:

    _DATA_DIR_ENV: ClassVar[str] = "TASKPULSE_DATA_DIR"

    def __init__(self) -> None:
        dotenv = os.getenv("DOTENV_PATH")
        if not dotenv:
            data_dir = os.getenv(self._DATA_DIR_ENV)
            dotenv = str(Path(data_dir) / ".env") if data_dir else ".env"
        self.env = EnvFile(dotenv)
        self.reload()

    def reload(self) -> None:
        e = self._read

        self.timezone_name: str = e("TASKPULSE_TIMEZONE") or DEFAULT_TIMEZONE
        self.default_timeout_ms: int = self._int("TASKPULSE_DEFAULT_TIMEOUT_MS", 30_000)
        self.max_output_bytes: int = self._int("TASKPULSE_MAX_OUTPUT_BYTES", 1024 * 1024)
        self.max_command_length: int = self._int("TASKPULSE_MAX_COMMAND_LENGTH", 1000)
        self.max_script_bytes: int = self._int("TASKPULSE_MAX_SCRIPT_BYTES", 10_000)
        self.log_level: str = (e("TASKPULSE_LOG_LEVEL") or "INFO").upper()

    @property
    def timezone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown timezone %r, falling back to %s", self.timezone_name, DEFAULT_TIMEZONE,
            )
            return ZoneInfo(DEFAULT_TIMEZONE)

    @property
    def data_dir(self) -> Path:
        return Path(os.getenv(self._DATA_DIR_ENV, str(Path.home() / ".taskpulse")))

    @property
    def sandbox_dir(self) -> Path:
        override = self._read("TASKPULSE_SANDBOX_DIR")
        return Path(override) if override else self.data_dir / "sandbox"

    @property
    def tasks_path(self) -> Path:
        return self.data_dir / "tasks.json"

    @property
    def logs_path(self) -> Path:
        return self.data_dir / "execution_logs.jsonl"

    def _read(self, key: str) -> str:
        return self.env.read(key) or os.getenv(key, "")

    def _int(self, key: str, default: int) -> int:
        raw = self._read(key)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Ignoring non-integer %s=%r (using %d)", key, raw, default)
            return default

    def ensure_dirs(self) -> None:
        for d in (self.data_dir, self.sandbox_dir):
            d.mkdir(parents=True, exist_ok=True)

    def write_env(self, **kwargs: str) -> None:
        self.env.write(**kwargs)
        self.reload()


cfg = Settings()


def _reset_cfg() -> None:
    global cfg
    cfg = Settings()


register_singleton(_reset_cfg)
