"""Thread-safe ``.env`` file reader/writer used by the settings layer."""

from __future__ import annotations

import threading
from pathlib import Path


def _parse_line(line: str) -> tuple[str, str] | None:
    line = line.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):].lstrip()
    key, _, value = line.partition("=")
    value = value.strip()
    if value[:1] in ('"', "'") and value[-1:] == value[:1] and len(value) >= 2:
        value = value[1:-1]
    else:
        value = value.split(" #", 1)[0].rstrip()
    return key.strip(), value


class EnvFile:
    """Reads and writes a ``KEY=VALUE`` file.

    Accepts ``export KEY=VALUE`` lines and trailing ``# comments`` on
    unquoted values, so the same file can be sourced by a shell.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def read(self, key: str) -> str:
        """Return the value for *key*, or ``""`` if absent."""
        return self.read_all().get(key, "")

    def read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        result: dict[str, str] = {}
        for raw in self.path.read_text().splitlines():
            parsed = _parse_line(raw)
            if parsed is not None:
                result[parsed[0]] = parsed[1]
        return result

    def write(self, **kwargs: str) -> None:
        """Merge *kwargs* into the file; empty values remove the key."""
        with self._lock:
            existing = self.read_all()
            existing.update(kwargs)
            lines = [f'{k}="{v}"' for k, v in sorted(existing.items()) if v]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("\n".join(lines) + "\n")
