"""Language harnesses that wrap user scripts with start/finish markers.

The user's source is written verbatim to ``script_body.<ext>`` and a small
wrapper (``script.<ext>``) runs it, printing :data:`START_MARKER` and
:data:`FINISH_MARKER` around it and reporting any exception on stderr with
a non-zero exit status.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

START_MARKER = "[taskpulse] script started"
FINISH_MARKER = "[taskpulse] script finished"
FAILURE_MARKER = "[taskpulse] script failed"

_EXTENSIONS = {"javascript": "js", "python": "py", "bash": "sh"}


def _javascript(body: Path) -> str:
    return (
        f"console.log({json.dumps(START_MARKER)});\n"
        "try {\n"
        f"  require({json.dumps(str(body))});\n"
        f"  console.log({json.dumps(FINISH_MARKER)});\n"
        "} catch (error) {\n"
        f"  console.error({json.dumps(FAILURE_MARKER + ': ')} + (error && error.message ? error.message : error));\n"
        "  process.exitCode = 1;\n"
        "}\n"
    )


def _python(body: Path) -> str:
    return (
        "import runpy, sys, traceback\n"
        f"print({START_MARKER!r}, flush=True)\n"
        "try:\n"
        f"    runpy.run_path({str(body)!r}, run_name='__main__')\n"
        "except Exception as exc:\n"
        f"    print({FAILURE_MARKER + ': '!r} + repr(exc), file=sys.stderr)\n"
        "    traceback.print_exc()\n"
        "    sys.exit(1)\n"
        f"print({FINISH_MARKER!r}, flush=True)\n"
    )


def _bash(body: Path) -> str:
    quoted = "'" + str(body).replace("'", "'\\''") + "'"
    return (
        "#!/bin/bash\n"
        f"echo {json.dumps(START_MARKER)}\n"
        f"( . {quoted} )\n"
        "status=$?\n"
        "if [ $status -ne 0 ]; then\n"
        f"  echo \"{FAILURE_MARKER}: exit code $status\" >&2\n"
        "  exit $status\n"
        "fi\n"
        f"echo {json.dumps(FINISH_MARKER)}\n"
    )


_WRAPPERS = {"javascript": _javascript, "python": _python, "bash": _bash}


def interpreter_argv(language: str, script: Path) -> list[str]:
    if language == "javascript":
        return ["node", str(script)]
    if language == "python":
        return [sys.executable or "python3", str(script)]
    if language == "bash":
        return ["bash", str(script)]
    raise ValueError(f"unsupported script language: {language}")


def write_script(workspace: Path, source: str, language: str) -> list[str]:
    """Write body + wrapper into *workspace*; return the argv that runs it."""
    ext = _EXTENSIONS[language]
    body = workspace / f"script_body.{ext}"
    wrapper = workspace / f"script.{ext}"
    body.write_text(source, encoding="utf-8")
    wrapper.write_text(_WRAPPERS[language](body), encoding="utf-8")
    if language == "bash":
        wrapper.chmod(0o755)
    return interpreter_argv(language, wrapper)
