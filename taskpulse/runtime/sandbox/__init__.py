"""Sandboxed runner for command and script tasks."""

from __future__ import annotations

from .executor import FailureCause, SandboxExecutor, SandboxLimits, SandboxResult
from .harness import FINISH_MARKER, START_MARKER
from .policy import (
    ALLOWED_COMMANDS,
    SUPPORTED_LANGUAGES,
    Verdict,
    validate_command,
    validate_script,
)

__all__ = [
    "ALLOWED_COMMANDS",
    "FINISH_MARKER",
    "START_MARKER",
    "SUPPORTED_LANGUAGES",
    "FailureCause",
    "SandboxExecutor",
    "SandboxLimits",
    "SandboxResult",
    "Verdict",
    "validate_command",
    "validate_script",
]
