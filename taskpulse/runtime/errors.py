"""Exception types shared by the scheduler, pipeline and sandbox."""

from __future__ import annotations


class TaskPulseError(Exception):
    """Base class for all taskpulse errors."""


class TaskConfigError(TaskPulseError):
    """A task or trigger configuration is missing or malformed."""

    reason = "config_error"


class TaskExecutionError(TaskPulseError):
    """An execution attempt failed.

    ``reason`` is a short machine-readable code (``http_error``,
    ``timeout_killed``, ...) and is kept at the front of the message written
    to the execution log so failures stay distinguishable.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message

    def __str__(self) -> str:
        return f"[{self.reason}] {self.message}"


class PersistenceError(TaskPulseError):
    """The task/log repository could not be read at startup."""
