"""taskpulse -- trigger scheduling and sandboxed task execution."""

__version__ = "0.1.0"
