"""Registry of reset hooks for module-level singletons.

Modules that keep a process-wide instance (``cfg``, the scheduler) register
a reset callback here so tests can start from a clean slate.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

_resetters: list[Callable[[], None]] = []
_lock = threading.Lock()


def register_singleton(reset: Callable[[], None]) -> Callable[[], None]:
    with _lock:
        if reset not in _resetters:
            _resetters.append(reset)
    return reset


def reset_all_singletons() -> None:
    with _lock:
        resetters = list(_resetters)
    for reset in resetters:
        try:
            reset()
        except Exception:
            logger.warning("Singleton reset %r failed", reset, exc_info=True)
