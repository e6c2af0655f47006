"""
Debounced task scheduling for ledger flushes.

``schedule(fn, delay)`` coalesces repeated calls inside the window into a
single execution. ``ManualScheduler`` replaces the timer in tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class Scheduler(Protocol):
    def schedule(self, fn: Callable[[], None], delay: float) -> None: ...

    def cancel(self) -> None: ...


class DebouncedScheduler:
    """Runs the most recently scheduled function once the window goes quiet."""

    def __init__(self):
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def schedule(self, fn: Callable[[], None], delay: float) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(delay, self._run, args=(fn,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _run(self, fn: Callable[[], None]) -> None:
        with self._lock:
            self._timer = None
        fn()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class ManualScheduler:
    """Records scheduled work; ``fire()`` runs it on demand."""

    def __init__(self):
        self._pending: Optional[Callable[[], None]] = None
        self.schedule_calls = 0
        self.last_delay: Optional[float] = None

    def schedule(self, fn: Callable[[], None], delay: float) -> None:
        self._pending = fn
        self.schedule_calls += 1
        self.last_delay = delay

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def fire(self) -> bool:
        fn, self._pending = self._pending, None
        if fn is None:
            return False
        fn()
        return True

    def cancel(self) -> None:
        self._pending = None
