"""
Clock and one-shot timer primitives.

Everything time-dependent in the engine goes through a clock so phase
timers and aggregation ticks can be driven deterministically in tests.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> datetime: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class ThreadTimer:
    """One-shot timer on a daemon thread."""

    def __init__(self, delay: float, callback: Callable[[], None], name: Optional[str] = None):
        self._timer = threading.Timer(max(0.0, delay), callback)
        self._timer.daemon = True
        if name:
            self._timer.name = name
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    @property
    def active(self) -> bool:
        return self._timer.is_alive()


class SystemClock:
    """Wall clock backed by ``threading.Timer``."""

    def now(self) -> datetime:
        return datetime.now()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ThreadTimer:
        return ThreadTimer(delay, callback, name='blesense-timer')


class TimerGroup:
    """
    Set of named timers cancelled as a unit.

    Starting a timer under a name that is already pending cancels the old one
    first, so a name never has two live timers.
    """

    def __init__(self, clock: Clock):
        self._clock = clock
        self._timers: dict[str, TimerHandle] = {}
        self._lock = threading.Lock()

    def start(self, name: str, delay: float, callback: Callable[[], None]) -> None:
        with self._lock:
            previous = self._timers.pop(name, None)
            if previous is not None:
                previous.cancel()
            self._timers[name] = self._clock.call_later(delay, callback)

    def cancel(self, name: str) -> None:
        with self._lock:
            handle = self._timers.pop(name, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._timers.values())
            self._timers.clear()
        for handle in handles:
            handle.cancel()

    def discard(self, name: str) -> None:
        """Forget a timer that has already fired."""
        with self._lock:
            self._timers.pop(name, None)

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._timers.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
