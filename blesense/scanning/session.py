"""
Scan session lifecycle tracking.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from .models import ScanSession
from .timers import Clock, SystemClock

logger = logging.getLogger('blesense.scanning.session')


class SessionTracker:
    """
    Owns the single active scan session.

    Session ids are derived from the start time in milliseconds and bumped
    when two sessions would otherwise share one.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._current: Optional[ScanSession] = None
        self._last_id = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[ScanSession]:
        """The active session, or the most recently ended one."""
        return self._current

    @property
    def is_active(self) -> bool:
        return self._current is not None and self._current.is_active

    def _next_id(self, now: datetime) -> str:
        candidate = int(now.timestamp() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    def start(self, scan_settings: Optional[dict[str, Any]] = None) -> Optional[ScanSession]:
        """
        Begin a new session.

        Returns:
            The new session, or None if one is already active.
        """
        with self._lock:
            if self._current is not None and self._current.is_active:
                logger.warning(f"Session {self._current.session_id} already active")
                return None
            now = self._clock.now()
            self._current = ScanSession.start(self._next_id(now), now, scan_settings)
            logger.info(f"Scan session {self._current.session_id} started")
            return self._current

    def end(self, discovered_ids: list[str]) -> Optional[ScanSession]:
        """
        End the active session, freezing its discovered-device list.

        Returns:
            The ended session, or None if no session was active.
        """
        with self._lock:
            if self._current is None or not self._current.is_active:
                return None
            self._current = self._current.end(discovered_ids, self._clock.now())
            logger.info(
                f"Scan session {self._current.session_id} ended: "
                f"{self._current.devices_discovered} devices in "
                f"{self._current.duration.total_seconds():.1f}s"
            )
            return self._current

    def discard(self) -> None:
        """Drop an active session that never got under way."""
        with self._lock:
            if self._current is not None and self._current.is_active:
                logger.debug(f"Discarding session {self._current.session_id}")
                self._current = None

    def session_duration(self) -> timedelta:
        """Live duration while active, frozen duration once ended, zero if none."""
        session = self._current
        if session is None:
            return timedelta(0)
        return session.session_duration(self._clock.now())
