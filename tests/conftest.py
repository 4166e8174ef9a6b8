"""Pytest configuration and fixtures."""

from __future__ import annotations

import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import patch

import pytest
from flask import Flask

from blesense.scanning.models import RawObservation, ScanConfig, SourceUnavailableError
from blesense.scanning.source import ObservationSource

START_TIME = datetime(2025, 6, 1, 12, 0, 0)


class ManualTimer:
    """Timer handle driven by ManualClock.advance()."""

    def __init__(self, due: datetime, callback: Callable[[], None], seq: int):
        self.due = due
        self.callback = callback
        self.seq = seq
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock. Timers fire only inside advance()."""

    def __init__(self, start: datetime = START_TIME):
        self._now = start
        self._timers: list[ManualTimer] = []
        self._seq = 0

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        self._seq += 1
        timer = ManualTimer(self._now + timedelta(seconds=delay), callback, self._seq)
        self._timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order."""
        target = self._now + timedelta(seconds=seconds)
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.due)
            timer.callback()
        self._now = target

    def advance_to(self, seconds_from_start: float) -> None:
        self.advance((START_TIME + timedelta(seconds=seconds_from_start) - self._now).total_seconds())

    @property
    def pending(self) -> list[ManualTimer]:
        return [t for t in self._timers if not t.cancelled]


class FakeObservationSource(ObservationSource):
    """In-memory observation source that records every call."""

    def __init__(self, ready: bool = True, fail_subscribe: bool = False):
        self.ready = ready
        self.fail_subscribe = fail_subscribe
        self.subscribe_count = 0
        self.unsubscribe_count = 0
        self.configs: list[ScanConfig] = []
        self._on_observation: Optional[Callable[[RawObservation], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None
        self._last_on_observation: Optional[Callable[[RawObservation], None]] = None

    @property
    def subscribed(self) -> bool:
        return self._on_observation is not None

    def is_ready(self) -> bool:
        return self.ready

    def subscribe(self, config, on_observation, on_error) -> None:
        self.subscribe_count += 1
        self.configs.append(config)
        if self.fail_subscribe:
            raise SourceUnavailableError('Radio busy')
        self._on_observation = on_observation
        self._on_error = on_error
        self._last_on_observation = on_observation

    def unsubscribe(self) -> None:
        self.unsubscribe_count += 1
        self._on_observation = None
        self._on_error = None

    def emit(self, device_id: str, rssi: int = -60, **kwargs) -> bool:
        """Deliver an observation. Returns False if nothing is subscribed."""
        if self._on_observation is None:
            return False
        self._on_observation(RawObservation(device_id=device_id, rssi=rssi, **kwargs))
        return True

    def emit_late(self, device_id: str, rssi: int = -60, **kwargs) -> None:
        """Deliver through the most recent callback even after unsubscribe."""
        if self._last_on_observation is not None:
            self._last_on_observation(RawObservation(device_id=device_id, rssi=rssi, **kwargs))

    def emit_error(self, message: str) -> bool:
        if self._on_error is None:
            return False
        self._on_error(message)
        return True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def source():
    return FakeObservationSource()


@pytest.fixture
def temp_db():
    """Use a temporary database for each test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        test_db_path = Path(tmpdir) / 'test_blesense.db'
        test_db_dir = Path(tmpdir)

        with patch('blesense.database.DB_PATH', test_db_path), \
             patch('blesense.database.DB_DIR', test_db_dir):
            from blesense.database import close_db, init_db

            init_db()
            yield test_db_path
            close_db()


@pytest.fixture
def gateway(temp_db):
    from blesense.scanning.persistence import SQLiteGateway

    return SQLiteGateway()


@pytest.fixture
def engine(source, clock, gateway):
    """Scan engine on the fake source, manual clock and temp database."""
    from blesense.scanning.engine import ScanEngine
    from blesense.scanning.persistence import PersistenceWriter

    scan_engine = ScanEngine(
        source,
        gateway=gateway,
        clock=clock,
        writer=PersistenceWriter(gateway, retry_delay=0),
    )
    yield scan_engine
    scan_engine.shutdown()


@pytest.fixture
def app(engine):
    """Create Flask application for testing."""
    from routes import register_blueprints

    flask_app = Flask(__name__)
    register_blueprints(flask_app)
    flask_app.config['TESTING'] = True

    with patch('routes.scanning.get_scan_engine', return_value=engine), \
         patch('routes.history.get_scan_engine', return_value=engine):
        yield flask_app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
