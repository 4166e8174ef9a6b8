"""
Scan engine.

Wires the observation source, duty-cycle scheduler, device registry, session
tracker, aggregation and persistence into one command/query surface, and
publishes everything that happens on an :class:`EventBus`.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Optional, Union

import config

from .aggregation import AggregationEngine, scan_statistics
from .constants import (
    DEFAULT_AGGREGATION_INTERVAL,
    DEFAULT_HISTORY_CAPACITY,
    EVENT_AGGREGATE_TICK,
    EVENT_DEVICE_COUNT,
    EVENT_DEVICE_DISCOVERED,
    EVENT_DEVICE_UPDATED,
    EVENT_PHASE_CHANGED,
    EVENT_SCAN_ERROR,
    EVENT_SCAN_STATUS,
    RECENT_ACTIVITY_SECONDS,
)
from .duty_cycle import DutyCycleScheduler
from .events import EventBus
from .models import (
    AppState,
    BatteryProfile,
    DataPoint,
    DeviceQuery,
    DeviceRecord,
    RawObservation,
    ScanConfig,
    ScanSession,
    ScanState,
    ScanStatus,
)
from .persistence import PersistenceGateway, PersistenceWriter, SQLiteGateway
from .registry import DeviceRegistry
from .session import SessionTracker
from .source import BleakObservationSource, ObservationSource
from .timers import Clock, SystemClock, TimerGroup

logger = logging.getLogger('blesense.scanning.engine')


class ScanEngine:
    """
    Passive BLE scan ingestion with battery-aware duty cycling.

    Persistence is fire-and-forget: writes are queued on a
    :class:`PersistenceWriter` and a failing store never reaches the
    ingestion or aggregation path.
    """

    def __init__(
        self,
        source: ObservationSource,
        gateway: Optional[PersistenceGateway] = None,
        clock: Optional[Clock] = None,
        profile: Optional[BatteryProfile] = None,
        aggregation_interval: float = DEFAULT_AGGREGATION_INTERVAL,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        recent_window: float = RECENT_ACTIVITY_SECONDS,
        writer: Optional[PersistenceWriter] = None,
    ):
        self.source = source
        self.clock = clock or SystemClock()
        self.timers = TimerGroup(self.clock)
        self.registry = DeviceRegistry(recent_window_seconds=recent_window)
        self.scheduler = DutyCycleScheduler(source, self.clock, profile, self.timers)
        self.sessions = SessionTracker(self.clock)
        self.aggregation = AggregationEngine(
            self.registry,
            clock=self.clock,
            timers=self.timers,
            interval=aggregation_interval,
            capacity=history_capacity,
            scan_duration=self._scan_duration_in_effect,
        )
        self.events = EventBus(self.clock)
        self.gateway = gateway
        if writer is None and gateway is not None:
            writer = PersistenceWriter(gateway)
        self.writer = writer

        self._foreground_profile = self.scheduler.profile
        self._app_state = AppState.FOREGROUND
        self._discovered: dict[str, None] = {}
        self._starting = False
        self._last_error: Optional[str] = None

        self.scheduler.on_observation = self._ingest
        self.scheduler.on_error = self._on_scan_error
        self.scheduler.on_state_change = self._on_state_change
        self.scheduler.on_stop = self._finalize
        self.registry.add_listener(self._on_merge)
        self.aggregation.add_sink(self._on_data_point)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def start(
        self,
        config: Optional[ScanConfig] = None,
        profile: Optional[BatteryProfile] = None,
    ) -> bool:
        """
        Start a new scan session.

        Clears the registry, opens a session and starts the scheduler.

        Returns:
            True if scanning started, False if already running or the radio
            is unavailable.

        Raises:
            ConfigurationError: if ``config`` or ``profile`` is invalid.
        """
        config = config or ScanConfig()
        config.validate()
        if profile is not None:
            profile.validate()

        with self.scheduler.lock:
            if self.scheduler.state not in (ScanState.IDLE, ScanState.ERROR):
                logger.warning(f"Scan already in progress (state={self.scheduler.state})")
                return False

            if profile is not None:
                self.scheduler.set_battery_profile(profile)
                if self._app_state == AppState.FOREGROUND:
                    self._foreground_profile = profile

            if self.writer is not None:
                self.writer.start()

            self.registry.clear()
            self._discovered = {}
            self._last_error = None
            session = self.sessions.start(config.to_dict())
            if session is None:
                return False

            self._starting = True
            try:
                started = self.scheduler.start(config)
            finally:
                self._starting = False

            if not started:
                self.sessions.discard()
                return False

            self._persist('upsert_session', session)
            self.aggregation.start()
            logger.info(f"Scan session {session.session_id} running")
            return True

    def stop(self) -> Optional[ScanSession]:
        """
        Stop scanning from any state.

        Returns:
            The session that was ended, if one was active.
        """
        session_before = self.sessions.current
        self.scheduler.stop()
        session = self.sessions.current
        if session is not None and session is not session_before:
            return session
        return None

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop scanning, drain pending writes and release the source."""
        self.stop()
        if self.writer is not None:
            self.writer.stop(timeout)
        self.source.close()

    def set_battery_profile(self, profile: BatteryProfile) -> None:
        """
        Replace the battery profile.

        Raises:
            ConfigurationError: if the profile is invalid.
        """
        self.scheduler.set_battery_profile(profile)
        if self._app_state == AppState.FOREGROUND:
            self._foreground_profile = profile

    def set_app_state(self, app_state: Union[AppState, str]) -> None:
        """
        React to the host application moving between foreground and background.

        Only duty-cycle timing changes; the session keeps running.
        """
        app_state = AppState(app_state)
        if app_state == self._app_state:
            return
        self._app_state = app_state

        if app_state == AppState.BACKGROUND:
            logger.info("Entering background scanning mode")
            self.scheduler.set_battery_profile(BatteryProfile.background())
        else:
            logger.info("Resuming foreground scanning mode")
            self.scheduler.set_battery_profile(self._foreground_profile)

    def enable_low_battery_mode(self) -> None:
        logger.info("Low battery mode enabled")
        self.set_battery_profile(BatteryProfile.low_battery())

    def clear_devices(self) -> None:
        """Empty the registry without touching the session."""
        self.registry.clear()
        self.events.publish(EVENT_DEVICE_COUNT, {'count': 0})

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        return self.scheduler.state

    @property
    def is_scanning(self) -> bool:
        return self.scheduler.state.is_running

    @property
    def app_state(self) -> AppState:
        return self._app_state

    @property
    def current_session(self) -> Optional[ScanSession]:
        """The active session, or the most recently ended one."""
        return self.sessions.current

    def devices(self, query: Optional[DeviceQuery] = None) -> list[DeviceRecord]:
        return self.registry.query(query or DeviceQuery(), self.clock.now())

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        return self.registry.get(device_id)

    def statistics(self) -> dict:
        return scan_statistics(self.registry.snapshot(), self.sessions.current, self.clock.now())

    def history(self) -> list[DataPoint]:
        """In-memory data points, oldest first."""
        return self.aggregation.history.points()

    def recent_sessions(self, limit: int = 50) -> list[ScanSession]:
        if self.gateway is None:
            return []
        return self.gateway.query_recent_sessions(limit)

    def data_points(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DataPoint]:
        if self.gateway is None:
            return self.history()
        return self.gateway.query_data_points(start, end, limit)

    def status(self) -> ScanStatus:
        session = self.sessions.current
        return ScanStatus(
            state=self.scheduler.state,
            is_scanning=self.scheduler.state.is_running,
            device_count=self.registry.device_count,
            profile=self.scheduler.profile,
            app_state=self._app_state,
            session=session,
            session_duration=self.sessions.session_duration().total_seconds() if session else None,
            error=self.scheduler.error or self._last_error,
        )

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def _ingest(self, observation: RawObservation) -> None:
        self.registry.merge(observation, self.clock.now())

    def _on_merge(self, record: DeviceRecord, is_new: bool) -> None:
        if is_new:
            self._discovered[record.device_id] = None
            self.events.publish(EVENT_DEVICE_DISCOVERED, record)
            self.events.publish(EVENT_DEVICE_COUNT, {'count': self.registry.device_count})
        else:
            self.events.publish(EVENT_DEVICE_UPDATED, record)

        self._persist('upsert_device', record)
        session = self.sessions.current
        if session is not None and session.is_active:
            self._persist('insert_detection', session.session_id, record)

    def _on_data_point(self, point: DataPoint) -> None:
        self.events.publish(EVENT_AGGREGATE_TICK, point)
        self._persist('insert_data_point', point)

    def _persist(self, method: str, *args) -> None:
        if self.writer is not None:
            self.writer.enqueue(method, *args)

    def _scan_duration_in_effect(self) -> float:
        profile = self.scheduler.profile
        if profile.duty_cycling:
            return profile.scan_duration
        return self.scheduler.config.scan_duration

    # -------------------------------------------------------------------------
    # Scheduler hooks
    # -------------------------------------------------------------------------

    def _on_state_change(self, old: ScanState, new: ScanState) -> None:
        self.events.publish(EVENT_PHASE_CHANGED, {'from': str(old), 'to': str(new)})
        if old.is_running != new.is_running:
            self.events.publish(EVENT_SCAN_STATUS, {'is_scanning': new.is_running, 'state': str(new)})

        if new == ScanState.ERROR and not self._starting:
            self.aggregation.stop()
            self._end_session()

    def _on_scan_error(self, message: str) -> None:
        self._last_error = message
        self.events.publish(EVENT_SCAN_ERROR, {'message': message})

    def _finalize(self) -> None:
        was_aggregating = self.aggregation.is_running
        self.aggregation.stop()
        if was_aggregating:
            self.aggregation.capture()
        self._end_session()

    def _end_session(self) -> None:
        session = self.sessions.end(list(self._discovered))
        if session is not None:
            self._persist('upsert_session', session)


# =============================================================================
# SHARED INSTANCE
# =============================================================================

_scan_engine: Optional[ScanEngine] = None
_scan_engine_lock = threading.Lock()


def get_scan_engine() -> ScanEngine:
    """Get or create the shared scan engine backed by bleak and SQLite."""
    global _scan_engine
    with _scan_engine_lock:
        if _scan_engine is None:
            gateway = SQLiteGateway()
            _scan_engine = ScanEngine(
                BleakObservationSource(),
                gateway=gateway,
                aggregation_interval=config.AGGREGATION_INTERVAL,
                history_capacity=config.HISTORY_CAPACITY,
                recent_window=config.RECENT_WINDOW,
                writer=PersistenceWriter(
                    gateway,
                    queue_size=config.WRITER_QUEUE_SIZE,
                    max_retries=config.WRITER_MAX_RETRIES,
                ),
            )
        return _scan_engine


def reset_scan_engine() -> None:
    """Shut down and forget the shared scan engine."""
    global _scan_engine
    with _scan_engine_lock:
        if _scan_engine is not None:
            _scan_engine.shutdown()
        _scan_engine = None
