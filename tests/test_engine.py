"""Integration tests for the scan engine."""

from unittest.mock import MagicMock

import pytest

from blesense.database import get_db
from blesense.scanning.engine import ScanEngine
from blesense.scanning.models import (
    AppState,
    BatteryProfile,
    ConfigurationError,
    PersistenceError,
    ScanConfig,
    ScanState,
)
from blesense.scanning.persistence import PersistenceWriter


@pytest.fixture
def events(engine):
    received = []
    engine.events.add_listener(received.append)
    return received


def event_types(events):
    return [e.type for e in events]


class TestLifecycle:

    def test_start_opens_session(self, engine, source):
        assert engine.start() is True
        assert engine.state == ScanState.ACTIVE_SCAN
        assert engine.is_scanning
        assert engine.current_session.is_active
        assert engine.current_session.scan_settings['scan_duration'] == 30.0
        assert source.subscribe_count == 1

    def test_start_while_running_is_rejected(self, engine):
        engine.start()
        session = engine.current_session
        assert engine.start() is False
        assert engine.current_session is session

    def test_invalid_config_raises(self, engine):
        with pytest.raises(ConfigurationError):
            engine.start(ScanConfig(scan_timeout=0))
        assert engine.state == ScanState.IDLE
        assert engine.current_session is None

    def test_stop_ends_session_with_discovered_devices(self, engine, source, clock):
        engine.start()
        source.emit('A', -50)
        source.emit('B', -60)
        source.emit('A', -55)
        clock.advance(4)

        session = engine.stop()

        assert engine.state == ScanState.IDLE
        assert session is engine.current_session
        assert session.is_active is False
        assert session.devices_discovered == 2
        assert set(session.device_ids) == {'A', 'B'}
        assert session.duration.total_seconds() == 4

    def test_stop_captures_final_data_point(self, engine, source, clock):
        engine.start()
        source.emit('A', -50)
        clock.advance(3)
        engine.stop()

        history = engine.history()
        assert len(history) == 1
        assert history[0].device_count == 1
        assert history[0].timestamp == clock.now()

    def test_stop_when_idle_returns_nothing(self, engine):
        assert engine.stop() is None

    def test_restart_clears_registry(self, engine, source):
        engine.start()
        source.emit('A', -50)
        first = engine.stop()

        engine.start()
        assert engine.devices() == []
        assert engine.current_session.session_id != first.session_id

    def test_unavailable_radio(self, engine, source, events):
        source.ready = False

        assert engine.start() is False
        assert engine.state == ScanState.ERROR
        assert engine.current_session is None
        assert 'scan_error' in event_types(events)
        assert engine.status().error

        source.ready = True
        assert engine.start() is True
        assert engine.status().error is None

    def test_failure_to_resume_ends_session(self, engine, source, clock):
        engine.start()
        source.emit('A', -50)
        clock.advance(10)
        source.fail_subscribe = True
        clock.advance(5)

        assert engine.state == ScanState.ERROR
        assert engine.current_session.is_active is False
        assert engine.current_session.devices_discovered == 1
        assert not engine.aggregation.is_running
        assert 'Radio busy' in engine.status().error

    def test_continuous_scan_stops_after_duration(self, engine, clock, events):
        engine.start(ScanConfig(scan_duration=30), BatteryProfile(duty_cycling=False))
        assert engine.state == ScanState.CONTINUOUS

        clock.advance(30)

        assert engine.state == ScanState.IDLE
        assert engine.current_session.is_active is False
        status_events = [e.data for e in events if e.type == 'scan_status']
        assert status_events[-1] == {'is_scanning': False, 'state': 'stopping'}

    def test_continuous_scan_still_stops_after_background_round_trip(self, engine, clock):
        engine.start(ScanConfig(scan_duration=30), BatteryProfile(duty_cycling=False))
        engine.set_app_state('background')
        engine.set_app_state('foreground')
        assert engine.state == ScanState.ACTIVE_SCAN

        clock.advance(engine.scheduler.profile.scan_duration)
        assert engine.state == ScanState.CONTINUOUS

        clock.advance(600)
        assert engine.state == ScanState.IDLE
        assert engine.current_session.is_active is False
        assert not engine.timers.pending()


class TestIngestion:

    def test_discovery_and_update_events(self, engine, source, events):
        engine.start()
        source.emit('A', -50)
        source.emit('A', -45, local_name='Thermo')

        types = event_types(events)
        assert types.count('device_discovered') == 1
        assert types.count('device_updated') == 1
        count_events = [e.data for e in events if e.type == 'device_count']
        assert count_events == [{'count': 1}]

        device = engine.get_device('A')
        assert device.rssi == -45
        assert device.display_name == 'Thermo'
        assert device.detection_count == 2

    def test_weak_signal_never_reaches_registry(self, engine, source, events):
        engine.start()
        source.emit('A', -95)
        assert engine.devices() == []
        assert 'device_discovered' not in event_types(events)

    def test_scan_status_events(self, engine, events):
        engine.start()
        engine.stop()

        status = [e.data['is_scanning'] for e in events if e.type == 'scan_status']
        assert status == [True, False]
        phases = [e.data['to'] for e in events if e.type == 'phase_changed']
        assert phases == ['initializing', 'active_scan', 'stopping', 'idle']

    def test_aggregate_ticks_while_scanning(self, engine, source, clock, events):
        engine.start()
        source.emit('A', -50)
        clock.advance(10)

        ticks = [e.data for e in events if e.type == 'aggregate_tick']
        assert len(ticks) == 1
        assert ticks[0].device_count == 1
        assert ticks[0].scan_duration == 10.0

    def test_devices_survive_rest_phase(self, engine, source, clock):
        engine.start()
        source.emit('A', -50)
        clock.advance(12)
        assert engine.state == ScanState.RESTING
        assert [d.device_id for d in engine.devices()] == ['A']

    def test_clear_devices(self, engine, source, events):
        engine.start()
        source.emit('A', -50)
        engine.clear_devices()

        assert engine.devices() == []
        assert engine.current_session.is_active
        assert events[-1].type == 'device_count'
        assert events[-1].data == {'count': 0}

    def test_statistics(self, engine, source, clock):
        engine.start()
        source.emit('A', -40)
        source.emit('B', -60)
        clock.advance(2)

        stats = engine.statistics()
        assert stats['total_devices'] == 2
        assert stats['average_rssi'] == -50
        assert stats['session_duration'] == 2


class TestProfiles:

    def test_background_swaps_timing_without_resubscribing(self, engine, source, clock):
        engine.start()
        session = engine.current_session

        engine.set_app_state('background')
        assert engine.app_state == AppState.BACKGROUND
        assert source.subscribe_count == 1
        assert source.unsubscribe_count == 0

        clock.advance(10)
        assert engine.scheduler.profile == BatteryProfile.background()
        assert engine.current_session is session

    def test_foreground_restores_previous_profile(self, engine, clock):
        custom = BatteryProfile(scan_duration=6, rest_duration=4)
        engine.set_battery_profile(custom)
        engine.start()

        engine.set_app_state(AppState.BACKGROUND)
        clock.advance(6)
        assert engine.scheduler.profile == BatteryProfile.background()

        engine.set_app_state(AppState.FOREGROUND)
        clock.advance(30)
        assert engine.scheduler.profile == custom

    def test_invalid_app_state(self, engine):
        with pytest.raises(ValueError):
            engine.set_app_state('asleep')

    def test_low_battery_mode(self, engine):
        engine.enable_low_battery_mode()
        assert engine.scheduler.profile == BatteryProfile.low_battery()

    def test_start_with_profile(self, engine):
        profile = BatteryProfile.for_platform('android')
        engine.start(profile=profile)
        assert engine.scheduler.profile == profile
        assert engine.status().profile == profile


class TestPersistence:

    def test_history_is_written(self, engine, source, clock, gateway):
        engine.start()
        source.emit('A', -50)
        source.emit('A', -52)
        clock.advance(10)
        engine.stop()
        assert engine.writer.flush(timeout=5)

        sessions = gateway.query_recent_sessions()
        assert len(sessions) == 1
        assert sessions[0].devices_discovered == 1
        assert len(gateway.query_data_points()) == 2

        with get_db() as conn:
            device = conn.execute('SELECT * FROM devices').fetchone()
            detections = conn.execute('SELECT COUNT(*) FROM device_detections').fetchone()[0]
        assert device['id'] == 'A'
        assert device['total_detections'] == 2
        assert detections == 2

    def test_failing_store_never_breaks_ingestion(self, source, clock):
        broken = MagicMock()
        broken.upsert_session.side_effect = PersistenceError('disk I/O error')
        broken.upsert_device.side_effect = PersistenceError('disk I/O error')
        broken.insert_detection.side_effect = PersistenceError('disk I/O error')
        broken.insert_data_point.side_effect = PersistenceError('disk I/O error')
        writer = PersistenceWriter(broken, max_retries=2, retry_delay=0)
        engine = ScanEngine(source, gateway=broken, clock=clock, writer=writer)
        try:
            assert engine.start() is True
            source.emit('A', -50)
            clock.advance(10)

            assert [d.device_id for d in engine.devices()] == ['A']
            assert len(engine.history()) == 1
            assert writer.flush(timeout=5)
            assert writer.stats['failed'] == 4
            assert engine.is_scanning
        finally:
            engine.shutdown()

    def test_without_gateway_uses_memory_history(self, source, clock):
        engine = ScanEngine(source, clock=clock)
        engine.start()
        clock.advance(20)

        assert engine.writer is None
        assert engine.recent_sessions() == []
        assert engine.data_points() == engine.history()
        assert len(engine.data_points()) == 2
        engine.shutdown()
