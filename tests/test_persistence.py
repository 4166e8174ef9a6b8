"""Tests for SQLite scan history and the background writer."""

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from blesense.database import get_db
from blesense.scanning.models import (
    DataPoint,
    DeviceRecord,
    PersistenceError,
    RawObservation,
    ScanSession,
)
from blesense.scanning.persistence import PersistenceWriter

T0 = datetime(2025, 6, 1, 12, 0, 0)


def make_record(device_id='AA:BB:CC:DD:EE:FF', rssi=-60, when=T0, count=1):
    record = DeviceRecord.from_observation(
        RawObservation(
            device_id=device_id,
            rssi=rssi,
            local_name='Sensor',
            manufacturer_data={'76': b'\x02'},
            service_uuids=('0000180f-0000-1000-8000-00805f9b34fb',),
            connectable=True,
        ),
        when,
    )
    for _ in range(count - 1):
        record = record.merged(RawObservation(device_id=device_id, rssi=rssi), when)
    return record


class TestSQLiteGateway:
    """Tests for SQLiteGateway against a temporary database."""

    def test_tables_created(self, gateway):
        with get_db() as conn:
            tables = {row['name'] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )}
            indexes = {row['name'] for row in conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'index'"
            )}
        assert {'devices', 'scan_sessions', 'device_detections', 'data_points', 'settings'} <= tables
        assert 'idx_datapoints_timestamp' in indexes
        assert 'idx_detections_session_device' in indexes

    def test_upsert_device_is_idempotent(self, gateway):
        gateway.upsert_device(make_record())
        gateway.upsert_device(make_record(rssi=-70, count=3))

        with get_db() as conn:
            rows = conn.execute('SELECT * FROM devices').fetchall()
        assert len(rows) == 1
        assert rows[0]['total_detections'] == 3
        assert rows[0]['name'] == 'Sensor'
        assert rows[0]['device_type'] == 'Apple Device'

    def test_session_round_trip(self, gateway):
        session = ScanSession.start('100', T0, {'scan_duration': 30.0})
        gateway.upsert_session(session)

        ended = session.end(['A', 'B'], T0 + timedelta(seconds=45))
        gateway.upsert_session(ended)

        sessions = gateway.query_recent_sessions()
        assert len(sessions) == 1
        assert sessions[0] == ended
        assert sessions[0].duration == timedelta(seconds=45)

    def test_sessions_newest_first(self, gateway):
        for i in range(3):
            gateway.upsert_session(ScanSession.start(str(i), T0 + timedelta(minutes=i)))

        sessions = gateway.query_recent_sessions(limit=2)
        assert [s.session_id for s in sessions] == ['2', '1']

    def test_session_update_keeps_detections(self, gateway):
        session = ScanSession.start('1', T0)
        gateway.upsert_session(session)
        record = make_record()
        gateway.upsert_device(record)
        gateway.insert_detection('1', record)

        gateway.upsert_session(session.end([record.device_id], T0 + timedelta(seconds=5)))

        with get_db() as conn:
            assert conn.execute('SELECT COUNT(*) FROM device_detections').fetchone()[0] == 1

    def test_detection_requires_known_session(self, gateway):
        record = make_record()
        gateway.upsert_device(record)
        with pytest.raises(PersistenceError):
            gateway.insert_detection('missing', record)

    def test_data_points_ascending_with_range(self, gateway):
        for i in (3, 1, 2, 0):
            gateway.insert_data_point(DataPoint(
                timestamp=T0 + timedelta(seconds=10 * i),
                device_count=i,
                unique_device_types=1 if i else 0,
                average_rssi=-60.5 if i else None,
                min_rssi=-70 if i else None,
                max_rssi=-50 if i else None,
                scan_duration=10.0,
            ))

        points = gateway.query_data_points()
        assert [p.device_count for p in points] == [0, 1, 2, 3]
        assert points[0].average_rssi is None
        assert points[1].average_rssi == -60.5

        ranged = gateway.query_data_points(T0 + timedelta(seconds=10), T0 + timedelta(seconds=20))
        assert [p.device_count for p in ranged] == [1, 2]

        limited = gateway.query_data_points(limit=2)
        assert [p.device_count for p in limited] == [0, 1]

    def test_trends_and_top_devices(self, gateway):
        gateway.upsert_session(ScanSession.start('1', T0))
        busy = make_record('AA:00:00:00:00:01', rssi=-50, count=3)
        quiet = make_record('AA:00:00:00:00:02', rssi=-80)
        gateway.upsert_device(busy)
        gateway.upsert_device(quiet)
        for _ in range(3):
            gateway.insert_detection('1', busy)
        gateway.insert_detection('1', quiet)

        trends = gateway.query_discovery_trends(T0 - timedelta(days=1), T0 + timedelta(days=1))
        assert sum(t['total_detections'] for t in trends) == 4
        assert max(t['unique_devices'] for t in trends) == 2

        top = gateway.query_top_devices(limit=1)
        assert top[0]['id'] == 'AA:00:00:00:00:01'
        assert top[0]['recent_detections'] == 3

    def test_statistics_and_export(self, gateway):
        gateway.upsert_session(ScanSession.start('1', T0))
        record = make_record()
        gateway.upsert_device(record)
        gateway.insert_detection('1', record)
        gateway.insert_data_point(DataPoint(timestamp=T0, device_count=1, unique_device_types=1))

        stats = gateway.query_statistics()
        assert stats['total_sessions'] == 1
        assert stats['total_devices'] == 1
        assert stats['total_detections'] == 1
        assert stats['average_rssi'] == -60
        assert stats['device_types'] == [{'device_type': 'Apple Device', 'count': 1}]

        export = gateway.export()
        assert export['statistics'] == stats
        assert len(export['sessions']) == 1
        assert len(export['data_points']) == 1
        assert export['date_range'] == {'start': None, 'end': None}

    def test_statistics_empty_average_is_null(self, gateway):
        assert gateway.query_statistics()['average_rssi'] is None

    def test_clear_old_data(self, gateway):
        old = T0 - timedelta(days=40)
        gateway.upsert_session(ScanSession.start('old', old).end([], old + timedelta(minutes=5)))
        gateway.upsert_session(ScanSession.start('new', T0))
        record = make_record(when=old)
        gateway.upsert_device(record)
        gateway.insert_detection('old', record)
        gateway.insert_data_point(DataPoint(timestamp=old, device_count=0, unique_device_types=0))
        gateway.insert_data_point(DataPoint(timestamp=T0, device_count=0, unique_device_types=0))

        deleted = gateway.clear_old_data(30 * 86400, now=T0)

        assert deleted == {'device_detections': 1, 'data_points': 1, 'scan_sessions': 1}
        assert [s.session_id for s in gateway.query_recent_sessions()] == ['new']
        assert len(gateway.query_data_points()) == 1

    def test_clear_old_data_keeps_active_session(self, gateway):
        started = T0 - timedelta(hours=1)
        gateway.upsert_session(ScanSession.start('live', started))
        record = make_record(when=started)
        gateway.upsert_device(record)
        gateway.insert_detection('live', record)

        deleted = gateway.clear_old_data(0, now=T0)

        assert deleted['device_detections'] == 1
        assert deleted['scan_sessions'] == 0
        assert [s.session_id for s in gateway.query_recent_sessions()] == ['live']
        gateway.insert_detection('live', make_record())
        with get_db() as conn:
            assert conn.execute('SELECT COUNT(*) FROM device_detections').fetchone()[0] == 1


class TestPersistenceWriter:
    """Tests for the background write queue."""

    def test_enqueue_drops_when_queue_full(self):
        writer = PersistenceWriter(MagicMock(), queue_size=2)

        assert writer.enqueue('upsert_device', 'A') is True
        assert writer.enqueue('upsert_device', 'B') is True
        assert writer.enqueue('upsert_device', 'C') is False

        assert writer._dropped == 1
        assert writer._queue.qsize() == 2

    def test_writes_are_delivered_in_order(self):
        gateway = MagicMock()
        writer = PersistenceWriter(gateway)
        writer.start()
        try:
            writer.enqueue('upsert_session', 's')
            writer.enqueue('upsert_device', 'd')
            writer.enqueue('insert_detection', '1', 'd')
            assert writer.flush(timeout=5)
        finally:
            writer.stop()

        assert [c[0] for c in gateway.method_calls] == ['upsert_session', 'upsert_device', 'insert_detection']
        assert writer.stats['written'] == 3

    def test_failed_write_is_retried_then_dropped(self):
        gateway = MagicMock()
        gateway.insert_data_point.side_effect = PersistenceError('database is locked')
        writer = PersistenceWriter(gateway, max_retries=3, retry_delay=0)
        writer.start()
        try:
            writer.enqueue('insert_data_point', 'point')
            writer.enqueue('upsert_device', 'd')
            assert writer.flush(timeout=5)
        finally:
            writer.stop()

        assert gateway.insert_data_point.call_count == 3
        gateway.upsert_device.assert_called_once_with('d')
        assert writer.stats['failed'] == 1

    def test_transient_failure_recovers(self):
        gateway = MagicMock()
        gateway.upsert_device.side_effect = [PersistenceError('busy'), None]
        writer = PersistenceWriter(gateway, retry_delay=0)
        writer.start()
        try:
            writer.enqueue('upsert_device', 'd')
            assert writer.flush(timeout=5)
        finally:
            writer.stop()

        assert gateway.upsert_device.call_count == 2
        assert writer.stats['failed'] == 0

    def test_enqueue_never_blocks_caller(self):
        gateway = MagicMock()
        release = threading.Event()
        gateway.upsert_device.side_effect = lambda *args: release.wait(5)
        writer = PersistenceWriter(gateway, queue_size=1)
        writer.start()
        try:
            for i in range(10):
                writer.enqueue('upsert_device', i)
            assert writer._dropped > 0
        finally:
            release.set()
            writer.stop()

    def test_flush_times_out(self):
        writer = PersistenceWriter(MagicMock())
        writer.enqueue('upsert_device', 'never-drained')
        assert writer.flush(timeout=0.05) is False
