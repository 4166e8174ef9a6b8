"""
Durable storage for devices, sessions, detections and data points.

The :class:`SQLiteGateway` talks to the shared SQLite database. Writes from the
ingestion path go through :class:`PersistenceWriter`, a bounded queue drained
by a daemon thread, so a slow or failing store never blocks live discovery.
"""

from __future__ import annotations

import json
import logging
import queue
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from blesense.database import get_db

from .models import DataPoint, DeviceRecord, PersistenceError, ScanSession

logger = logging.getLogger('blesense.scanning.persistence')

DEFAULT_WRITER_QUEUE_SIZE = 10000
DEFAULT_WRITER_MAX_RETRIES = 3

# Pause between retries of a failed write
WRITER_RETRY_DELAY = 0.1


def _to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000)


def _now_ms() -> int:
    return int(time.time() * 1000)


class PersistenceGateway(ABC):
    """Sink for scan history. Device and session writes are upserts."""

    @abstractmethod
    def upsert_device(self, record: DeviceRecord) -> None: ...

    @abstractmethod
    def insert_detection(self, session_id: str, record: DeviceRecord) -> None: ...

    @abstractmethod
    def upsert_session(self, session: ScanSession) -> None: ...

    @abstractmethod
    def insert_data_point(self, point: DataPoint) -> None: ...

    @abstractmethod
    def query_data_points(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DataPoint]:
        """Data points in ascending timestamp order."""

    @abstractmethod
    def query_recent_sessions(self, limit: int = 50) -> list[ScanSession]:
        """Sessions in descending start-time order."""


# =============================================================================
# SCHEMA
# =============================================================================

_SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS devices (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        local_name TEXT,
        device_type TEXT,
        manufacturer_data TEXT,
        service_uuids TEXT,
        first_seen INTEGER NOT NULL,
        last_seen INTEGER NOT NULL,
        total_detections INTEGER DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS scan_sessions (
        id TEXT PRIMARY KEY,
        start_time INTEGER NOT NULL,
        end_time INTEGER,
        duration INTEGER,
        devices_discovered INTEGER DEFAULT 0,
        device_ids TEXT,
        scan_settings TEXT,
        status TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS device_detections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        rssi INTEGER NOT NULL,
        connectable INTEGER NOT NULL,
        tx_power_level INTEGER,
        detected_at INTEGER NOT NULL,
        FOREIGN KEY (session_id) REFERENCES scan_sessions (id),
        FOREIGN KEY (device_id) REFERENCES devices (id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS data_points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        device_count INTEGER NOT NULL,
        average_rssi REAL,
        min_rssi INTEGER,
        max_rssi INTEGER,
        unique_device_types INTEGER,
        scan_duration REAL,
        created_at INTEGER NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices (last_seen)',
    'CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON scan_sessions (start_time)',
    'CREATE INDEX IF NOT EXISTS idx_detections_session_device ON device_detections (session_id, device_id)',
    'CREATE INDEX IF NOT EXISTS idx_detections_detected_at ON device_detections (detected_at)',
    'CREATE INDEX IF NOT EXISTS idx_datapoints_timestamp ON data_points (timestamp)',
)


def init_scan_tables() -> None:
    """Create the scan history tables and indexes if missing."""
    with get_db() as conn:
        for statement in _SCHEMA:
            conn.execute(statement)


# =============================================================================
# SQLITE GATEWAY
# =============================================================================


class SQLiteGateway(PersistenceGateway):
    """
    Scan history stored in the blesense SQLite database.

    Every ``sqlite3.Error`` is re-raised as :class:`PersistenceError`.
    """

    def __init__(self, initialize: bool = True):
        if initialize:
            try:
                init_scan_tables()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to create scan tables: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> None:
        try:
            with get_db() as conn:
                conn.execute(sql, params)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def _fetch(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            with get_db() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_device(self, record: DeviceRecord) -> None:
        manufacturer_data = {k: v.hex() for k, v in record.manufacturer_data.items()}
        self._execute(
            '''
            INSERT INTO devices (
                id, name, local_name, device_type, manufacturer_data,
                service_uuids, first_seen, last_seen, total_detections,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                local_name = excluded.local_name,
                device_type = excluded.device_type,
                manufacturer_data = excluded.manufacturer_data,
                service_uuids = excluded.service_uuids,
                last_seen = excluded.last_seen,
                total_detections = excluded.total_detections,
                updated_at = excluded.updated_at
            ''',
            (
                record.device_id,
                record.display_name,
                record.local_name,
                record.device_type,
                json.dumps(manufacturer_data),
                ','.join(record.service_uuids),
                _to_ms(record.first_seen),
                _to_ms(record.last_seen),
                record.detection_count,
                _to_ms(record.first_seen),
                _now_ms(),
            ),
        )

    def insert_detection(self, session_id: str, record: DeviceRecord) -> None:
        self._execute(
            '''
            INSERT INTO device_detections (
                session_id, device_id, rssi, connectable, tx_power_level, detected_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ''',
            (
                session_id,
                record.device_id,
                record.rssi,
                1 if record.connectable else 0,
                record.tx_power,
                _to_ms(record.last_seen),
            ),
        )

    def upsert_session(self, session: ScanSession) -> None:
        duration_ms = None
        if session.duration is not None:
            duration_ms = int(session.duration.total_seconds() * 1000)
        self._execute(
            '''
            INSERT INTO scan_sessions (
                id, start_time, end_time, duration, devices_discovered,
                device_ids, scan_settings, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                end_time = excluded.end_time,
                duration = excluded.duration,
                devices_discovered = excluded.devices_discovered,
                device_ids = excluded.device_ids,
                scan_settings = excluded.scan_settings,
                status = excluded.status
            ''',
            (
                session.session_id,
                _to_ms(session.start_time),
                _to_ms(session.end_time),
                duration_ms,
                session.devices_discovered,
                json.dumps(list(session.device_ids)),
                json.dumps(session.scan_settings, default=str),
                session.status,
                _now_ms(),
            ),
        )

    def insert_data_point(self, point: DataPoint) -> None:
        self._execute(
            '''
            INSERT INTO data_points (
                timestamp, device_count, average_rssi, min_rssi, max_rssi,
                unique_device_types, scan_duration, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                _to_ms(point.timestamp),
                point.device_count,
                point.average_rssi,
                point.min_rssi,
                point.max_rssi,
                point.unique_device_types,
                point.scan_duration,
                _now_ms(),
            ),
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query_data_points(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[DataPoint]:
        conditions = []
        params: list[Any] = []
        if start is not None:
            conditions.append('timestamp >= ?')
            params.append(_to_ms(start))
        if end is not None:
            conditions.append('timestamp <= ?')
            params.append(_to_ms(end))

        sql = 'SELECT * FROM data_points'
        if conditions:
            sql += ' WHERE ' + ' AND '.join(conditions)
        sql += ' ORDER BY timestamp ASC, id ASC'
        if limit is not None:
            sql += ' LIMIT ?'
            params.append(limit)

        return [self._data_point_from_row(row) for row in self._fetch(sql, tuple(params))]

    def query_recent_sessions(self, limit: int = 50) -> list[ScanSession]:
        rows = self._fetch(
            'SELECT * FROM scan_sessions ORDER BY start_time DESC LIMIT ?',
            (limit,),
        )
        return [self._session_from_row(row) for row in rows]

    def query_discovery_trends(self, start: datetime, end: datetime) -> list[dict]:
        """Per-day unique devices, detection totals and RSSI range."""
        rows = self._fetch(
            '''
            SELECT
                DATE(detected_at / 1000, 'unixepoch') AS date,
                COUNT(DISTINCT device_id) AS unique_devices,
                COUNT(*) AS total_detections,
                AVG(rssi) AS average_rssi,
                MIN(rssi) AS min_rssi,
                MAX(rssi) AS max_rssi
            FROM device_detections
            WHERE detected_at BETWEEN ? AND ?
            GROUP BY DATE(detected_at / 1000, 'unixepoch')
            ORDER BY date ASC
            ''',
            (_to_ms(start), _to_ms(end)),
        )
        return [dict(row) for row in rows]

    def query_top_devices(self, limit: int = 10) -> list[dict]:
        """Devices ranked by detection frequency."""
        rows = self._fetch(
            '''
            SELECT
                d.id,
                d.name,
                d.local_name,
                d.device_type,
                d.total_detections,
                COUNT(dd.device_id) AS recent_detections,
                AVG(dd.rssi) AS average_rssi,
                MAX(dd.detected_at) AS last_detected
            FROM devices d
            LEFT JOIN device_detections dd ON d.id = dd.device_id
            GROUP BY d.id, d.name, d.local_name, d.device_type, d.total_detections
            ORDER BY recent_detections DESC, d.total_detections DESC
            LIMIT ?
            ''',
            (limit,),
        )
        devices = []
        for row in rows:
            device = dict(row)
            last_detected = _from_ms(device['last_detected'])
            device['last_detected'] = last_detected.isoformat() if last_detected else None
            devices.append(device)
        return devices

    def query_statistics(self) -> dict:
        """Totals across the whole history."""
        try:
            with get_db() as conn:
                total_sessions = conn.execute('SELECT COUNT(*) FROM scan_sessions').fetchone()[0]
                total_devices = conn.execute('SELECT COUNT(*) FROM devices').fetchone()[0]
                total_detections = conn.execute('SELECT COUNT(*) FROM device_detections').fetchone()[0]
                average_rssi = conn.execute('SELECT AVG(rssi) FROM device_detections').fetchone()[0]
                device_types = conn.execute('''
                    SELECT device_type, COUNT(*) AS count
                    FROM devices
                    GROUP BY device_type
                    ORDER BY count DESC
                ''').fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

        return {
            'total_sessions': total_sessions,
            'total_devices': total_devices,
            'total_detections': total_detections,
            'average_rssi': average_rssi,
            'device_types': [dict(row) for row in device_types],
        }

    def export(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> dict:
        """JSON-ready dump of statistics, sessions, data points and top devices."""
        return {
            'export_timestamp': datetime.now().isoformat(),
            'date_range': {
                'start': start.isoformat() if start else None,
                'end': end.isoformat() if end else None,
            },
            'statistics': self.query_statistics(),
            'sessions': [s.to_dict() for s in self.query_recent_sessions()],
            'data_points': [p.to_dict() for p in self.query_data_points(start, end)],
            'top_devices': self.query_top_devices(),
        }

    def clear_old_data(self, older_than_seconds: float, now: Optional[datetime] = None) -> dict:
        """
        Delete detections, data points and sessions older than the cutoff.

        Active sessions and sessions still referenced by a retained detection
        are kept.

        Returns:
            Number of rows deleted per table.
        """
        now = now or datetime.now()
        cutoff = _to_ms(now - timedelta(seconds=older_than_seconds))
        try:
            with get_db() as conn:
                detections = conn.execute(
                    'DELETE FROM device_detections WHERE detected_at < ?', (cutoff,)
                ).rowcount
                data_points = conn.execute(
                    'DELETE FROM data_points WHERE timestamp < ?', (cutoff,)
                ).rowcount
                sessions = conn.execute(
                    '''
                    DELETE FROM scan_sessions
                    WHERE start_time < ?
                    AND end_time IS NOT NULL
                    AND id NOT IN (SELECT DISTINCT session_id FROM device_detections)
                    ''',
                    (cutoff,),
                ).rowcount
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

        logger.info(
            f"Cleared data older than {older_than_seconds:.0f}s: "
            f"{detections} detections, {data_points} data points, {sessions} sessions"
        )
        return {
            'device_detections': detections,
            'data_points': data_points,
            'scan_sessions': sessions,
        }

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> ScanSession:
        duration = None
        if row['duration'] is not None:
            duration = timedelta(milliseconds=row['duration'])
        device_ids = json.loads(row['device_ids']) if row['device_ids'] else []
        scan_settings = json.loads(row['scan_settings']) if row['scan_settings'] else {}
        return ScanSession(
            session_id=row['id'],
            start_time=_from_ms(row['start_time']),
            end_time=_from_ms(row['end_time']),
            duration=duration,
            devices_discovered=row['devices_discovered'] or 0,
            device_ids=tuple(device_ids),
            scan_settings=scan_settings,
        )

    @staticmethod
    def _data_point_from_row(row: sqlite3.Row) -> DataPoint:
        return DataPoint(
            timestamp=_from_ms(row['timestamp']),
            device_count=row['device_count'],
            average_rssi=row['average_rssi'],
            min_rssi=row['min_rssi'],
            max_rssi=row['max_rssi'],
            unique_device_types=row['unique_device_types'] or 0,
            scan_duration=row['scan_duration'],
        )


# =============================================================================
# BACKGROUND WRITER
# =============================================================================


class PersistenceWriter:
    """
    Fire-and-forget write queue in front of a gateway.

    ``enqueue`` never blocks and never raises: when the queue is full the
    write is dropped and counted. Failed writes are retried up to
    ``max_retries`` times, then dropped and logged.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        queue_size: int = DEFAULT_WRITER_QUEUE_SIZE,
        max_retries: int = DEFAULT_WRITER_MAX_RETRIES,
        retry_delay: float = WRITER_RETRY_DELAY,
    ):
        self.gateway = gateway
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._dropped = 0
        self._failed = 0
        self._written = 0

    @property
    def stats(self) -> dict:
        return {
            'queued': self._queue.qsize(),
            'written': self._written,
            'dropped': self._dropped,
            'failed': self._failed,
        }

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name='blesense-persistence',
                daemon=True,
            )
            self._thread.start()
            logger.info("Persistence writer started")

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the thread."""
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self.flush(timeout)
            self._stop_event.set()
            thread.join(timeout=timeout)
            self._thread = None
            logger.info(f"Persistence writer stopped ({self.stats})")

    def enqueue(self, method: str, *args: Any) -> bool:
        """
        Queue ``gateway.<method>(*args)``.

        Returns:
            False if the write was dropped because the queue is full.
        """
        try:
            self._queue.put_nowait((method, args))
            return True
        except queue.Full:
            self._dropped += 1
            if self._dropped % 1000 == 1:
                logger.warning(f"Persistence queue full, dropped {self._dropped} writes")
            return False

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued write has been handled.

        Returns:
            False if ``timeout`` expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                method, args = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._write(method, args)
            finally:
                self._queue.task_done()

    def _write(self, method: str, args: tuple) -> None:
        handler = getattr(self.gateway, method)
        for attempt in range(1, self.max_retries + 1):
            try:
                handler(*args)
                self._written += 1
                return
            except Exception as e:
                if attempt >= self.max_retries:
                    self._failed += 1
                    logger.error(f"Persistence write {method} failed after {attempt} attempts: {e}")
                    return
                logger.warning(f"Persistence write {method} failed (attempt {attempt}): {e}")
                time.sleep(self.retry_delay)
