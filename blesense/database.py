"""
SQLite storage for blesense.

Holds connection management and the key/value settings table. Scan history
tables are created by :mod:`blesense.scanning.persistence`.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional

import config
from blesense.logging import storage_logger as logger

DB_DIR: Path = config.DB_DIR
DB_PATH: Path = config.DB_PATH

_local = threading.local()
_connections: list[sqlite3.Connection] = []
_connections_lock = threading.Lock()


def _connect() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=10.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA journal_mode=WAL')
    conn.execute('PRAGMA foreign_keys=ON')
    with _connections_lock:
        _connections.append(conn)
    return conn


def _get_connection() -> sqlite3.Connection:
    conn = getattr(_local, 'conn', None)
    path = getattr(_local, 'path', None)
    if conn is None or path != DB_PATH:
        conn = _connect()
        _local.conn = conn
        _local.path = DB_PATH
    return conn


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """
    Yield a thread-local connection, committing on success.

    Rolls back and re-raises on any error.
    """
    conn = _get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def init_db() -> None:
    """Create the settings table."""
    logger.info(f"Initializing database at {DB_PATH}")
    with get_db() as conn:
        conn.execute('''
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                value_type TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')


def close_db() -> None:
    """Close every connection opened by this module."""
    with _connections_lock:
        for conn in _connections:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection: {e}")
        _connections.clear()
    _local.conn = None
    _local.path = None


# =============================================================================
# SETTINGS
# =============================================================================


def _encode(value: Any) -> tuple[str, str]:
    if isinstance(value, bool):
        return json.dumps(value), 'bool'
    if isinstance(value, int):
        return json.dumps(value), 'int'
    if isinstance(value, float):
        return json.dumps(value), 'float'
    if isinstance(value, str):
        return value, 'str'
    return json.dumps(value), 'json'


def _decode(raw: str, value_type: str) -> Any:
    if value_type == 'str':
        return raw
    return json.loads(raw)


def set_setting(key: str, value: Any) -> None:
    """Store a setting, preserving its Python type."""
    raw, value_type = _encode(value)
    with get_db() as conn:
        conn.execute('''
            INSERT INTO settings (key, value, value_type, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                value_type = excluded.value_type,
                updated_at = CURRENT_TIMESTAMP
        ''', (key, raw, value_type))


def get_setting(key: str, default: Any = None) -> Any:
    """Get a setting value, or ``default`` when unset."""
    with get_db() as conn:
        row = conn.execute(
            'SELECT value, value_type FROM settings WHERE key = ?', (key,)
        ).fetchone()
    if row is None:
        return default
    return _decode(row['value'], row['value_type'])


def delete_setting(key: str) -> bool:
    """Delete a setting. Returns True if it existed."""
    with get_db() as conn:
        cursor = conn.execute('DELETE FROM settings WHERE key = ?', (key,))
        return cursor.rowcount > 0


def get_all_settings() -> dict[str, Any]:
    """Get every stored setting."""
    with get_db() as conn:
        rows = conn.execute('SELECT key, value, value_type FROM settings').fetchall()
    return {row['key']: _decode(row['value'], row['value_type']) for row in rows}

