"""
Configuration for blesense.

Values come from environment variables with typed fallbacks. Invalid values
fall back to the defaults.
"""

from __future__ import annotations

import os
from pathlib import Path


def _get_env(key: str, default: str) -> str:
    return os.environ.get(f'BLESENSE_{key}', default)


def _get_env_int(key: str, default: int) -> int:
    try:
        return int(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_float(key: str, default: float) -> float:
    try:
        return float(_get_env(key, str(default)))
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    value = _get_env(key, '').strip().lower()
    if not value:
        return default
    return value in ('1', 'true', 'yes', 'on')


# Web server
HOST = _get_env('HOST', '0.0.0.0')
PORT = _get_env_int('PORT', 5060)
DEBUG = _get_env_bool('DEBUG', False)

# Logging
LOG_LEVEL = _get_env('LOG_LEVEL', 'INFO').upper()

# Storage
DB_DIR = Path(_get_env('DB_DIR', str(Path.home() / '.blesense')))
DB_PATH = Path(_get_env('DB_PATH', str(DB_DIR / 'bluetooth_passive_sensing.db')))

# Aggregation
AGGREGATION_INTERVAL = _get_env_float('AGGREGATION_INTERVAL', 10.0)
HISTORY_CAPACITY = _get_env_int('HISTORY_CAPACITY', 60)

# Registry
RECENT_WINDOW = _get_env_float('RECENT_WINDOW', 30.0)

# Persistence writer
WRITER_QUEUE_SIZE = _get_env_int('WRITER_QUEUE_SIZE', 10000)
WRITER_MAX_RETRIES = _get_env_int('WRITER_MAX_RETRIES', 3)
