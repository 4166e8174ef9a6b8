"""
Passive BLE scan ingestion for blesense.

Provides the device registry, the battery-aware duty-cycle scheduler,
session tracking, time-series aggregation and SQLite persistence, wired
together by :class:`ScanEngine`.
"""

from .aggregation import AggregationEngine, DataPointHistory, compute_data_point, scan_statistics
from .classifier import DEVICE_TYPE_RULES, classify_device
from .constants import (
    # Event types
    EVENT_DEVICE_DISCOVERED,
    EVENT_DEVICE_UPDATED,
    EVENT_DEVICE_COUNT,
    EVENT_SCAN_STATUS,
    EVENT_SCAN_ERROR,
    EVENT_AGGREGATE_TICK,
    EVENT_PHASE_CHANGED,
    EVENT_PING,
    # Sort keys
    SORT_RSSI,
    SORT_NAME,
    SORT_LAST_SEEN,
    SORT_DETECTION_COUNT,
)
from .duty_cycle import DutyCycleScheduler
from .engine import ScanEngine, get_scan_engine, reset_scan_engine
from .events import EventBus
from .models import (
    AppState,
    BatteryProfile,
    ConfigurationError,
    DataPoint,
    DeviceQuery,
    DeviceRecord,
    PersistenceError,
    RawObservation,
    ScanConfig,
    ScanError,
    ScanEvent,
    ScanSession,
    ScanState,
    ScanStatus,
    SourceUnavailableError,
)
from .persistence import PersistenceGateway, PersistenceWriter, SQLiteGateway, init_scan_tables
from .registry import DeviceRegistry
from .session import SessionTracker
from .source import BleakObservationSource, ObservationSource, observation_from_advertisement
from .timers import Clock, SystemClock, TimerGroup

__all__ = [
    # Engine
    'ScanEngine',
    'get_scan_engine',
    'reset_scan_engine',

    # Components
    'DeviceRegistry',
    'DutyCycleScheduler',
    'SessionTracker',
    'AggregationEngine',
    'DataPointHistory',
    'EventBus',

    # Aggregation
    'compute_data_point',
    'scan_statistics',

    # Classification
    'DEVICE_TYPE_RULES',
    'classify_device',

    # Models
    'AppState',
    'BatteryProfile',
    'DataPoint',
    'DeviceQuery',
    'DeviceRecord',
    'RawObservation',
    'ScanConfig',
    'ScanEvent',
    'ScanSession',
    'ScanState',
    'ScanStatus',

    # Errors
    'ScanError',
    'SourceUnavailableError',
    'ConfigurationError',
    'PersistenceError',

    # Observation sources
    'ObservationSource',
    'BleakObservationSource',
    'observation_from_advertisement',

    # Persistence
    'PersistenceGateway',
    'PersistenceWriter',
    'SQLiteGateway',
    'init_scan_tables',

    # Time
    'Clock',
    'SystemClock',
    'TimerGroup',

    # Constants - Event types
    'EVENT_DEVICE_DISCOVERED',
    'EVENT_DEVICE_UPDATED',
    'EVENT_DEVICE_COUNT',
    'EVENT_SCAN_STATUS',
    'EVENT_SCAN_ERROR',
    'EVENT_AGGREGATE_TICK',
    'EVENT_PHASE_CHANGED',
    'EVENT_PING',

    # Constants - Sort keys
    'SORT_RSSI',
    'SORT_NAME',
    'SORT_LAST_SEEN',
    'SORT_DETECTION_COUNT',
]
