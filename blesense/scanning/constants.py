"""
Constants for the scanning engine.
"""

from __future__ import annotations

# =============================================================================
# REGISTRY
# =============================================================================

# A device counts as recently active if seen within this many seconds
RECENT_ACTIVITY_SECONDS = 30

# Fallback name when the platform reports none
UNKNOWN_DEVICE_NAME = 'Unknown Device'

# =============================================================================
# SCAN CONFIGURATION DEFAULTS
# =============================================================================

DEFAULT_SCAN_DURATION = 30.0   # seconds
DEFAULT_SCAN_TIMEOUT = 60.0    # seconds
DEFAULT_ALLOW_DUPLICATES = True

# Platform scan-mode hints
SCAN_MODE_OPPORTUNISTIC = 0
SCAN_MODE_LOW_POWER = 1
SCAN_MODE_BALANCED = 2
SCAN_MODE_LOW_LATENCY = 3

SCAN_MODES = (
    SCAN_MODE_OPPORTUNISTIC,
    SCAN_MODE_LOW_POWER,
    SCAN_MODE_BALANCED,
    SCAN_MODE_LOW_LATENCY,
)

DEFAULT_SCAN_MODE = SCAN_MODE_BALANCED

# =============================================================================
# BATTERY PROFILE DEFAULTS
# =============================================================================

DEFAULT_DUTY_CYCLING = True
DEFAULT_PHASE_SCAN_SECONDS = 10.0
DEFAULT_PHASE_REST_SECONDS = 5.0
DEFAULT_MIN_RSSI_THRESHOLD = -85    # dBm
DEFAULT_BACKGROUND_INTERVAL = 120.0  # seconds
DEFAULT_FOREGROUND_INTERVAL = 30.0   # seconds

# Background: short scans, long rests, strong signals only
BACKGROUND_PHASE_SCAN_SECONDS = 3.0
BACKGROUND_PHASE_REST_SECONDS = 30.0
BACKGROUND_MIN_RSSI_THRESHOLD = -70

# Low battery
LOW_BATTERY_PHASE_SCAN_SECONDS = 3.0
LOW_BATTERY_PHASE_REST_SECONDS = 15.0
LOW_BATTERY_MIN_RSSI_THRESHOLD = -75
LOW_BATTERY_BACKGROUND_INTERVAL = 300.0
LOW_BATTERY_FOREGROUND_INTERVAL = 60.0

# Per-platform tuning: (scan seconds, rest seconds, min RSSI)
PLATFORM_PROFILES = {
    'ios': (8.0, 7.0, -85),
    'android': (5.0, 10.0, -80),
}

# =============================================================================
# AGGREGATION
# =============================================================================

DEFAULT_AGGREGATION_INTERVAL = 10.0  # seconds of wall clock
DEFAULT_HISTORY_CAPACITY = 60        # data points kept in memory

# =============================================================================
# SIGNAL STRENGTH BANDS (dBm)
# =============================================================================

SIGNAL_EXCELLENT = -50
SIGNAL_GOOD = -70
SIGNAL_FAIR = -80

SIGNAL_LABEL_EXCELLENT = 'Excellent'
SIGNAL_LABEL_GOOD = 'Good'
SIGNAL_LABEL_FAIR = 'Fair'
SIGNAL_LABEL_POOR = 'Poor'

# =============================================================================
# DEVICE TYPE LABELS
# =============================================================================

APPLE_COMPANY_ID = '76'  # 0x004C, as a vendor-data key

DEVICE_TYPE_APPLE = 'Apple Device'
DEVICE_TYPE_BATTERY = 'Battery Service'
DEVICE_TYPE_GENERIC_ACCESS = 'Generic Access'
DEVICE_TYPE_GENERIC_ATTRIBUTE = 'Generic Attribute'
DEVICE_TYPE_DEVICE_INFO = 'Device Information'
DEVICE_TYPE_HID = 'HID Device'
DEVICE_TYPE_HEART_RATE = 'Heart Rate Monitor'
DEVICE_TYPE_GENERIC = 'BLE Device'

# 16-bit service identifiers, checked in this order
SERVICE_TYPE_FRAGMENTS = (
    ('180f', DEVICE_TYPE_BATTERY),
    ('1800', DEVICE_TYPE_GENERIC_ACCESS),
    ('1801', DEVICE_TYPE_GENERIC_ATTRIBUTE),
    ('180a', DEVICE_TYPE_DEVICE_INFO),
    ('1812', DEVICE_TYPE_HID),
    ('180d', DEVICE_TYPE_HEART_RATE),
)

# =============================================================================
# SORT KEYS
# =============================================================================

SORT_RSSI = 'rssi'
SORT_NAME = 'name'
SORT_LAST_SEEN = 'last_seen'
SORT_DETECTION_COUNT = 'detection_count'

SORT_KEYS = (SORT_RSSI, SORT_NAME, SORT_LAST_SEEN, SORT_DETECTION_COUNT)

# =============================================================================
# EVENT TYPES
# =============================================================================

EVENT_DEVICE_DISCOVERED = 'device_discovered'
EVENT_DEVICE_UPDATED = 'device_updated'
EVENT_DEVICE_COUNT = 'device_count'
EVENT_SCAN_STATUS = 'scan_status'
EVENT_SCAN_ERROR = 'scan_error'
EVENT_AGGREGATE_TICK = 'aggregate_tick'
EVENT_PHASE_CHANGED = 'phase_changed'
EVENT_PING = 'ping'

# Per-listener queue size for streamed events
EVENT_QUEUE_SIZE = 1000
