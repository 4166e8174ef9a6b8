"""
Data models for the scanning engine.

Records are immutable; every merge or session transition produces a new
instance instead of mutating the old one.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .classifier import classify_device
from .constants import (
    DEFAULT_ALLOW_DUPLICATES,
    DEFAULT_BACKGROUND_INTERVAL,
    DEFAULT_DUTY_CYCLING,
    DEFAULT_FOREGROUND_INTERVAL,
    DEFAULT_MIN_RSSI_THRESHOLD,
    DEFAULT_PHASE_REST_SECONDS,
    DEFAULT_PHASE_SCAN_SECONDS,
    DEFAULT_SCAN_DURATION,
    DEFAULT_SCAN_MODE,
    DEFAULT_SCAN_TIMEOUT,
    BACKGROUND_MIN_RSSI_THRESHOLD,
    BACKGROUND_PHASE_REST_SECONDS,
    BACKGROUND_PHASE_SCAN_SECONDS,
    LOW_BATTERY_BACKGROUND_INTERVAL,
    LOW_BATTERY_FOREGROUND_INTERVAL,
    LOW_BATTERY_MIN_RSSI_THRESHOLD,
    LOW_BATTERY_PHASE_REST_SECONDS,
    LOW_BATTERY_PHASE_SCAN_SECONDS,
    PLATFORM_PROFILES,
    SCAN_MODES,
    SIGNAL_EXCELLENT,
    SIGNAL_FAIR,
    SIGNAL_GOOD,
    SIGNAL_LABEL_EXCELLENT,
    SIGNAL_LABEL_FAIR,
    SIGNAL_LABEL_GOOD,
    SIGNAL_LABEL_POOR,
    SORT_KEYS,
    SORT_RSSI,
    UNKNOWN_DEVICE_NAME,
)


# =============================================================================
# ERRORS
# =============================================================================


class ScanError(Exception):
    """Base class for scanning errors."""


class SourceUnavailableError(ScanError):
    """The radio is unsupported, powered off or not authorized."""


class ConfigurationError(ScanError, ValueError):
    """A scan configuration or battery profile failed validation."""


class PersistenceError(ScanError):
    """A write or query against the history store failed."""


# =============================================================================
# ENUMS
# =============================================================================


class ScanState(str, Enum):
    """Duty-cycle scheduler states."""
    IDLE = 'idle'
    INITIALIZING = 'initializing'
    ACTIVE_SCAN = 'active_scan'
    RESTING = 'resting'
    CONTINUOUS = 'continuous'
    STOPPING = 'stopping'
    ERROR = 'error'

    def __str__(self) -> str:
        return self.value

    @property
    def is_running(self) -> bool:
        return self in (ScanState.ACTIVE_SCAN, ScanState.RESTING, ScanState.CONTINUOUS)


class AppState(str, Enum):
    """Foreground/background signal from the host application."""
    FOREGROUND = 'foreground'
    BACKGROUND = 'background'

    def __str__(self) -> str:
        return self.value


# =============================================================================
# HELPERS
# =============================================================================


def _bytes_to_hex(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return value


def _hex_to_bytes(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            return value
    return value


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} must be true or false, got {value!r}")
    return value


# =============================================================================
# OBSERVATIONS AND DEVICES
# =============================================================================


@dataclass(frozen=True)
class RawObservation:
    """One advertisement sighting as reported by the observation source."""
    device_id: str
    rssi: int
    platform_name: str = ''
    local_name: Optional[str] = None
    service_uuids: tuple[str, ...] = ()
    manufacturer_data: dict[str, bytes] = field(default_factory=dict)
    service_data: dict[str, bytes] = field(default_factory=dict)
    connectable: bool = False
    tx_power: Optional[int] = None


@dataclass(frozen=True, eq=False)
class DeviceRecord:
    """
    Latest merged state of one device.

    Equality and hashing use the device identifier only, so a record can be
    compared across merges.
    """
    device_id: str
    name: str
    rssi: int
    first_seen: datetime
    last_seen: datetime
    local_name: Optional[str] = None
    service_uuids: tuple[str, ...] = ()
    manufacturer_data: dict[str, bytes] = field(default_factory=dict)
    service_data: dict[str, bytes] = field(default_factory=dict)
    detection_count: int = 1
    connectable: bool = False
    tx_power: Optional[int] = None

    @classmethod
    def from_observation(cls, observation: RawObservation, now: datetime) -> DeviceRecord:
        """Create the first record for a newly seen identifier."""
        return cls(
            device_id=observation.device_id,
            name=observation.platform_name or UNKNOWN_DEVICE_NAME,
            local_name=observation.local_name or None,
            rssi=observation.rssi,
            service_uuids=tuple(dict.fromkeys(observation.service_uuids)),
            manufacturer_data=dict(observation.manufacturer_data),
            service_data=dict(observation.service_data),
            first_seen=now,
            last_seen=now,
            detection_count=1,
            connectable=observation.connectable,
            tx_power=observation.tx_power,
        )

    def merged(self, observation: RawObservation, now: datetime) -> DeviceRecord:
        """
        Return a new record folding in a later observation.

        Current fields (RSSI, connectability, tx power) take the new values.
        Names are kept unless the observation supplies a non-empty one.
        Service identifiers are unioned and vendor/service data keys updated.
        """
        service_uuids = tuple(dict.fromkeys(self.service_uuids + tuple(observation.service_uuids)))
        manufacturer_data = dict(self.manufacturer_data)
        manufacturer_data.update(observation.manufacturer_data)
        service_data = dict(self.service_data)
        service_data.update(observation.service_data)

        return dataclasses.replace(
            self,
            name=observation.platform_name or self.name,
            local_name=observation.local_name or self.local_name,
            rssi=observation.rssi,
            service_uuids=service_uuids,
            manufacturer_data=manufacturer_data,
            service_data=service_data,
            last_seen=max(self.last_seen, now),
            detection_count=self.detection_count + 1,
            connectable=observation.connectable,
            tx_power=observation.tx_power,
        )

    @property
    def display_name(self) -> str:
        """Advertised local name if present, otherwise the platform name."""
        if self.local_name:
            return self.local_name
        return self.name

    @property
    def signal_strength_description(self) -> str:
        if self.rssi >= SIGNAL_EXCELLENT:
            return SIGNAL_LABEL_EXCELLENT
        if self.rssi >= SIGNAL_GOOD:
            return SIGNAL_LABEL_GOOD
        if self.rssi >= SIGNAL_FAIR:
            return SIGNAL_LABEL_FAIR
        return SIGNAL_LABEL_POOR

    @property
    def device_type(self) -> str:
        return classify_device(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DeviceRecord):
            return NotImplemented
        return self.device_id == other.device_id

    def __hash__(self) -> int:
        return hash(self.device_id)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.device_id,
            'name': self.name,
            'local_name': self.local_name,
            'display_name': self.display_name,
            'rssi': self.rssi,
            'signal_strength': self.signal_strength_description,
            'device_type': self.device_type,
            'service_uuids': list(self.service_uuids),
            'manufacturer_data': {k: _bytes_to_hex(v) for k, v in self.manufacturer_data.items()},
            'service_data': {k: _bytes_to_hex(v) for k, v in self.service_data.items()},
            'first_seen': self.first_seen.isoformat(),
            'last_seen': self.last_seen.isoformat(),
            'detection_count': self.detection_count,
            'connectable': self.connectable,
            'tx_power': self.tx_power,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeviceRecord:
        return cls(
            device_id=data['id'],
            name=data['name'],
            local_name=data.get('local_name'),
            rssi=int(data['rssi']),
            service_uuids=tuple(data.get('service_uuids') or ()),
            manufacturer_data={k: _hex_to_bytes(v) for k, v in (data.get('manufacturer_data') or {}).items()},
            service_data={k: _hex_to_bytes(v) for k, v in (data.get('service_data') or {}).items()},
            first_seen=datetime.fromisoformat(data['first_seen']),
            last_seen=datetime.fromisoformat(data['last_seen']),
            detection_count=int(data.get('detection_count', 1)),
            connectable=bool(data.get('connectable', False)),
            tx_power=data.get('tx_power'),
        )


@dataclass(frozen=True)
class DeviceQuery:
    """Filter and sort options for a registry projection."""
    name_filter: str = ''
    min_rssi: Optional[int] = None
    device_type: str = ''
    recent_only: bool = False
    sort_by: str = SORT_RSSI
    ascending: bool = False

    def validate(self) -> None:
        if self.sort_by not in SORT_KEYS:
            raise ConfigurationError(f"Invalid sort key '{self.sort_by}'. Must be one of: {SORT_KEYS}")


# =============================================================================
# SESSIONS
# =============================================================================


@dataclass(frozen=True)
class ScanSession:
    """One bounded interval of scanning."""
    session_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[timedelta] = None
    devices_discovered: int = 0
    device_ids: tuple[str, ...] = ()
    scan_settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def start(
        cls,
        session_id: str,
        now: datetime,
        scan_settings: Optional[dict[str, Any]] = None,
    ) -> ScanSession:
        return cls(
            session_id=session_id,
            start_time=now,
            scan_settings=dict(scan_settings or {}),
        )

    def end(self, discovered_ids: list[str], now: datetime) -> ScanSession:
        """Return the ended copy of this session. Ended sessions are returned unchanged."""
        if not self.is_active:
            return self
        end_time = max(now, self.start_time)
        ids = tuple(dict.fromkeys(discovered_ids))
        return dataclasses.replace(
            self,
            end_time=end_time,
            duration=end_time - self.start_time,
            devices_discovered=len(ids),
            device_ids=ids,
        )

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def status(self) -> str:
        return 'active' if self.is_active else 'completed'

    def session_duration(self, now: datetime) -> timedelta:
        """Live elapsed time while active, frozen duration once ended."""
        if self.duration is not None:
            return self.duration
        return max(now - self.start_time, timedelta(0))

    def to_dict(self) -> dict:
        return {
            'id': self.session_id,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration': self.duration.total_seconds() if self.duration is not None else None,
            'devices_discovered': self.devices_discovered,
            'device_ids': list(self.device_ids),
            'scan_settings': self.scan_settings,
            'status': self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScanSession:
        duration = data.get('duration')
        return cls(
            session_id=data['id'],
            start_time=datetime.fromisoformat(data['start_time']),
            end_time=_parse_time(data.get('end_time')),
            duration=timedelta(seconds=duration) if duration is not None else None,
            devices_discovered=int(data.get('devices_discovered', 0)),
            device_ids=tuple(data.get('device_ids') or ()),
            scan_settings=dict(data.get('scan_settings') or {}),
        )


# =============================================================================
# AGGREGATES
# =============================================================================


@dataclass(frozen=True)
class DataPoint:
    """One aggregate time-series sample of registry state."""
    timestamp: datetime
    device_count: int
    unique_device_types: int
    average_rssi: Optional[float] = None
    min_rssi: Optional[int] = None
    max_rssi: Optional[int] = None
    scan_duration: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'device_count': self.device_count,
            'average_rssi': self.average_rssi,
            'min_rssi': self.min_rssi,
            'max_rssi': self.max_rssi,
            'unique_device_types': self.unique_device_types,
            'scan_duration': self.scan_duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DataPoint:
        return cls(
            timestamp=datetime.fromisoformat(data['timestamp']),
            device_count=int(data['device_count']),
            average_rssi=data.get('average_rssi'),
            min_rssi=data.get('min_rssi'),
            max_rssi=data.get('max_rssi'),
            unique_device_types=int(data.get('unique_device_types', 0)),
            scan_duration=data.get('scan_duration'),
        )


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class ScanConfig:
    """Caller-supplied scan settings, snapshotted into each session."""
    scan_duration: float = DEFAULT_SCAN_DURATION
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    service_uuids: tuple[str, ...] = ()
    allow_duplicates: bool = DEFAULT_ALLOW_DUPLICATES
    scan_mode: int = DEFAULT_SCAN_MODE

    def validate(self) -> None:
        if self.scan_duration <= 0:
            raise ConfigurationError(f"scan_duration must be positive, got {self.scan_duration}")
        if self.scan_timeout <= 0:
            raise ConfigurationError(f"scan_timeout must be positive, got {self.scan_timeout}")
        if self.scan_mode not in SCAN_MODES:
            raise ConfigurationError(f"Invalid scan_mode {self.scan_mode}. Must be one of: {SCAN_MODES}")

    def to_dict(self) -> dict:
        return {
            'scan_duration': self.scan_duration,
            'scan_timeout': self.scan_timeout,
            'service_uuids': list(self.service_uuids),
            'allow_duplicates': self.allow_duplicates,
            'scan_mode': self.scan_mode,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScanConfig:
        try:
            return cls(
                scan_duration=float(data.get('scan_duration', DEFAULT_SCAN_DURATION)),
                scan_timeout=float(data.get('scan_timeout', DEFAULT_SCAN_TIMEOUT)),
                service_uuids=tuple(data.get('service_uuids') or ()),
                allow_duplicates=_parse_bool(
                    data.get('allow_duplicates', DEFAULT_ALLOW_DUPLICATES), 'allow_duplicates'
                ),
                scan_mode=int(data.get('scan_mode', DEFAULT_SCAN_MODE)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid scan config: {e}") from e


@dataclass(frozen=True)
class BatteryProfile:
    """
    Duty-cycle timing and pre-merge filtering.

    Profiles are swapped wholesale, never edited in place.
    """
    duty_cycling: bool = DEFAULT_DUTY_CYCLING
    scan_duration: float = DEFAULT_PHASE_SCAN_SECONDS
    rest_duration: float = DEFAULT_PHASE_REST_SECONDS
    adaptive_scan_mode: bool = True
    min_rssi_threshold: int = DEFAULT_MIN_RSSI_THRESHOLD
    background_interval: float = DEFAULT_BACKGROUND_INTERVAL
    foreground_interval: float = DEFAULT_FOREGROUND_INTERVAL

    def validate(self) -> None:
        if self.scan_duration <= 0:
            raise ConfigurationError(f"scan_duration must be positive, got {self.scan_duration}")
        if self.rest_duration < 0:
            raise ConfigurationError(f"rest_duration must not be negative, got {self.rest_duration}")
        if self.background_interval <= 0 or self.foreground_interval <= 0:
            raise ConfigurationError("Scan intervals must be positive")
        if not -127 <= self.min_rssi_threshold <= 20:
            raise ConfigurationError(
                f"min_rssi_threshold out of range: {self.min_rssi_threshold} dBm"
            )

    @classmethod
    def default(cls) -> BatteryProfile:
        return cls()

    @classmethod
    def background(cls) -> BatteryProfile:
        """Shorter scans, longer rests and a stricter RSSI floor."""
        return cls(
            duty_cycling=True,
            scan_duration=BACKGROUND_PHASE_SCAN_SECONDS,
            rest_duration=BACKGROUND_PHASE_REST_SECONDS,
            min_rssi_threshold=BACKGROUND_MIN_RSSI_THRESHOLD,
        )

    @classmethod
    def low_battery(cls) -> BatteryProfile:
        return cls(
            duty_cycling=True,
            scan_duration=LOW_BATTERY_PHASE_SCAN_SECONDS,
            rest_duration=LOW_BATTERY_PHASE_REST_SECONDS,
            min_rssi_threshold=LOW_BATTERY_MIN_RSSI_THRESHOLD,
            background_interval=LOW_BATTERY_BACKGROUND_INTERVAL,
            foreground_interval=LOW_BATTERY_FOREGROUND_INTERVAL,
        )

    @classmethod
    def for_platform(cls, platform_name: str) -> BatteryProfile:
        tuning = PLATFORM_PROFILES.get((platform_name or '').lower())
        if tuning is None:
            return cls.default()
        scan_s, rest_s, min_rssi = tuning
        return cls(
            duty_cycling=True,
            scan_duration=scan_s,
            rest_duration=rest_s,
            min_rssi_threshold=min_rssi,
        )

    def to_dict(self) -> dict:
        return {
            'duty_cycling': self.duty_cycling,
            'scan_duration': self.scan_duration,
            'rest_duration': self.rest_duration,
            'adaptive_scan_mode': self.adaptive_scan_mode,
            'min_rssi_threshold': self.min_rssi_threshold,
            'background_interval': self.background_interval,
            'foreground_interval': self.foreground_interval,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BatteryProfile:
        defaults = cls()
        try:
            return cls(
                duty_cycling=_parse_bool(data.get('duty_cycling', defaults.duty_cycling), 'duty_cycling'),
                scan_duration=float(data.get('scan_duration', defaults.scan_duration)),
                rest_duration=float(data.get('rest_duration', defaults.rest_duration)),
                adaptive_scan_mode=_parse_bool(
                    data.get('adaptive_scan_mode', defaults.adaptive_scan_mode), 'adaptive_scan_mode'
                ),
                min_rssi_threshold=int(data.get('min_rssi_threshold', defaults.min_rssi_threshold)),
                background_interval=float(data.get('background_interval', defaults.background_interval)),
                foreground_interval=float(data.get('foreground_interval', defaults.foreground_interval)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid battery profile: {e}") from e


# =============================================================================
# EVENTS AND STATUS
# =============================================================================


@dataclass(frozen=True)
class ScanEvent:
    """Typed event emitted to presentation layers."""
    type: str
    data: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        data = self.data
        if hasattr(data, 'to_dict'):
            data = data.to_dict()
        return {
            'type': self.type,
            'data': data,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class ScanStatus:
    """Snapshot of the engine for status queries."""
    state: ScanState
    is_scanning: bool
    device_count: int
    profile: BatteryProfile
    app_state: AppState = AppState.FOREGROUND
    session: Optional[ScanSession] = None
    session_duration: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'state': str(self.state),
            'is_scanning': self.is_scanning,
            'device_count': self.device_count,
            'profile': self.profile.to_dict(),
            'app_state': str(self.app_state),
            'session': self.session.to_dict() if self.session else None,
            'session_duration': self.session_duration,
            'error': self.error,
        }
