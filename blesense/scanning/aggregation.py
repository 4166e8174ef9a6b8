"""
Aggregation of registry snapshots into time-series data points.

Provides a bounded in-memory history of data points plus the periodic tick
that produces them.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from datetime import datetime
from typing import Callable, Iterable, Optional

from .constants import DEFAULT_AGGREGATION_INTERVAL, DEFAULT_HISTORY_CAPACITY
from .models import DataPoint, DeviceRecord, ScanSession
from .registry import DeviceRegistry
from .timers import Clock, SystemClock, TimerGroup

logger = logging.getLogger('blesense.scanning.aggregation')

AGGREGATION_TIMER = 'aggregation'

DataPointSink = Callable[[DataPoint], None]


def compute_data_point(
    devices: Iterable[DeviceRecord],
    timestamp: datetime,
    scan_duration: Optional[float] = None,
) -> DataPoint:
    """
    Summarize a registry snapshot.

    RSSI fields are None for an empty snapshot, never zero.
    """
    devices = list(devices)
    if not devices:
        return DataPoint(
            timestamp=timestamp,
            device_count=0,
            unique_device_types=0,
            scan_duration=scan_duration,
        )

    rssi_values = [d.rssi for d in devices]
    return DataPoint(
        timestamp=timestamp,
        device_count=len(devices),
        average_rssi=sum(rssi_values) / len(rssi_values),
        min_rssi=min(rssi_values),
        max_rssi=max(rssi_values),
        unique_device_types=len({d.device_type for d in devices}),
        scan_duration=scan_duration,
    )


def scan_statistics(
    devices: Iterable[DeviceRecord],
    session: Optional[ScanSession] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Current statistics snapshot for status displays.

    Returns:
        Dict with device total, rounded average RSSI (None when empty),
        device-type and signal-strength histograms and session duration.
    """
    devices = list(devices)
    if now is None:
        now = datetime.now()

    session_duration = 0
    if session is not None:
        session_duration = int(session.session_duration(now).total_seconds())

    average_rssi = None
    if devices:
        average_rssi = round(sum(d.rssi for d in devices) / len(devices))

    return {
        'total_devices': len(devices),
        'average_rssi': average_rssi,
        'device_types': dict(Counter(d.device_type for d in devices)),
        'signal_strength_distribution': dict(Counter(d.signal_strength_description for d in devices)),
        'session_duration': session_duration,
    }


class DataPointHistory:
    """
    Fixed-capacity FIFO of data points.

    Thread-safe; the oldest point is evicted first once full.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"History capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._points: deque[DataPoint] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, point: DataPoint) -> None:
        with self._lock:
            self._points.append(point)

    def points(self) -> list[DataPoint]:
        with self._lock:
            return list(self._points)

    def latest(self) -> Optional[DataPoint]:
        with self._lock:
            return self._points[-1] if self._points else None

    def clear(self) -> None:
        with self._lock:
            self._points.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)


class AggregationEngine:
    """
    Periodically turns the registry into data points.

    Ticks run on a fixed wall-clock interval independent of scan phases.
    Each data point goes into the history buffer and then to every sink.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        clock: Optional[Clock] = None,
        timers: Optional[TimerGroup] = None,
        interval: float = DEFAULT_AGGREGATION_INTERVAL,
        capacity: int = DEFAULT_HISTORY_CAPACITY,
        scan_duration: Optional[Callable[[], Optional[float]]] = None,
    ):
        if interval <= 0:
            raise ValueError(f"Aggregation interval must be positive, got {interval}")
        self._registry = registry
        self._clock = clock or SystemClock()
        self._timers = timers or TimerGroup(self._clock)
        self._scan_duration = scan_duration
        self._sinks: list[DataPointSink] = []
        self._running = False
        self._generation = 0
        self._lock = threading.RLock()
        self.interval = interval
        self.history = DataPointHistory(capacity)

    def add_sink(self, sink: DataPointSink) -> None:
        self._sinks.append(sink)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Begin periodic ticks."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._generation += 1
            self._schedule()
            logger.debug(f"Aggregation ticks every {self.interval}s")

    def stop(self) -> None:
        """Cancel the pending tick."""
        with self._lock:
            self._running = False
            self._generation += 1
            self._timers.cancel(AGGREGATION_TIMER)

    def _schedule(self) -> None:
        generation = self._generation
        self._timers.start(AGGREGATION_TIMER, self.interval, lambda: self._on_tick(generation))

    def _on_tick(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._running:
                return
            self._timers.discard(AGGREGATION_TIMER)
            self.capture()
            self._schedule()

    def capture(self) -> DataPoint:
        """Compute, record and publish one data point now."""
        scan_duration = self._scan_duration() if self._scan_duration is not None else None
        point = compute_data_point(self._registry.snapshot(), self._clock.now(), scan_duration)
        self.history.append(point)
        for sink in list(self._sinks):
            try:
                sink(point)
            except Exception as e:
                logger.exception(f"Data point sink failed: {e}")
        return point
