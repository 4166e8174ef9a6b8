"""
Device registry for scan observations.

Deduplicates raw observations into one record per device identifier and
provides filtered, sorted projections for presentation layers.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from .constants import (
    RECENT_ACTIVITY_SECONDS,
    SORT_DETECTION_COUNT,
    SORT_LAST_SEEN,
    SORT_NAME,
    SORT_RSSI,
)
from .models import DeviceQuery, DeviceRecord, RawObservation

logger = logging.getLogger('blesense.scanning.registry')

# Called with (record, is_new) after every merge
MergeListener = Callable[[DeviceRecord, bool], None]

_SORT_KEYS: dict[str, Callable[[DeviceRecord], object]] = {
    SORT_RSSI: lambda d: d.rssi,
    SORT_NAME: lambda d: d.display_name,
    SORT_LAST_SEEN: lambda d: d.last_seen,
    SORT_DETECTION_COUNT: lambda d: d.detection_count,
}


class DeviceRegistry:
    """
    In-memory deduplicated store of current device state.

    Merges are serialized by a single registry lock, so concurrent
    observations for one identifier can never lose an increment.
    """

    def __init__(self, recent_window_seconds: float = RECENT_ACTIVITY_SECONDS):
        self._devices: dict[str, DeviceRecord] = {}
        self._lock = threading.Lock()
        self._listeners: list[MergeListener] = []
        self._total_merges = 0
        self.recent_window_seconds = recent_window_seconds

    def add_listener(self, listener: MergeListener) -> None:
        """Register a callback invoked after each merge."""
        self._listeners.append(listener)

    def merge(self, observation: RawObservation, now: Optional[datetime] = None) -> DeviceRecord:
        """
        Fold an observation into the registry.

        Args:
            observation: The raw observation to merge.
            now: Observation time (defaults to now).

        Returns:
            The new record stored for this identifier.
        """
        if now is None:
            now = datetime.now()

        with self._lock:
            existing = self._devices.get(observation.device_id)
            if existing is None:
                record = DeviceRecord.from_observation(observation, now)
                is_new = True
            else:
                record = existing.merged(observation, now)
                is_new = False
            self._devices[observation.device_id] = record
            self._total_merges += 1

        if is_new:
            logger.debug(
                f"New device discovered: {record.display_name} ({record.device_id}) RSSI: {record.rssi}"
            )

        for listener in list(self._listeners):
            listener(record, is_new)

        return record

    def snapshot(self) -> list[DeviceRecord]:
        """Copy of all current records, in first-seen insertion order."""
        with self._lock:
            return list(self._devices.values())

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        """Get a device by ID."""
        with self._lock:
            return self._devices.get(device_id)

    def device_ids(self) -> list[str]:
        with self._lock:
            return list(self._devices.keys())

    def clear(self) -> None:
        """Remove every record and reset counters."""
        with self._lock:
            self._devices.clear()
            self._total_merges = 0

    @property
    def device_count(self) -> int:
        """Number of tracked devices."""
        with self._lock:
            return len(self._devices)

    @property
    def total_merges(self) -> int:
        """Observations merged since the last clear."""
        with self._lock:
            return self._total_merges

    def is_recently_active(self, record: DeviceRecord, now: Optional[datetime] = None) -> bool:
        """True if the record was seen within the recent-activity window."""
        if now is None:
            now = datetime.now()
        return now - record.last_seen <= timedelta(seconds=self.recent_window_seconds)

    def query(self, query: DeviceQuery, now: Optional[datetime] = None) -> list[DeviceRecord]:
        """
        Filtered and sorted projection of the current snapshot.

        Sorting is stable, so equal keys keep snapshot order. The registry is
        not modified.
        """
        query.validate()
        if now is None:
            now = datetime.now()

        devices = self.snapshot()

        if query.name_filter:
            needle = query.name_filter.lower()
            devices = [d for d in devices if needle in d.display_name.lower()]

        if query.device_type:
            devices = [d for d in devices if d.device_type == query.device_type]

        if query.min_rssi is not None:
            devices = [d for d in devices if d.rssi >= query.min_rssi]

        if query.recent_only:
            devices = [d for d in devices if self.is_recently_active(d, now)]

        devices.sort(key=_SORT_KEYS[query.sort_by], reverse=not query.ascending)
        return devices

    def device_types(self) -> list[str]:
        """Sorted distinct type labels across the current snapshot."""
        return sorted({d.device_type for d in self.snapshot()})

    def prune_stale(self, max_age_seconds: float, now: Optional[datetime] = None) -> int:
        """
        Remove devices not seen within the specified time window.

        Returns:
            Number of devices removed.
        """
        if now is None:
            now = datetime.now()
        cutoff = now - timedelta(seconds=max_age_seconds)
        with self._lock:
            stale_ids = [
                device_id for device_id, device in self._devices.items()
                if device.last_seen < cutoff
            ]
            for device_id in stale_ids:
                del self._devices[device_id]
        if stale_ids:
            logger.info(f"Pruned {len(stale_ids)} stale devices")
        return len(stale_ids)
