"""Tests for time-series aggregation."""

import pytest
from datetime import datetime, timedelta

from blesense.scanning.aggregation import (
    AggregationEngine,
    DataPointHistory,
    compute_data_point,
    scan_statistics,
)
from blesense.scanning.models import DataPoint, DeviceRecord, RawObservation, ScanSession
from blesense.scanning.registry import DeviceRegistry
from blesense.scanning.timers import TimerGroup

T0 = datetime(2025, 6, 1, 12, 0, 0)


def record(device_id, rssi, service_uuids=()):
    return DeviceRecord.from_observation(
        RawObservation(device_id=device_id, rssi=rssi, service_uuids=tuple(service_uuids)),
        T0,
    )


class TestComputeDataPoint:

    def test_empty_snapshot_has_null_rssi(self):
        point = compute_data_point([], T0, 10)
        assert point.device_count == 0
        assert point.unique_device_types == 0
        assert point.average_rssi is None
        assert point.min_rssi is None
        assert point.max_rssi is None
        assert point.scan_duration == 10

    def test_summary_of_snapshot(self):
        devices = [
            record('A', -40),
            record('B', -60, ['0000180f-0000-1000-8000-00805f9b34fb']),
            record('C', -80),
        ]
        point = compute_data_point(devices, T0)
        assert point.device_count == 3
        assert point.average_rssi == -60
        assert point.min_rssi == -80
        assert point.max_rssi == -40
        assert point.unique_device_types == 2


class TestScanStatistics:

    def test_empty_statistics(self):
        stats = scan_statistics([], None, T0)
        assert stats['total_devices'] == 0
        assert stats['average_rssi'] is None
        assert stats['device_types'] == {}
        assert stats['session_duration'] == 0

    def test_histograms(self):
        devices = [record('A', -45), record('B', -65), record('C', -67), record('D', -95)]
        session = ScanSession.start('1', T0)
        stats = scan_statistics(devices, session, T0 + timedelta(seconds=90))

        assert stats['total_devices'] == 4
        assert stats['average_rssi'] == -68
        assert stats['device_types'] == {'BLE Device': 4}
        assert stats['signal_strength_distribution'] == {'Excellent': 1, 'Good': 2, 'Poor': 1}
        assert stats['session_duration'] == 90


class TestDataPointHistory:

    def test_fifo_eviction(self):
        history = DataPointHistory(capacity=3)
        for i in range(5):
            history.append(DataPoint(timestamp=T0 + timedelta(seconds=i), device_count=i, unique_device_types=0))

        points = history.points()
        assert len(history) == 3
        assert [p.device_count for p in points] == [2, 3, 4]
        assert history.latest().device_count == 4

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            DataPointHistory(capacity=0)


class TestAggregationEngine:

    @pytest.fixture
    def registry(self):
        return DeviceRegistry()

    @pytest.fixture
    def timers(self, clock):
        return TimerGroup(clock)

    @pytest.fixture
    def aggregation(self, registry, clock, timers):
        return AggregationEngine(registry, clock=clock, timers=timers, interval=10, capacity=4,
                                 scan_duration=lambda: 10.0)

    def test_ticks_on_interval(self, aggregation, registry, clock):
        sunk = []
        aggregation.add_sink(sunk.append)
        aggregation.start()

        registry.merge(RawObservation(device_id='A', rssi=-50), clock.now())
        clock.advance(9)
        assert sunk == []
        clock.advance(1)
        assert len(sunk) == 1
        assert sunk[0].device_count == 1
        assert sunk[0].timestamp == clock.now()
        assert sunk[0].scan_duration == 10.0

        clock.advance(30)
        assert len(sunk) == 4

    def test_history_is_bounded(self, aggregation, clock):
        aggregation.start()
        clock.advance(100)
        assert len(aggregation.history) == 4

    def test_stop_cancels_ticks(self, aggregation, timers, clock):
        aggregation.start()
        aggregation.stop()
        assert len(timers) == 0
        clock.advance(60)
        assert len(aggregation.history) == 0

    def test_failing_sink_does_not_break_ticks(self, aggregation, clock):
        def bad_sink(point):
            raise RuntimeError('disk full')

        aggregation.add_sink(bad_sink)
        aggregation.start()
        clock.advance(20)
        assert len(aggregation.history) == 2
        assert aggregation.is_running

    def test_capture_on_demand(self, aggregation):
        point = aggregation.capture()
        assert point.device_count == 0
        assert aggregation.history.latest() is point

    def test_interval_must_be_positive(self, registry, clock):
        with pytest.raises(ValueError):
            AggregationEngine(registry, clock=clock, interval=0)
