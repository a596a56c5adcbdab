#!/usr/bin/env python3
"""
Temperature Log Synchronisation Tests

Ordered appends, accumulator merges, gap detection and session isolation.
"""

import pytest

from meatnet_app.log_sync import (
    DataPoint,
    LogSynchronizer,
    SessionInformation,
    TemperatureLog,
)
from meatnet_app.messages import LogRecord
from meatnet_app.telemetry import PredictionLog, PredictionState, VirtualCoreSensor, VirtualSensors

from conftest import make_status, make_temperatures


def point(seq: int, core: float = 40.0) -> DataPoint:
    return DataPoint(sequence_number=seq, temperatures=make_temperatures(core))


@pytest.fixture
def log(scheduler):
    return TemperatureLog(SessionInformation(1, 1000), scheduler, accumulator_delay=0.2, accumulator_max=5)


@pytest.fixture
def sync(scheduler):
    progress = []
    synchronizer = LogSynchronizer("10005205", scheduler, on_progress=progress.append)
    synchronizer.progress = progress
    return synchronizer


# =============================================================================
# Temperature Log
# =============================================================================

def test_in_order_points_append(log):
    for seq in range(3):
        log.append(point(seq))

    assert len(log) == 3
    assert log.last_sequence == 2
    assert log.pending == 0


def test_out_of_order_points_staged_until_quiet(scheduler, log):
    for seq in (0, 1, 2, 5, 4):
        log.append(point(seq))

    assert len(log) == 3
    assert log.pending == 2

    scheduler.advance(0.1)
    assert log.pending == 2

    scheduler.advance(0.15)
    assert log.pending == 0
    assert [p.sequence_number for p in log.data_points] == [0, 1, 2, 4, 5]
    assert log.last_sequence == 5


def test_new_staged_point_restarts_quiet_period(scheduler, log):
    log.append(point(0))
    log.append(point(3))
    scheduler.advance(0.15)
    log.append(point(5))
    scheduler.advance(0.15)

    assert log.pending == 2

    scheduler.advance(0.1)
    assert log.pending == 0


def test_accumulator_flushes_over_cap(log):
    log.append(point(100))
    for seq in range(10, 16):
        log.append(point(seq))

    assert log.pending == 0
    assert len(log) == 7
    assert log.data_points[0].sequence_number == 10
    assert log.last_sequence == 100


def test_duplicate_points_ignored(scheduler, log):
    log.append(point(0, core=30.0))
    log.append(point(2, core=31.0))
    log.append(point(2, core=99.0))
    log.append(point(0, core=99.0))
    scheduler.advance(0.2)

    assert len(log) == 2
    assert log.get(0).temperatures.values[0] == pytest.approx(30.0)
    assert log.get(2).temperatures.values[0] == pytest.approx(31.0)


def test_missing_range(scheduler, log):
    for seq in (0, 1, 2, 4, 5):
        log.append(point(seq))
    scheduler.advance(0.2)

    assert log.first_missing(0, 5) == 3
    assert log.missing_range(0, 5) == (3, 4)


def test_missing_range_excludes_live_maximum(log):
    for seq in range(5):
        log.append(point(seq))

    assert log.first_missing(0, 5) == 5
    assert log.missing_range(0, 5) is None


def test_percent_synced(scheduler, log):
    for seq in range(5):
        log.append(point(seq))

    assert log.percent_synced(0, 4) == 100
    assert log.percent_synced(0, 9) == 50
    assert log.percent_synced(5, 4) == 0


# =============================================================================
# Synchronizer
# =============================================================================

def test_points_without_session_dropped(sync):
    assert not sync.add_point(point(0))
    assert sync.dropped_count == 1
    assert sync.logs == {}


def test_points_beyond_reported_max_discarded(sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.set_range(0, 10)

    assert not sync.add_point(point(11))
    assert sync.add_point(point(10))


def test_start_time_set_once(scheduler, sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.add_point(point(10))
    start = sync.current_log.start_time

    scheduler.advance(30.0)
    sync.add_point(point(11))

    assert start == pytest.approx(scheduler.now() - 30.0 - 10.0)
    assert sync.current_log.start_time == start


def test_sessions_are_isolated(sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.add_point(point(0))
    sync.add_point(point(1))

    assert sync.set_session(SessionInformation(2, 1000))
    sync.add_point(point(0))

    assert set(sync.logs) == {1, 2}
    assert len(sync.logs[1]) == 2
    assert len(sync.logs[2]) == 1


def test_same_session_not_a_change(sync):
    sync.set_session(SessionInformation(1, 1000))
    assert not sync.set_session(SessionInformation(1, 1000))


def test_clear_session_keeps_logs(sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.add_point(point(0))
    sync.clear_session()

    assert sync.current_log is None
    assert 1 in sync.logs


def test_progress_reported_on_change(scheduler, sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.set_range(0, 3)
    sync.add_point(point(0))
    sync.add_point(point(1))
    sync.update_percent()
    sync.update_percent()

    assert sync.percent_synced == 50
    assert sync.progress == [50]

    sync.add_point(point(3))
    sync.add_point(point(2))
    scheduler.advance(0.2)

    assert sync.percent_synced == 100
    assert sync.progress == [50, 100]
    assert sync.missing_range() is None


def test_synchronizer_missing_range(scheduler, sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.set_range(0, 9)
    sync.add_point(DataPoint.from_status(make_status(0, 9)))

    assert sync.missing_range() == (0, 8)


def test_old_status(sync):
    sync.set_session(SessionInformation(1, 1000))
    sync.add_point(point(5))

    assert sync.is_old_status(4)
    assert not sync.is_old_status(5)


def test_point_from_log_record_carries_virtual_sensors():
    sensors = VirtualSensors(core=VirtualCoreSensor.T2)
    record = LogRecord(
        sequence_number=3,
        temperatures=make_temperatures(),
        prediction_log=PredictionLog(virtual_sensors=sensors, state=PredictionState.COOKING),
    )
    data_point = DataPoint.from_log_record(record)

    assert data_point.sequence_number == 3
    assert data_point.virtual_sensors == sensors
    assert data_point.prediction_log.state == PredictionState.COOKING
