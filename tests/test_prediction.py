#!/usr/bin/env python3
"""
Prediction Smoothing Tests
"""

import pytest

from meatnet_app.prediction import PredictionSmoother, round_low_resolution
from meatnet_app.telemetry import PredictionMode, PredictionState, PredictionStatus, PredictionType


def predicting(seconds: int, set_point: float = 54.0) -> PredictionStatus:
    return PredictionStatus(
        state=PredictionState.PREDICTING,
        mode=PredictionMode.TIME_TO_REMOVAL,
        type=PredictionType.REMOVAL,
        set_point_temperature=set_point,
        heat_start_temperature=10.0,
        seconds_remaining=seconds,
        estimated_core_temperature=32.0,
    )


@pytest.fixture
def published():
    return []


@pytest.fixture
def smoother(scheduler, published):
    return PredictionSmoother(scheduler, published.append, stale_timeout=15.0)


def test_round_low_resolution():
    assert round_low_resolution(600) == 600
    assert round_low_resolution(601) == 600
    assert round_low_resolution(607) == 600
    assert round_low_resolution(608) == 615


# =============================================================================
# Low Resolution
# =============================================================================

def test_long_prediction_rounded(smoother):
    smoother.update(predicting(1000), 3)

    assert smoother.info.seconds_remaining == 1005
    assert not smoother.linearizing


def test_long_prediction_refreshed_every_third_sequence(smoother):
    smoother.update(predicting(1000), 3)
    smoother.update(predicting(2000), 4)
    assert smoother.info.seconds_remaining == 1005

    smoother.update(predicting(2000), 5)
    assert smoother.info.seconds_remaining == 1005

    smoother.update(predicting(2000), 6)
    assert smoother.info.seconds_remaining == 1995


def test_implausible_prediction_dropped(smoother):
    smoother.update(predicting(5 * 60 * 60), 1)
    assert smoother.info.seconds_remaining is None


# =============================================================================
# Linearization
# =============================================================================

def test_short_prediction_counts_down(scheduler, smoother, published):
    smoother.update(predicting(100), 1)

    assert smoother.linearizing
    assert smoother.info.seconds_remaining == 100

    scheduler.advance(1.0)
    assert smoother.info.seconds_remaining == 99
    assert len(published) > 1


def test_countdown_aims_at_next_report(scheduler, smoother):
    smoother.update(predicting(100), 1)
    scheduler.advance(4.9)
    smoother.update(predicting(95), 2)

    assert smoother.info.seconds_remaining == 95

    scheduler.advance(4.9)
    assert 90 <= smoother.info.seconds_remaining <= 91


def test_countdown_stops_at_zero(scheduler, smoother):
    smoother.update(predicting(1), 1)
    scheduler.advance(3.0)

    assert smoother.info.seconds_remaining == 0


def test_stale_updates_reset_countdown(scheduler, smoother):
    smoother.update(predicting(100), 1)
    scheduler.advance(16.0)

    assert not smoother.linearizing

    smoother.update(predicting(80), 2)
    assert smoother.info.seconds_remaining == 80


def test_switch_to_low_resolution_stops_linearizing(smoother):
    smoother.update(predicting(100), 1)
    smoother.update(predicting(900), 3)

    assert not smoother.linearizing
    assert smoother.info.seconds_remaining == 900


# =============================================================================
# Updates
# =============================================================================

def test_duplicate_sequence_ignored(smoother, published):
    smoother.update(predicting(1000), 3)
    smoother.update(predicting(2000), 3)

    assert len(published) == 1
    assert smoother.info.seconds_remaining == 1005


def test_new_set_point_on_same_sequence_applied(smoother, published):
    smoother.update(predicting(1000, set_point=54.0), 3)
    smoother.update(predicting(1000, set_point=60.0), 3)

    assert len(published) == 2
    assert smoother.info.set_point_temperature == pytest.approx(60.0)


def test_not_predicting_has_no_time(smoother):
    status = predicting(100)
    status.state = PredictionState.COOKING
    smoother.update(status, 1)

    assert smoother.info.state == PredictionState.COOKING
    assert smoother.info.seconds_remaining is None
    assert not smoother.linearizing


def test_missing_status_publishes_none(smoother, published):
    smoother.update(None, 1)
    assert published == [None]


def test_percent_through_cook(smoother):
    smoother.update(predicting(1000), 3)
    # (32 - 10) / (54 - 10)
    assert smoother.info.percent_through_cook == 50


def test_stale_reset_forgets_low_resolution_value(scheduler, smoother, published):
    smoother.update(predicting(1000), 3)
    scheduler.advance(16.0)

    # The last value stays visible until the next report
    assert smoother.info.seconds_remaining == 1005
    assert None not in published

    smoother.update(predicting(700), 7)
    assert smoother.info.seconds_remaining == 705
