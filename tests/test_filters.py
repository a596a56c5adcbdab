#!/usr/bin/env python3
"""
Signal Filter Tests
"""

import pytest

from meatnet_app.filters import (
    EWMA,
    InstantReadFilter,
    ProximityDetector,
    celsius_to_fahrenheit,
    round_half_away,
)
from meatnet_app.models import MIN_RSSI


def test_round_half_away():
    assert round_half_away(2.5) == 3
    assert round_half_away(2.4) == 2
    assert round_half_away(-2.5) == -3
    assert round_half_away(0.0) == 0


def test_celsius_to_fahrenheit():
    assert celsius_to_fahrenheit(100.0) == pytest.approx(212.0)
    assert celsius_to_fahrenheit(-40.0) == pytest.approx(-40.0)


# =============================================================================
# Instant Read
# =============================================================================

def test_first_reading_rounded():
    instant = InstantReadFilter()
    instant.add_reading(55.0)

    assert instant.celsius == 55.0
    assert instant.fahrenheit == 131.0


def test_small_changes_held_by_deadband():
    instant = InstantReadFilter()
    instant.add_reading(55.0)
    instant.add_reading(55.52)

    assert instant.celsius == 55.0


def test_change_beyond_deadband_moves_display():
    instant = InstantReadFilter()
    instant.add_reading(55.0)
    instant.add_reading(55.6)

    assert instant.celsius == 56.0


def test_none_clears_reading():
    instant = InstantReadFilter()
    instant.add_reading(55.0)
    instant.add_reading(None)

    assert instant.celsius is None
    assert instant.fahrenheit is None


# =============================================================================
# RSSI
# =============================================================================

def test_ewma():
    average = EWMA(span=6)
    average.put(-60.0)
    assert average.get() == -60.0

    average.put(-46.0)
    assert average.get() == pytest.approx(-56.0)


def test_proximity_hysteresis():
    detector = ProximityDetector()

    assert detector.update(-40)

    # One weak reading does not drop the flag
    assert detector.update(-60)

    for _ in range(10):
        detector.update(-70)
    assert not detector.within_range


def test_min_rssi_resets_proximity():
    detector = ProximityDetector()
    detector.update(-40)

    assert not detector.update(MIN_RSSI)
    assert not detector.ewma.seeded


def test_positive_rssi_ignored():
    detector = ProximityDetector()
    detector.update(-40)

    assert detector.update(5)
    assert detector.ewma.get() == -40.0
