#!/usr/bin/env python3
"""
Signal Filters

InstantReadFilter keeps the displayed instant-read temperature from flickering
between two whole degrees. EWMA and ProximityDetector smooth RSSI readings
into a "probe is near" flag.
"""

import math
from typing import Optional, Tuple

from .models import MIN_RSSI


# Hysteresis around the displayed value, on top of the +-0.5 rounding band
DEADBAND_RANGE_CELSIUS = 0.05

PROXIMITY_RSSI_MAX = -48.0
PROXIMITY_RSSI_MIN = -55.0
RSSI_EWMA_SPAN = 6


def celsius_to_fahrenheit(celsius: float) -> float:
    return celsius * 9.0 / 5.0 + 32.0


def round_half_away(value: float) -> float:
    """Round to the nearest whole number, halves away from zero."""
    return math.copysign(math.floor(abs(value) + 0.5), value)


def _filtered(temperature: float, display: Optional[float], deadband: float) -> float:
    if display is None:
        display = round_half_away(temperature)
    upper = display + 0.5 + deadband
    lower = display - 0.5 - deadband
    if temperature > upper or temperature < lower:
        return round_half_away(temperature)
    return display


class InstantReadFilter:
    """Deadband filter publishing whole-degree Celsius and Fahrenheit values."""

    def __init__(self):
        self.values: Optional[Tuple[float, float]] = None

    @property
    def celsius(self) -> Optional[float]:
        return self.values[0] if self.values else None

    @property
    def fahrenheit(self) -> Optional[float]:
        return self.values[1] if self.values else None

    def add_reading(self, celsius: Optional[float]):
        """Feed a raw reading; None clears the filter."""
        if celsius is None:
            self.values = None
            return

        current_c = self.values[0] if self.values else None
        current_f = self.values[1] if self.values else None
        self.values = (
            _filtered(celsius, current_c, DEADBAND_RANGE_CELSIUS),
            _filtered(celsius_to_fahrenheit(celsius), current_f, DEADBAND_RANGE_CELSIUS * 9.0 / 5.0),
        )

    def reset(self):
        self.values = None


class EWMA:
    """Exponentially weighted moving average over roughly `span` samples."""

    def __init__(self, span: int = RSSI_EWMA_SPAN):
        self.alpha = 1.0 if span <= 0 else 2.0 / (span + 1.0)
        self.value = 0.0
        self.seeded = False

    def put(self, sample: float):
        if self.seeded:
            self.value = self.alpha * sample + (1.0 - self.alpha) * self.value
        else:
            self.value = sample
            self.seeded = True

    def get(self) -> float:
        return self.value

    def reset(self):
        self.value = 0.0
        self.seeded = False


class ProximityDetector:
    """Tracks whether a device is within identification range of the radio."""

    def __init__(self, span: int = RSSI_EWMA_SPAN):
        self.ewma = EWMA(span)
        self.within_range = False

    def update(self, rssi: int) -> bool:
        """Feed one RSSI reading and return the proximity flag."""
        if rssi > 0:
            # Not a real reading
            return self.within_range

        if rssi == MIN_RSSI:
            self.ewma.reset()
            self.within_range = False
            return False

        self.ewma.put(float(rssi))
        average = self.ewma.get()
        if self.within_range and average < PROXIMITY_RSSI_MIN:
            self.within_range = False
        elif not self.within_range and average > PROXIMITY_RSSI_MAX:
            self.within_range = True
        return self.within_range
