#!/usr/bin/env python3
"""
Prediction Smoothing

Probes report "seconds until removal" every 5 seconds. Displayed as-is the
value jumps around, so it is smoothed before publishing:

- Long predictions (> 5 minutes) are rounded to 15 seconds and only refreshed
  every third sequence number, so apps and displays show the same value.
- Short predictions count down smoothly: every 200 ms the value is stepped
  toward where the next report should land (current prediction - 5 s).
- With no report for 15 seconds the countdown stops and starts fresh on the
  next report.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .models import DEFAULT_PREDICTION_STALE
from .scheduler import Scheduler, TimerHandle
from .telemetry import (
    MAX_PREDICTION_SECONDS,
    PredictionMode,
    PredictionState,
    PredictionStatus,
    PredictionType,
    percent_through_cook,
)


# Seconds above which the prediction is shown at low resolution
LOW_RESOLUTION_CUTOFF_SECONDS = 5 * 60

# Low resolution rounding step (seconds)
LOW_RESOLUTION_PRECISION_SECONDS = 15

# Only refresh low resolution values on every Nth sequence number
PREDICTION_TIME_UPDATE_COUNT = 3

LINEARIZATION_UPDATE_RATE_MS = 200.0
PREDICTION_STATUS_RATE_MS = 5000.0


@dataclass
class PredictionInfo:
    """Smoothed prediction published to the application."""
    state: PredictionState
    mode: PredictionMode
    type: PredictionType
    set_point_temperature: float
    estimated_core_temperature: float
    seconds_remaining: Optional[int]
    percent_through_cook: int

    @property
    def is_running(self) -> bool:
        return self.mode == PredictionMode.TIME_TO_REMOVAL

    @property
    def is_complete(self) -> bool:
        if not self.is_running:
            return False
        if self.state != PredictionState.PREDICTING and self.estimated_core_temperature > self.set_point_temperature:
            return True
        return self.state == PredictionState.REMOVAL_PREDICTION_DONE


def round_low_resolution(seconds: int) -> int:
    """Round to the nearest 15 seconds (remainder above 7 rounds up)."""
    remainder = seconds % LOW_RESOLUTION_PRECISION_SECONDS
    if remainder > LOW_RESOLUTION_PRECISION_SECONDS // 2:
        return seconds + (LOW_RESOLUTION_PRECISION_SECONDS - remainder)
    return seconds - remainder


class PredictionSmoother:
    """Turns raw prediction status into a steadily counting PredictionInfo."""

    def __init__(
        self,
        scheduler: Scheduler,
        publish: Callable[[Optional[PredictionInfo]], None],
        stale_timeout: float = DEFAULT_PREDICTION_STALE,
    ):
        self.logger = logging.getLogger("PredictionSmoother")
        self._scheduler = scheduler
        self._publish = publish
        self._stale_timeout = stale_timeout

        self.info: Optional[PredictionInfo] = None
        self._previous_sequence: Optional[int] = None
        # Last published seconds, kept between low resolution refreshes
        self._baseline: Optional[int] = None

        self._target_seconds = 0
        self._step_ms = 0.0
        self._current_ms = 0.0
        self._linearizing = False

        self._linearization_timer: Optional[TimerHandle] = None
        self._stale_timer: Optional[TimerHandle] = None

    @property
    def linearizing(self) -> bool:
        return self._linearizing

    def update(self, status: Optional[PredictionStatus], sequence_number: int):
        """Feed the prediction status of an accepted normal-mode status."""
        if self._previous_sequence is not None and self._previous_sequence == sequence_number:
            previous_set_point = self.info.set_point_temperature if self.info else None
            current_set_point = status.set_point_temperature if status else None
            if previous_set_point == current_set_point:
                return

        self._cancel_linearization_timer()

        info = self._info_from_status(status, sequence_number)
        self._previous_sequence = sequence_number
        self._emit(info)

        if self._stale_timer is not None:
            self._stale_timer.cancel()
        self._stale_timer = self._scheduler.call_later(self._stale_timeout, self._on_stale)

    def reset(self):
        """Stop all timers and forget linearization progress."""
        self._cancel_linearization_timer()
        if self._stale_timer is not None:
            self._stale_timer.cancel()
            self._stale_timer = None
        self._linearizing = False
        self._current_ms = 0.0
        self._step_ms = 0.0

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _info_from_status(self, status: Optional[PredictionStatus], sequence_number: int) -> Optional[PredictionInfo]:
        if status is None:
            return None
        return PredictionInfo(
            state=status.state,
            mode=status.mode,
            type=status.type,
            set_point_temperature=status.set_point_temperature,
            estimated_core_temperature=status.estimated_core_temperature,
            seconds_remaining=self._seconds_remaining(status, sequence_number),
            percent_through_cook=percent_through_cook(
                status.heat_start_temperature,
                status.set_point_temperature,
                status.estimated_core_temperature,
            ),
        )

    def _seconds_remaining(self, status: PredictionStatus, sequence_number: int) -> Optional[int]:
        if status.state != PredictionState.PREDICTING:
            return None
        raw = status.seconds_remaining
        if raw > MAX_PREDICTION_SECONDS:
            return None

        previous = self._baseline

        if raw > LOW_RESOLUTION_CUTOFF_SECONDS:
            self._linearizing = False
            if previous is None or sequence_number % PREDICTION_TIME_UPDATE_COUNT == 0:
                return round_low_resolution(raw)
            return previous

        # Aim to reach (raw - 5 s) when the next report arrives
        status_interval = int(PREDICTION_STATUS_RATE_MS / 1000.0)
        self._target_seconds = max(0, raw - status_interval)

        if not self._linearizing:
            self._current_ms = raw * 1000.0
            self._step_ms = LINEARIZATION_UPDATE_RATE_MS
        else:
            intervals = PREDICTION_STATUS_RATE_MS / LINEARIZATION_UPDATE_RATE_MS
            self._step_ms = (self._current_ms - self._target_seconds * 1000.0) / intervals

        self._linearization_timer = self._scheduler.call_every(
            LINEARIZATION_UPDATE_RATE_MS / 1000.0, self._step
        )
        self._linearizing = True
        return int(self._current_ms / 1000.0)

    def _step(self):
        if self.info is None:
            return
        self._current_ms -= self._step_ms
        if self._current_ms < 0.0:
            self._current_ms = 0.0
        self._emit(replace(self.info, seconds_remaining=int(self._current_ms / 1000.0)))

    def _on_stale(self):
        self._stale_timer = None
        self.logger.debug("Prediction updates went stale, resetting countdown")
        self.reset()
        self._previous_sequence = None
        self._baseline = None

    def _cancel_linearization_timer(self):
        if self._linearization_timer is not None:
            self._linearization_timer.cancel()
            self._linearization_timer = None

    def _emit(self, info: Optional[PredictionInfo]):
        self.info = info
        self._baseline = info.seconds_remaining if info else None
        self._publish(info)
