#!/usr/bin/env python3
"""
Temperature Log Synchronisation

A probe records one data point per sample period and numbers them with a
sequence number that restarts with every recording session. The app learns
the newest point from status notifications and back-fills everything else
with log requests.

TemperatureLog stores one session's points in sequence order:
- A point that extends the log (seq == last + 1, or empty log) is appended.
- Anything else is staged in an accumulator of unique points and merged in
  bulk, either once the accumulator exceeds its cap or after a short quiet
  period. This keeps bursts of out-of-order log responses from re-sorting
  the log on every record.

LogSynchronizer owns a probe's session logs and decides what is still missing.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .models import DEFAULT_ACCUMULATOR_DELAY, DEFAULT_ACCUMULATOR_MAX
from .scheduler import Scheduler, TimerHandle
from .telemetry import PredictionLog, ProbeStatus, ProbeTemperatures, VirtualSensors


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SessionInformation:
    session_id: int
    sample_period: int  # milliseconds


@dataclass
class DataPoint:
    """One logged sample."""
    sequence_number: int
    temperatures: ProbeTemperatures
    virtual_sensors: Optional[VirtualSensors] = None
    prediction_log: Optional[PredictionLog] = None

    @classmethod
    def from_status(cls, status: ProbeStatus) -> "DataPoint":
        """The live point carried by a status notification."""
        return cls(
            sequence_number=status.max_sequence,
            temperatures=status.temperatures,
            virtual_sensors=status.battery_status_virtual_sensors.virtual_sensors,
        )

    @classmethod
    def from_log_record(cls, record) -> "DataPoint":
        prediction_log = record.prediction_log
        return cls(
            sequence_number=record.sequence_number,
            temperatures=record.temperatures,
            virtual_sensors=prediction_log.virtual_sensors if prediction_log else None,
            prediction_log=prediction_log,
        )


# =============================================================================
# Temperature Log
# =============================================================================

class TemperatureLog:
    """Sequence-ordered data points of one recording session."""

    def __init__(
        self,
        session: SessionInformation,
        scheduler: Scheduler,
        accumulator_delay: float = DEFAULT_ACCUMULATOR_DELAY,
        accumulator_max: int = DEFAULT_ACCUMULATOR_MAX,
        on_flush: Optional[Callable[["TemperatureLog"], None]] = None,
    ):
        self.session = session
        self.start_time: Optional[float] = None
        self._scheduler = scheduler
        self._accumulator_delay = accumulator_delay
        self._accumulator_max = accumulator_max
        self._on_flush = on_flush

        self._points: Dict[int, DataPoint] = {}
        self._last_sequence: Optional[int] = None
        self._accumulator: Dict[int, DataPoint] = {}
        self._timer: Optional[TimerHandle] = None

    @property
    def session_id(self) -> int:
        return self.session.session_id

    @property
    def data_points(self) -> List[DataPoint]:
        return list(self._points.values())

    @property
    def last_sequence(self) -> Optional[int]:
        return self._last_sequence

    @property
    def pending(self) -> int:
        """Points waiting in the accumulator."""
        return len(self._accumulator)

    def __len__(self) -> int:
        return len(self._points)

    def __contains__(self, sequence_number: int) -> bool:
        return sequence_number in self._points

    def get(self, sequence_number: int) -> Optional[DataPoint]:
        return self._points.get(sequence_number)

    def append(self, point: DataPoint):
        """Add a point, appending in place when it extends the log."""
        seq = point.sequence_number
        if self._last_sequence is None or seq == self._last_sequence + 1:
            self._points[seq] = point
            self._last_sequence = seq
        else:
            self._stage(point)

    def _stage(self, point: DataPoint):
        if point.sequence_number in self._accumulator:
            return
        self._accumulator[point.sequence_number] = point

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if len(self._accumulator) > self._accumulator_max:
            self.flush()
        else:
            self._timer = self._scheduler.call_later(self._accumulator_delay, self.flush)

    def flush(self):
        """Merge staged points that are not already known, keeping sequence order."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._accumulator:
            return

        added = False
        for seq, point in self._accumulator.items():
            if seq not in self._points:
                self._points[seq] = point
                added = True
        self._accumulator.clear()

        if added:
            self._points = dict(sorted(self._points.items()))
            self._last_sequence = next(reversed(self._points))
            if self._on_flush:
                self._on_flush(self)

    def cancel(self):
        """Drop staged points and stop the merge timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._accumulator.clear()

    def first_missing(self, start: int, end: int) -> Optional[int]:
        """First sequence number in [start, end] not in the log."""
        for seq in range(start, end + 1):
            if seq not in self._points:
                return seq
        return None

    def missing_range(self, start: int, end: int) -> Optional[Tuple[int, int]]:
        """
        Range to request again, from the first gap up to end - 1.

        The newest point (end) arrives with the next status notification, so it
        is never requested.
        """
        first = self.first_missing(start, end)
        if first is None or first >= end:
            return None
        return first, end - 1

    def count_in_range(self, start: int, end: int) -> int:
        if end < start:
            return 0
        if end - start + 1 < len(self._points):
            return sum(1 for seq in range(start, end + 1) if seq in self._points)
        return sum(1 for seq in self._points if start <= seq <= end)

    def percent_synced(self, start: int, end: int) -> int:
        size = end - start + 1
        if size <= 0:
            return 0
        known = self.count_in_range(start, end)
        if known == size:
            return 100
        return int(known / size * 100)


# =============================================================================
# Synchronizer
# =============================================================================

class LogSynchronizer:
    """Per-probe session logs, current session and known sequence range."""

    def __init__(
        self,
        name: str,
        scheduler: Scheduler,
        accumulator_delay: float = DEFAULT_ACCUMULATOR_DELAY,
        accumulator_max: int = DEFAULT_ACCUMULATOR_MAX,
        on_progress: Optional[Callable[[int], None]] = None,
    ):
        self.name = name
        self.logger = logging.getLogger("LogSynchronizer")
        self._scheduler = scheduler
        self._accumulator_delay = accumulator_delay
        self._accumulator_max = accumulator_max
        self._on_progress = on_progress

        self.logs: Dict[int, TemperatureLog] = {}
        self.session: Optional[SessionInformation] = None
        self.sequence_range: Optional[Tuple[int, int]] = None
        self.percent_synced = 0

        # Statistics
        self.dropped_count = 0

    @property
    def current_log(self) -> Optional[TemperatureLog]:
        if self.session is None:
            return None
        return self.logs.get(self.session.session_id)

    def set_session(self, session: SessionInformation) -> bool:
        """Adopt session information. Returns True if the session ID changed."""
        changed = self.session is None or self.session.session_id != session.session_id
        self.session = session
        if changed:
            self.logger.info(
                f"[SESSION] {self.name}: session {session.session_id}, "
                f"period {session.sample_period} ms"
            )
            self.update_percent()
        return changed

    def clear_session(self):
        """Forget the current session; the probe may have reset while away."""
        self.session = None

    def set_range(self, min_sequence: int, max_sequence: int):
        self.sequence_range = (min_sequence, max_sequence)

    def is_old_status(self, max_sequence: int) -> bool:
        """A status older than the newest point already logged for this session."""
        log = self.current_log
        if log is None or log.last_sequence is None:
            return False
        return max_sequence < log.last_sequence

    def add_point(self, point: DataPoint) -> bool:
        """Store a point in the current session's log."""
        if self.sequence_range is not None and point.sequence_number > self.sequence_range[1]:
            self.logger.warning(
                f"[LOG] {self.name}: discarding seq {point.sequence_number} "
                f"beyond reported max {self.sequence_range[1]}"
            )
            self.dropped_count += 1
            return False

        if self.session is None:
            self.logger.debug(f"[LOG] {self.name}: no session info, dropping seq {point.sequence_number}")
            self.dropped_count += 1
            return False

        log = self.current_log
        if log is None:
            log = TemperatureLog(
                self.session,
                self._scheduler,
                accumulator_delay=self._accumulator_delay,
                accumulator_max=self._accumulator_max,
                on_flush=lambda _log: self.update_percent(),
            )
            self.logs[self.session.session_id] = log

        if log.start_time is None:
            log.start_time = (
                self._scheduler.now()
                - point.sequence_number * self.session.sample_period / 1000.0
            )

        log.append(point)
        return True

    def update_percent(self) -> int:
        log = self.current_log
        if log is None or self.sequence_range is None:
            return self.percent_synced
        percent = log.percent_synced(*self.sequence_range)
        changed = percent != self.percent_synced
        self.percent_synced = percent
        if changed and self._on_progress:
            self._on_progress(percent)
        return percent

    def missing_range(self) -> Optional[Tuple[int, int]]:
        """First gap in the current session up to (not including) the live maximum."""
        log = self.current_log
        if log is None or self.sequence_range is None:
            return None
        return log.missing_range(*self.sequence_range)

    def close(self):
        for log in self.logs.values():
            log.cancel()
