#!/usr/bin/env python3
"""
Report Arbitration

The same probe can be heard directly and through several repeaters at once.
Each probe keeps two channels (instant read, normal mode); on each channel a
report is accepted when:

1. It came directly from the probe (no hop count), or
2. nothing was accepted on the channel within its lockout window, or
3. the last accepted report was relayed and this one took no more hops.

A direct acceptance therefore locks out every relayed report for the window.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .models import DEFAULT_INSTANT_READ_LOCKOUT, DEFAULT_NORMAL_MODE_LOCKOUT
from .telemetry import HopCount


class Channel(Enum):
    INSTANT_READ = "instant_read"
    NORMAL_MODE = "normal_mode"


@dataclass
class ChannelState:
    """Last accepted report on one channel. hop_count None means direct."""
    last_accepted_at: Optional[float] = None
    hop_count: Optional[HopCount] = None


class ArbitrationEngine:
    """Decides which of several competing reports of a probe wins."""

    def __init__(
        self,
        clock: Callable[[], float],
        instant_read_lockout: float = DEFAULT_INSTANT_READ_LOCKOUT,
        normal_mode_lockout: float = DEFAULT_NORMAL_MODE_LOCKOUT,
    ):
        self._clock = clock
        self.lockouts = {
            Channel.INSTANT_READ: instant_read_lockout,
            Channel.NORMAL_MODE: normal_mode_lockout,
        }

    def should_accept(self, channel: Channel, state: ChannelState, hop_count: Optional[HopCount]) -> bool:
        if hop_count is None:
            return True

        if state.last_accepted_at is None:
            return True
        if self._clock() - state.last_accepted_at >= self.lockouts[channel]:
            return True

        if state.hop_count is None:
            return False

        return hop_count <= state.hop_count

    def offer(
        self,
        channel: Channel,
        state: ChannelState,
        hop_count: Optional[HopCount],
        lock: bool = True,
    ) -> bool:
        """
        Arbitrate a report and record it when accepted.

        lock=False accepts without touching the channel state; advertising uses
        it on the normal-mode channel so that a status notification carrying
        prediction data can still win inside the window.
        """
        if not self.should_accept(channel, state, hop_count):
            return False
        if lock:
            state.last_accepted_at = self._clock()
            state.hop_count = hop_count
        return True
