#!/usr/bin/env python3
"""
Shared fixtures: a manual-clock scheduler, a recording transport and a
started controller wired to both.
"""

from typing import List, Optional, Tuple

import pytest
from pubsub import pub

from meatnet_app.controller import MeatNetController
from meatnet_app.models import EngineConfig
from meatnet_app.protocol import (
    DirectRequest,
    NodeRequest,
    decode_direct_requests,
    decode_node_messages,
)
from meatnet_app.scheduler import Scheduler
from meatnet_app.telemetry import (
    AdvertisingData,
    BatteryStatusVirtualSensors,
    HopCount,
    ModeId,
    PredictionStatus,
    ProbeMode,
    ProbeStatus,
    ProbeTemperatures,
    ProductType,
)
from meatnet_app.transport import Transport


SERIAL = 0x10005205
PROBE_LINK = "probe-10005205"
NODE_LINK = "node-1"


# =============================================================================
# Test Doubles
# =============================================================================

class ManualScheduler(Scheduler):
    """Deterministic reactor: submitted work runs at once, time moves on advance()."""

    def __init__(self, start: float = 1000.0):
        super().__init__()
        self._now = start

    def now(self) -> float:
        return self._now

    def submit(self, callback, *args):
        self._run(callback, *args)

    def advance(self, seconds: float):
        """Move the clock forward, firing due timers in deadline order."""
        target = self._now + seconds
        while True:
            deadline = self._next_deadline()
            if deadline is None or deadline > target:
                break
            self._now = max(self._now, deadline)
            handle = self._pop_due(self._now)
            if handle is None:
                break
            self._run_timer(handle)
        self._now = target


class RecordingTransport(Transport):
    """Transport that records every outbound call."""

    def __init__(self):
        self.sent: List[Tuple[str, bytes]] = []
        self.connects: List[str] = []
        self.disconnects: List[str] = []
        self.send_result = True
        self.started = False

    def connect(self, link_id: str) -> bool:
        self.connects.append(link_id)
        return True

    def disconnect(self, link_id: str):
        self.disconnects.append(link_id)

    def send(self, link_id: str, data: bytes) -> bool:
        self.sent.append((link_id, data))
        return self.send_result

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def direct_requests(self, link_id: str) -> List[DirectRequest]:
        requests = []
        for link, data in self.sent:
            if link == link_id:
                requests.extend(decode_direct_requests(data))
        return requests

    def node_requests(self, link_id: str) -> List[NodeRequest]:
        requests = []
        for link, data in self.sent:
            if link == link_id:
                requests.extend(m for m in decode_node_messages(data) if isinstance(m, NodeRequest))
        return requests


# =============================================================================
# Builders
# =============================================================================

def make_temperatures(core: float = 40.0, step: float = 5.0) -> ProbeTemperatures:
    return ProbeTemperatures(values=[core + i * step for i in range(8)])


def make_status(
    min_sequence: int = 0,
    max_sequence: int = 10,
    core: float = 40.0,
    mode: ProbeMode = ProbeMode.NORMAL,
    prediction: Optional[PredictionStatus] = None,
) -> ProbeStatus:
    return ProbeStatus(
        min_sequence=min_sequence,
        max_sequence=max_sequence,
        temperatures=make_temperatures(core),
        mode_id=ModeId(mode=mode),
        battery_status_virtual_sensors=BatteryStatusVirtualSensors(),
        prediction_status=prediction or PredictionStatus(),
    )


def make_advertising(
    serial: int = SERIAL,
    product_type: ProductType = ProductType.PROBE,
    core: float = 40.0,
    mode: ProbeMode = ProbeMode.NORMAL,
    hop_count: HopCount = HopCount.HOP1,
) -> bytes:
    return AdvertisingData(
        product_type=product_type,
        serial_number=serial,
        temperatures=make_temperatures(core),
        mode_id=ModeId(mode=mode),
        hop_count=hop_count,
    ).encode()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def config():
    return EngineConfig(log_file=None, log_level="DEBUG")


@pytest.fixture
def controller(config, transport, scheduler):
    ctrl = MeatNetController(config, transport, scheduler)
    ctrl.start()
    yield ctrl
    ctrl.shutdown()
    pub.unsubAll()
