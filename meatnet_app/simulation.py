#!/usr/bin/env python3
"""
Simulated MeatNet Radio

A Transport that stands in for the radio stack with a handful of simulated
probes and repeater nodes. Devices run on the engine's scheduler, so tests can
drive them with a manual clock and the CLI can run them in real time.

Each simulated probe:
- heats up by a fixed step per sample and logs one record per sample period
- advertises its live temperatures (directly and through every repeater)
- streams status notifications on its direct link and through connected
  repeaters
- answers session info, log, revision, model, set ID/color/prediction,
  over-temperature and food safe requests with real encoded frames

Responses are delivered after a small latency, like a real link.
"""

import logging
import random
import struct
from typing import Dict, List, Optional

from .messages import (
    Heartbeat,
    LogRecord,
    ModelInfo,
    ProbeStatusReport,
    RevisionInfo,
    SessionInfo,
    parse_log_request,
    parse_set_prediction,
)
from .models import SimulationConfig
from .protocol import (
    DirectRequest,
    DirectResponse,
    MessageType,
    NodeMessageType,
    NodeRequest,
    NodeResponse,
    decode_direct_requests,
    decode_node_messages,
    new_request_id,
)
from .scheduler import Scheduler, TimerHandle
from .telemetry import (
    AdvertisingData,
    BatteryStatusVirtualSensors,
    FoodSafeData,
    FoodSafeStatus,
    HopCount,
    ModeId,
    PredictionLog,
    PredictionMode,
    PredictionState,
    PredictionStatus,
    PredictionType,
    ProbeColor,
    ProbeID,
    ProbeStatus,
    ProbeTemperatures,
    ProductType,
)
from .transport import (
    Transport,
    publish_advertising,
    publish_connected,
    publish_device_info,
    publish_disconnected,
    publish_frame,
    publish_status,
)


# =============================================================================
# Constants
# =============================================================================

# Timing (seconds)
DEFAULT_SAMPLE_PERIOD = 1.0
DEFAULT_ADVERTISE_INTERVAL = 1.0
DEFAULT_HEARTBEAT_INTERVAL = 5.0
DEFAULT_LATENCY = 0.05

# Records already logged when a simulated probe is first heard
DEFAULT_HISTORY = 30

# Heating model (Celsius)
START_TEMPERATURE = 20.0
AMBIENT_TEMPERATURE = 150.0
HEATING_STEP = 0.25

PROBE_RSSI = -60
REPEATER_RSSI = -50

SIM_FIRMWARE = "v1.4.2"
SIM_HARDWARE = "REV-5"
SIM_PROBE_MODEL = "CPTPRB-1:23091"
SIM_NODE_MODEL = "Display Timer:24011"


# =============================================================================
# Simulated Devices
# =============================================================================

class SimulatedProbe:
    """State of one simulated probe."""

    def __init__(self, serial_number: int, session_id: int, sample_period: float, history: int = 0):
        self.serial_number = serial_number
        self.link_id = f"probe-{serial_number:08X}"
        self.session_id = session_id
        self.sample_period = sample_period
        self.connected = False

        self.mode_id = ModeId(probe_id=ProbeID.ID1, color=ProbeColor.COLOR1)
        self.sensors = BatteryStatusVirtualSensors()
        self.core = START_TEMPERATURE
        self.heat_start = START_TEMPERATURE

        self.prediction_mode = PredictionMode.NONE
        self.set_point = 0.0
        self.food_safe_data: Optional[FoodSafeData] = None
        self.food_safe_status: Optional[FoodSafeStatus] = None
        self.over_temperature = False

        self.records: Dict[int, LogRecord] = {}
        self.max_sequence = -1
        for _ in range(history + 1):
            self.sample()

    @property
    def temperatures(self) -> ProbeTemperatures:
        """Linear gradient from the core (T1) out to the ambient (T8)."""
        step = (AMBIENT_TEMPERATURE - self.core) / 7
        return ProbeTemperatures(values=[round(self.core + i * step, 2) for i in range(8)])

    def sample(self):
        self.core = min(self.core + HEATING_STEP, AMBIENT_TEMPERATURE)
        self.max_sequence += 1
        status = self.prediction_status()
        self.records[self.max_sequence] = LogRecord(
            sequence_number=self.max_sequence,
            temperatures=self.temperatures,
            prediction_log=PredictionLog(
                virtual_sensors=self.sensors.virtual_sensors,
                state=status.state,
                mode=status.mode,
                type=status.type,
                set_point_temperature=status.set_point_temperature,
                seconds_remaining=status.seconds_remaining,
                estimated_core_temperature=status.estimated_core_temperature,
            ),
            serial_number=self.serial_number,
        )
        if self.food_safe_status is not None:
            self.food_safe_status.sequence_number = self.max_sequence
            self.food_safe_status.seconds_above_threshold += int(self.sample_period)

    def prediction_status(self) -> PredictionStatus:
        if self.prediction_mode == PredictionMode.NONE:
            return PredictionStatus(
                state=PredictionState.COOKING,
                estimated_core_temperature=round(self.core, 1),
            )

        remaining_degrees = self.set_point - self.core
        if remaining_degrees <= 0:
            state, seconds = PredictionState.REMOVAL_PREDICTION_DONE, 0
        else:
            state = PredictionState.PREDICTING
            seconds = int(remaining_degrees / HEATING_STEP * self.sample_period)
        return PredictionStatus(
            state=state,
            mode=self.prediction_mode,
            type=PredictionType.REMOVAL,
            set_point_temperature=self.set_point,
            heat_start_temperature=self.heat_start,
            seconds_remaining=seconds,
            estimated_core_temperature=round(self.core, 1),
        )

    def status(self) -> ProbeStatus:
        return ProbeStatus(
            min_sequence=0,
            max_sequence=self.max_sequence,
            temperatures=self.temperatures,
            mode_id=self.mode_id,
            battery_status_virtual_sensors=self.sensors,
            prediction_status=self.prediction_status(),
            food_safe_data=self.food_safe_data,
            food_safe_status=self.food_safe_status,
        )

    def advertising(self, product_type: ProductType = ProductType.PROBE,
                    hop_count: HopCount = HopCount.HOP1) -> bytes:
        return AdvertisingData(
            product_type=product_type,
            serial_number=self.serial_number,
            temperatures=self.temperatures,
            mode_id=self.mode_id,
            battery_status_virtual_sensors=self.sensors,
            hop_count=hop_count,
        ).encode()

    def log_records(self, min_sequence: int, max_sequence: int) -> List[LogRecord]:
        return [
            self.records[seq] for seq in range(min_sequence, max_sequence + 1)
            if seq in self.records
        ]


class SimulatedRepeater:
    """A repeater node that hears every simulated probe in one hop."""

    def __init__(self, index: int):
        self.serial_number = f"NODE{index:06d}"
        self.link_id = f"node-{index}"
        self.mac_address = f"C0:00:00:00:{index >> 8 & 0xFF:02X}:{index & 0xFF:02X}"
        self.connected = False


# =============================================================================
# Transport
# =============================================================================

class SimulatedTransport(Transport):
    """Transport backed by simulated probes and repeaters."""

    def __init__(
        self,
        scheduler: Scheduler,
        config: Optional[SimulationConfig] = None,
        sample_period: float = DEFAULT_SAMPLE_PERIOD,
        advertise_interval: float = DEFAULT_ADVERTISE_INTERVAL,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        latency: float = DEFAULT_LATENCY,
        history: int = DEFAULT_HISTORY,
        seed: Optional[int] = None,
    ):
        self.logger = logging.getLogger("Simulation")
        self.scheduler = scheduler
        self.config = config or SimulationConfig()
        self.sample_period = sample_period
        self.advertise_interval = advertise_interval
        self.heartbeat_interval = heartbeat_interval
        self.latency = latency
        self._random = random.Random(seed)

        self.probes: Dict[int, SimulatedProbe] = {}
        for _ in range(self.config.probes):
            serial = self._random.randint(0x10000000, 0xFFFFFFFF)
            self.probes[serial] = SimulatedProbe(
                serial,
                session_id=self._random.randint(1, 0xFFFF),
                sample_period=sample_period,
                history=history,
            )
        self.repeaters: Dict[str, SimulatedRepeater] = {}
        for i in range(self.config.repeaters):
            repeater = SimulatedRepeater(i + 1)
            self.repeaters[repeater.link_id] = repeater

        self._links = {p.link_id: p for p in self.probes.values()}
        self._timers: List[TimerHandle] = []

        # Statistics
        self.frames_sent = 0
        self.requests_handled = 0

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def start(self):
        self._timers = [
            self.scheduler.call_every(self.sample_period, self._sample),
            self.scheduler.call_every(self.advertise_interval, self._advertise),
            self.scheduler.call_every(self.heartbeat_interval, self._heartbeat),
        ]
        self.logger.info(
            f"Simulating {len(self.probes)} probe(s) and {len(self.repeaters)} repeater(s)"
        )

    def stop(self):
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    def connect(self, link_id: str) -> bool:
        device = self._device(link_id)
        if device is None:
            self.logger.warning(f"Connect to unknown link {link_id}")
            return False
        self.scheduler.call_later(self.latency, self._complete_connect, link_id)
        return True

    def disconnect(self, link_id: str):
        device = self._device(link_id)
        if device is None or not device.connected:
            return
        device.connected = False
        self.scheduler.call_later(self.latency, publish_disconnected, link_id)

    def send(self, link_id: str, data: bytes) -> bool:
        device = self._device(link_id)
        if device is None or not device.connected:
            return False

        if isinstance(device, SimulatedProbe):
            for request in decode_direct_requests(data):
                self._handle_direct_request(device, request)
        else:
            for message in decode_node_messages(data):
                if isinstance(message, NodeRequest):
                    self._handle_node_request(device, message)
        return True

    # -------------------------------------------------------------------------
    # Device Control (for tests and demos)
    # -------------------------------------------------------------------------

    def drop_link(self, link_id: str):
        """Simulate a link loss initiated by the device."""
        self.disconnect(link_id)

    def restart_probe(self, serial_number: int):
        """Simulate a probe reboot: new session, empty log."""
        probe = self.probes[serial_number]
        probe.session_id = (probe.session_id % 0xFFFF) + 1
        probe.records.clear()
        probe.max_sequence = -1
        probe.sample()

    def _device(self, link_id: str):
        return self._links.get(link_id) or self.repeaters.get(link_id)

    def _complete_connect(self, link_id: str):
        device = self._device(link_id)
        if device is None:
            return
        device.connected = True
        publish_connected(link_id)
        if isinstance(device, SimulatedProbe):
            publish_device_info(link_id, firmware=SIM_FIRMWARE, hardware=SIM_HARDWARE, model=SIM_PROBE_MODEL)
        else:
            publish_device_info(link_id, firmware=SIM_FIRMWARE, hardware=SIM_HARDWARE, model=SIM_NODE_MODEL)

    def _deliver(self, link_id: str, data: bytes):
        self.frames_sent += 1
        self.scheduler.call_later(self.latency, self._publish_if_connected, link_id, data)

    def _publish_if_connected(self, link_id: str, data: bytes):
        device = self._device(link_id)
        if device is not None and device.connected:
            publish_frame(link_id, data)

    # -------------------------------------------------------------------------
    # Periodic Activity
    # -------------------------------------------------------------------------

    def _sample(self):
        for probe in self.probes.values():
            probe.sample()
            status = probe.status()

            if probe.connected:
                publish_status(probe.link_id, status.encode())

            for repeater in self.repeaters.values():
                if not repeater.connected:
                    continue
                report = ProbeStatusReport(probe.serial_number, status, HopCount.HOP1)
                publish_frame(repeater.link_id, NodeRequest(NodeMessageType.PROBE_STATUS, report.encode()).encode())

    def _advertise(self):
        for probe in self.probes.values():
            publish_advertising(probe.link_id, probe.advertising(), PROBE_RSSI, not probe.connected)
            for repeater in self.repeaters.values():
                publish_advertising(
                    repeater.link_id,
                    probe.advertising(ProductType.NODE, HopCount.HOP1),
                    REPEATER_RSSI,
                    not repeater.connected,
                )

    def _heartbeat(self):
        for repeater in self.repeaters.values():
            if not repeater.connected:
                continue
            heartbeat = Heartbeat(
                serial_number=repeater.serial_number,
                mac_address=repeater.mac_address,
                product_type=ProductType.NODE,
                hop_count=HopCount.HOP1,
                inbound=False,
            )
            publish_frame(repeater.link_id, NodeRequest(NodeMessageType.HEARTBEAT, heartbeat.encode()).encode())

    # -------------------------------------------------------------------------
    # Direct Requests
    # -------------------------------------------------------------------------

    def _handle_direct_request(self, probe: SimulatedProbe, request: DirectRequest):
        self.requests_handled += 1
        msg_type = request.msg_type

        if msg_type == MessageType.LOG:
            log_range = parse_log_request(request.payload)
            if log_range is None:
                self._deliver(probe.link_id, DirectResponse(msg_type, False).encode())
                return
            for record in probe.log_records(*log_range):
                self._deliver(probe.link_id, DirectResponse(msg_type, True, record.encode_direct()).encode())
            return

        success, payload = self._apply_probe_request(probe, msg_type, request.payload)
        if msg_type == MessageType.SESSION_INFO:
            payload = SessionInfo(probe.session_id, int(probe.sample_period * 1000)).encode_direct()
        elif msg_type == MessageType.READ_OVER_TEMPERATURE:
            payload = bytes([1 if probe.over_temperature else 0])
        self._deliver(probe.link_id, DirectResponse(msg_type, success, payload).encode())

    def _apply_probe_request(self, probe: SimulatedProbe, msg_type: int, payload: bytes):
        """Apply a write shared by both link kinds. Returns (success, payload)."""
        try:
            if msg_type == MessageType.SET_ID:
                probe.mode_id.probe_id = ProbeID(payload[0])
            elif msg_type == MessageType.SET_COLOR:
                probe.mode_id.color = ProbeColor(payload[0])
            elif msg_type == MessageType.SET_PREDICTION:
                parsed = parse_set_prediction(payload)
                if parsed is None:
                    return False, b""
                probe.prediction_mode, probe.set_point = parsed
                probe.set_point = round(probe.set_point, 1)
                probe.heat_start = probe.core
            elif msg_type == MessageType.CONFIGURE_FOOD_SAFE:
                data = FoodSafeData.decode(payload)
                if data is None:
                    return False, b""
                probe.food_safe_data = data
                probe.food_safe_status = FoodSafeStatus(sequence_number=probe.max_sequence)
            elif msg_type == MessageType.RESET_FOOD_SAFE:
                if probe.food_safe_data is None:
                    return False, b""
                probe.food_safe_status = FoodSafeStatus(sequence_number=probe.max_sequence)
        except (IndexError, ValueError):
            return False, b""
        return True, b""

    # -------------------------------------------------------------------------
    # Node Requests
    # -------------------------------------------------------------------------

    def _handle_node_request(self, repeater: SimulatedRepeater, request: NodeRequest):
        self.requests_handled += 1
        msg_type = request.msg_type

        if len(request.payload) < 4:
            self._respond(repeater, request, False)
            return
        (serial,) = struct.unpack("<I", request.payload[:4])
        body = request.payload[4:]
        probe = self.probes.get(serial)
        if probe is None:
            self._respond(repeater, request, False)
            return

        if msg_type == NodeMessageType.LOG:
            log_range = parse_log_request(body)
            if log_range is None:
                self._respond(repeater, request, False)
                return
            for record in probe.log_records(*log_range):
                self._respond(repeater, request, True, record.encode_node())
            return

        if msg_type == NodeMessageType.SESSION_INFO:
            info = SessionInfo(probe.session_id, int(probe.sample_period * 1000), serial)
            self._respond(repeater, request, True, info.encode_node())
        elif msg_type == NodeMessageType.PROBE_FIRMWARE_REVISION:
            self._respond(repeater, request, True, RevisionInfo(serial, SIM_FIRMWARE).encode_node())
        elif msg_type == NodeMessageType.PROBE_HARDWARE_REVISION:
            self._respond(repeater, request, True, RevisionInfo(serial, SIM_HARDWARE).encode_node())
        elif msg_type == NodeMessageType.PROBE_MODEL_INFORMATION:
            self._respond(repeater, request, True, ModelInfo.parse(serial, SIM_PROBE_MODEL).encode_node())
        elif msg_type == NodeMessageType.READ_OVER_TEMPERATURE:
            payload = struct.pack("<I", serial) + bytes([1 if probe.over_temperature else 0])
            self._respond(repeater, request, True, payload)
        elif msg_type in (
            NodeMessageType.SET_ID,
            NodeMessageType.SET_COLOR,
            NodeMessageType.SET_PREDICTION,
            NodeMessageType.CONFIGURE_FOOD_SAFE,
            NodeMessageType.RESET_FOOD_SAFE,
        ):
            success, _ = self._apply_probe_request(probe, MessageType(int(msg_type)), body)
            self._respond(repeater, request, success)
        else:
            self.logger.debug(f"Unhandled node request {msg_type.name}")
            self._respond(repeater, request, False)

    def _respond(self, repeater: SimulatedRepeater, request: NodeRequest, success: bool, payload: bytes = b""):
        response = NodeResponse(
            msg_type=request.msg_type,
            request_id=request.request_id,
            response_id=new_request_id(),
            success=success,
            payload=payload,
        )
        self._deliver(repeater.link_id, response.encode())
