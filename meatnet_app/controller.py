#!/usr/bin/env python3
"""
MeatNet Controller

This module ties the engine together for an application. It receives radio
events from the transport, keeps one Probe per serial number and one
RepeaterNode per node link, and drives log back-fill, prediction smoothing
and request routing.

Architecture:
    Application / REST API
        │
        ├── MeatNetController (single reactor)
        │       ├── ArbitrationEngine   which report of a probe wins
        │       ├── LogSynchronizer     per probe session logs
        │       ├── PredictionSmoother  per probe countdown
        │       ├── RouteSelector       direct link or best repeater
        │       └── RequestCorrelator   futures for requests in flight
        ▼
    Transport (radio stack)
        │
        ├── Direct link to a probe
        ▼
    Repeater Nodes (MeatNet) ──► Probes

Features:
- Gap-free temperature logs per recording session
- Smoothed time-to-removal prediction
- Probe writes (ID, color, prediction, food safe) over the best route
- Topology tracking from repeater heartbeats
- REST API for web access
"""

import logging
import sys
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pubsub import pub

from .arbitration import ArbitrationEngine, Channel
from .correlator import RequestCorrelator, RequestResult, completed
from .devices import Probe, RepeaterNode, format_serial
from .log_sync import DataPoint, LogSynchronizer, SessionInformation, TemperatureLog
from .messages import (
    DIRECT_RESPONSE_DECODERS,
    NODE_REQUEST_DECODERS,
    NODE_RESPONSE_DECODERS,
    Heartbeat,
    LogRecord,
    ModelInfo,
    OverTemperature,
    ProbeStatusReport,
    RevisionInfo,
    SessionInfo,
    configure_food_safe_payload,
    decode_payload,
    log_request_payload,
    set_color_payload,
    set_id_payload,
    set_prediction_payload,
    with_serial,
)
from .models import (
    ConnectionState,
    EngineConfig,
    MAX_EVENT_HANDLERS,
    MAX_NODES,
    MAX_PROBES,
    MIN_RSSI,
    RequestSpace,
)
from .prediction import PredictionInfo, PredictionSmoother
from .protocol import (
    DirectRequest,
    DirectResponse,
    MessageType,
    NodeMessageType,
    NodeRequest,
    NodeResponse,
    decode_direct_responses,
    decode_node_messages,
)
from .routing import Route, RouteSelector
from .scheduler import Scheduler, ThreadedScheduler, TimerHandle
from .telemetry import (
    AdvertisingData,
    BatteryStatus,
    FoodSafeData,
    HopCount,
    ModeId,
    PredictionMode,
    ProbeColor,
    ProbeID,
    ProbeMode,
    ProbeStatus,
    ProductType,
    decode_advertisement,
    decode_status,
)
from .transport import (
    TOPIC_ADVERTISING,
    TOPIC_CONNECTED,
    TOPIC_DEVICE_INFO,
    TOPIC_DISCONNECTED,
    TOPIC_FRAME,
    TOPIC_STATUS,
    Transport,
)


# Synthetic session for firmware that cannot report one
LEGACY_SESSION = SessionInformation(session_id=0, sample_period=1000)

# Staleness checks run at this interval (seconds)
STALENESS_INTERVAL = 1.0


class MeatNetController:
    """
    Controller for a MeatNet of probes and repeater nodes.

    All engine state is owned by the scheduler's reactor. Transport events
    are marshalled onto it; public methods are expected to be called on it
    too (the REST API uses scheduler.call).
    """

    def __init__(
        self,
        config: EngineConfig,
        transport: Transport,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize the controller.

        Args:
            config: Engine configuration object.
            transport: Radio stack used to reach probes and nodes.
            scheduler: Reactor owning engine state (a ThreadedScheduler if None).
        """
        self.config = config
        self._setup_logging()

        self.logger = logging.getLogger("MeatNetController")
        self.transport = transport
        self.scheduler = scheduler or ThreadedScheduler()
        self.running = False

        # Device tracking
        self.probes: Dict[int, Probe] = {}
        self.nodes: Dict[str, RepeaterNode] = {}
        self._probe_links: Dict[str, int] = {}

        # Engine components
        self.correlator = RequestCorrelator(
            self.scheduler.now,
            direct_timeout=config.direct_request_timeout,
            mesh_timeout=config.mesh_request_timeout,
        )
        self.arbitration = ArbitrationEngine(
            self.scheduler.now,
            instant_read_lockout=config.instant_read_lockout,
            normal_mode_lockout=config.normal_mode_lockout,
        )
        self.router = RouteSelector(
            self.probes,
            self.nodes,
            self.scheduler.now,
            reachability_timeout=config.probe_reachability,
        )

        # Requests for missing metadata already in flight: (serial, message type)
        self._inflight: Set[Tuple[int, int]] = set()
        # Last log range requested per probe, to avoid re-requesting while it streams in
        self._last_log_request: Dict[int, Tuple[Tuple[int, int], float]] = {}

        self._timers: List[TimerHandle] = []
        self._subscribed = False

        # Event handlers
        self._probe_handlers: List[Callable] = []
        self._prediction_handlers: List[Callable] = []
        self._node_handlers: List[Callable] = []
        self._log_progress_handlers: List[Callable] = []

        # Statistics
        self.frames_received = 0
        self.invalid_frames = 0
        self.advertisements_received = 0
        self.status_received = 0
        self.log_records_received = 0
        self.log_requests_sent = 0

    def _setup_logging(self):
        """Configure logging."""
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        if self.config.log_file:
            handlers.insert(0, logging.FileHandler(self.config.log_file))

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            handlers=handlers,
        )

    def _emit(self, handlers: List[Callable], name: str, *args):
        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                self.logger.error(f"{name} handler error: {e}")

    # -------------------------------------------------------------------------
    # Transport Events (pypubsub listeners, any thread)
    # -------------------------------------------------------------------------

    def _on_link_advertising(self, link_id, data, rssi, is_connectable):
        self.scheduler.submit(self.handle_advertising, link_id, data, rssi, is_connectable)

    def _on_link_frame(self, link_id, data):
        self.scheduler.submit(self.handle_frame, link_id, data)

    def _on_link_status(self, link_id, data):
        self.scheduler.submit(self.handle_status, link_id, data)

    def _on_link_connected(self, link_id):
        self.scheduler.submit(self.handle_connected, link_id)

    def _on_link_disconnected(self, link_id):
        self.scheduler.submit(self.handle_disconnected, link_id)

    def _on_link_device_info(self, link_id, firmware=None, hardware=None, model=None):
        self.scheduler.submit(self.handle_device_info, link_id, firmware, hardware, model)

    def _subscribe(self):
        if self._subscribed:
            return
        pub.subscribe(self._on_link_advertising, TOPIC_ADVERTISING)
        pub.subscribe(self._on_link_frame, TOPIC_FRAME)
        pub.subscribe(self._on_link_status, TOPIC_STATUS)
        pub.subscribe(self._on_link_connected, TOPIC_CONNECTED)
        pub.subscribe(self._on_link_disconnected, TOPIC_DISCONNECTED)
        pub.subscribe(self._on_link_device_info, TOPIC_DEVICE_INFO)
        self._subscribed = True

    def _unsubscribe(self):
        if not self._subscribed:
            return
        pub.unsubscribe(self._on_link_advertising, TOPIC_ADVERTISING)
        pub.unsubscribe(self._on_link_frame, TOPIC_FRAME)
        pub.unsubscribe(self._on_link_status, TOPIC_STATUS)
        pub.unsubscribe(self._on_link_connected, TOPIC_CONNECTED)
        pub.unsubscribe(self._on_link_disconnected, TOPIC_DISCONNECTED)
        pub.unsubscribe(self._on_link_device_info, TOPIC_DEVICE_INFO)
        self._subscribed = False

    # -------------------------------------------------------------------------
    # Inbound Handling (reactor)
    # -------------------------------------------------------------------------

    def handle_advertising(self, link_id: str, data: bytes, rssi: int, is_connectable: bool):
        """Handle manufacturer data from a probe or a node repeating a probe."""
        advertising = decode_advertisement(data)
        if advertising is None:
            self.logger.debug(f"Invalid advertising from {link_id} ({len(data or b'')} bytes)")
            return

        self.advertisements_received += 1
        now = self.scheduler.now()

        if advertising.product_type == ProductType.PROBE:
            probe = self._get_or_create_probe(advertising.serial_number)
            if not probe:
                return
            probe.link_id = link_id
            self._probe_links[link_id] = probe.serial_number
            probe.update_rssi(rssi)
            probe.is_connectable = is_connectable
            self._apply_advertising(probe, advertising, None)

        elif advertising.product_type == ProductType.NODE:
            node = self._get_or_create_node(link_id)
            if not node:
                return
            node.update_rssi(rssi)
            node.is_connectable = is_connectable
            node.touch(now)

            probe = self._get_or_create_probe(advertising.serial_number)
            if probe:
                node.report_probe(probe.serial_number, now)
                self._apply_advertising(probe, advertising, advertising.hop_count)

            if self.config.enabled and is_connectable and node.connection_state == ConnectionState.DISCONNECTED:
                self._connect_link(node)

        else:
            self.logger.debug(f"Advertising with unknown product type from {link_id}")

    def _apply_advertising(self, probe: Probe, advertising: AdvertisingData, hop_count: Optional[HopCount]):
        # Status notifications own the data while the probe is connected somehow
        if probe.connected or self.router.is_reachable_via_mesh(probe.serial_number):
            return

        now = self.scheduler.now()
        battery = advertising.battery_status_virtual_sensors
        updated = False

        if advertising.mode_id.mode == ProbeMode.NORMAL:
            if self.arbitration.offer(Channel.NORMAL_MODE, probe.normal_mode_channel, hop_count, lock=False):
                probe.update_id_color_battery(advertising.mode_id, battery.battery_status)
                probe.update_temperatures(advertising.temperatures, battery.virtual_sensors)
                updated = True

        elif advertising.mode_id.mode == ProbeMode.INSTANT_READ:
            updated = self._update_instant_read(
                probe, advertising.temperatures.values[0],
                advertising.mode_id, battery.battery_status, hop_count,
            )

        if updated:
            probe.touch(now)
            self._emit(self._probe_handlers, "Probe", probe)

    def handle_status(self, link_id: str, data: bytes):
        """Handle a status notification from a directly connected probe."""
        serial = self._probe_links.get(link_id)
        probe = self.probes.get(serial) if serial is not None else None
        if probe is None:
            self.logger.debug(f"Status from unknown link {link_id}")
            return

        status = decode_status(data)
        if status is None:
            self.invalid_frames += 1
            self.logger.debug(f"Invalid status from {probe.serial} ({len(data)} bytes)")
            return

        self._process_status(probe, status, None)

    def handle_frame(self, link_id: str, data: bytes):
        """Handle UART bytes from a probe or node link."""
        if not data:
            return
        self.frames_received += 1

        node = self.nodes.get(link_id)
        if node is not None:
            self._handle_node_data(node, data)
            return

        serial = self._probe_links.get(link_id)
        if serial is not None and serial in self.probes:
            self._handle_probe_data(link_id, self.probes[serial], data)
            return

        self.logger.debug(f"Frame from unknown link {link_id}")

    def handle_connected(self, link_id: str):
        node = self.nodes.get(link_id)
        if node is not None:
            node.connection_state = ConnectionState.CONNECTED
            self.logger.info(f"Node {link_id} connected")
            self._emit(self._node_handlers, "Node", node)
            return

        serial = self._probe_links.get(link_id)
        probe = self.probes.get(serial) if serial is not None else None
        if probe is None:
            self.logger.warning(f"Connected to unknown link {link_id}")
            return

        probe.connection_state = ConnectionState.CONNECTED
        self.logger.info(f"Probe {probe.serial} connected on {link_id}")
        if probe.session_information is None and not probe.needs_legacy_session:
            self.read_session_info(probe.serial_number)
        self._emit(self._probe_handlers, "Probe", probe)

    def handle_disconnected(self, link_id: str):
        self.correlator.purge_link(link_id)

        node = self.nodes.get(link_id)
        if node is not None:
            node.handle_disconnected()
            self.logger.warning(f"Node {link_id} disconnected")
            self._emit(self._node_handlers, "Node", node)
            return

        serial = self._probe_links.get(link_id)
        probe = self.probes.get(serial) if serial is not None else None
        if probe is None:
            return

        # The probe may reset while away, so its session must be re-read
        probe.handle_disconnected()
        self._inflight = {key for key in self._inflight if key[0] != probe.serial_number}
        self.logger.warning(f"Probe {probe.serial} disconnected")
        self._emit(self._probe_handlers, "Probe", probe)

    def handle_device_info(self, link_id: str, firmware: Optional[str] = None,
                           hardware: Optional[str] = None, model: Optional[str] = None):
        """Handle Device Information Service strings read after connecting."""
        node = self.nodes.get(link_id)
        if node is not None:
            node.firmware_version = firmware or node.firmware_version
            node.hardware_revision = hardware or node.hardware_revision
            if model:
                node.update_model_info(model)
            self._emit(self._node_handlers, "Node", node)
            return

        serial = self._probe_links.get(link_id)
        probe = self.probes.get(serial) if serial is not None else None
        if probe is None:
            return
        if firmware:
            self._set_probe_firmware(probe, firmware)
        if hardware:
            probe.hardware_revision = hardware
        if model:
            info = ModelInfo.parse(probe.serial_number, model)
            probe.sku = info.sku
            probe.manufacturing_lot = info.manufacturing_lot
        self._emit(self._probe_handlers, "Probe", probe)

    # -------------------------------------------------------------------------
    # Direct Link Frames
    # -------------------------------------------------------------------------

    def _handle_probe_data(self, link_id: str, probe: Probe, data: bytes):
        responses = decode_direct_responses(data)
        consumed = sum(r.size for r in responses)
        if consumed < len(data):
            self.invalid_frames += 1
            self.logger.debug(
                f"Dropped {len(data) - consumed} invalid byte(s) from {probe.serial}"
            )
        for response in responses:
            self._handle_direct_response(link_id, probe, response)

    def _handle_direct_response(self, link_id: str, probe: Probe, response: DirectResponse):
        record = decode_payload(DIRECT_RESPONSE_DECODERS, response.msg_type, response.payload)
        if response.msg_type in DIRECT_RESPONSE_DECODERS and record is None and response.success:
            self.logger.debug(f"Malformed {response.msg_type.name} response from {probe.serial}")
            self.correlator.resolve(
                RequestSpace.DIRECT, response.msg_type, link_id,
                RequestResult.failure("malformed response"),
            )
            return

        if response.msg_type == MessageType.LOG:
            if record is not None:
                self._add_log_record(probe, record)
            # Log requests are not correlated
            return

        if response.msg_type == MessageType.SESSION_INFO and isinstance(record, SessionInfo):
            self._set_session(probe, SessionInformation(record.session_id, record.sample_period))
        elif response.msg_type == MessageType.READ_OVER_TEMPERATURE and isinstance(record, OverTemperature):
            probe.over_temperature = record.over_temperature

        self.logger.debug(
            f"[{response.msg_type.name}] {probe.serial}: success={response.success}"
        )
        self.correlator.resolve(
            RequestSpace.DIRECT, response.msg_type, link_id,
            RequestResult(success=response.success, response=record),
        )

    # -------------------------------------------------------------------------
    # Node Link Frames
    # -------------------------------------------------------------------------

    def _handle_node_data(self, node: RepeaterNode, data: bytes):
        messages = decode_node_messages(data)
        consumed = sum(m.size for m in messages)
        if consumed < len(data):
            self.invalid_frames += 1
            self.logger.debug(f"Dropped {len(data) - consumed} invalid byte(s) from node {node.link_id}")

        node.touch(self.scheduler.now())
        for message in messages:
            if isinstance(message, NodeResponse):
                self._handle_node_response(node, message)
            else:
                self._handle_node_request(node, message)

    def _handle_node_request(self, node: RepeaterNode, request: NodeRequest):
        record = decode_payload(NODE_REQUEST_DECODERS, request.msg_type, request.payload)

        if isinstance(record, ProbeStatusReport):
            probe = self._get_or_create_probe(record.serial_number)
            if probe is None:
                return
            node.report_probe(probe.serial_number, self.scheduler.now())
            self._process_status(probe, record.status, record.hop_count)

        elif isinstance(record, Heartbeat):
            node.update_heartbeat(record, self.scheduler.now())
            self.logger.debug(
                f"[HEARTBEAT] {node.link_id}: serial={record.serial_number} "
                f"hop={int(record.hop_count) + 1} inbound={record.inbound}"
            )
            self._emit(self._node_handlers, "Node", node)

        elif request.msg_type in NODE_REQUEST_DECODERS:
            self.invalid_frames += 1
            self.logger.debug(f"Malformed {request.msg_type.name} from node {node.link_id}")

        else:
            self.logger.debug(f"Ignoring {request.msg_type.name} from node {node.link_id}")

    def _handle_node_response(self, node: RepeaterNode, response: NodeResponse):
        record = decode_payload(NODE_RESPONSE_DECODERS, response.msg_type, response.payload)
        if response.msg_type in NODE_RESPONSE_DECODERS and record is None and response.success:
            self.logger.debug(f"Malformed {response.msg_type.name} response via {node.link_id}")
            self.correlator.resolve(
                RequestSpace.MESH, response.msg_type, response.request_id,
                RequestResult.failure("malformed response"),
            )
            return

        serial = getattr(record, "serial_number", None)
        probe = self.probes.get(serial) if serial is not None else None

        if probe is not None:
            if isinstance(record, LogRecord):
                self._add_log_record(probe, record)
                return
            if isinstance(record, SessionInfo):
                self._set_session(probe, SessionInformation(record.session_id, record.sample_period))
            elif isinstance(record, RevisionInfo):
                if response.msg_type == NodeMessageType.PROBE_FIRMWARE_REVISION:
                    self._set_probe_firmware(probe, record.revision)
                else:
                    probe.hardware_revision = record.revision
            elif isinstance(record, ModelInfo):
                probe.sku = record.sku
                probe.manufacturing_lot = record.manufacturing_lot
            elif isinstance(record, OverTemperature):
                probe.over_temperature = record.over_temperature
        elif response.msg_type == NodeMessageType.LOG:
            return

        self.correlator.resolve(
            RequestSpace.MESH, response.msg_type, response.request_id,
            RequestResult(success=response.success, response=record),
        )

    # -------------------------------------------------------------------------
    # Probe State
    # -------------------------------------------------------------------------

    def _process_status(self, probe: Probe, status: ProbeStatus, hop_count: Optional[HopCount]):
        """Apply a status notification (direct when hop_count is None)."""
        if probe.log_sync.is_old_status(status.max_sequence):
            self.logger.debug(f"[STATUS] {probe.serial}: ignoring old status seq {status.max_sequence}")
            return

        self.status_received += 1
        now = self.scheduler.now()
        battery = status.battery_status_virtual_sensors
        updated = False

        if status.mode_id.mode == ProbeMode.NORMAL:
            if self.arbitration.offer(Channel.NORMAL_MODE, probe.normal_mode_channel, hop_count):
                probe.update_id_color_battery(status.mode_id, battery.battery_status)
                probe.log_sync.set_range(status.min_sequence, status.max_sequence)
                probe.prediction_status = status.prediction_status
                probe.smoother.update(status.prediction_status, status.max_sequence)
                probe.update_temperatures(status.temperatures, battery.virtual_sensors)
                probe.food_safe_data = status.food_safe_data
                probe.food_safe_status = status.food_safe_status
                probe.log_sync.add_point(DataPoint.from_status(status))
                updated = True

        elif status.mode_id.mode == ProbeMode.INSTANT_READ:
            updated = self._update_instant_read(
                probe, status.temperatures.values[0], status.mode_id, battery.battery_status, hop_count,
            )
            if updated:
                probe.log_sync.set_range(status.min_sequence, status.max_sequence)

        self._request_missing_data(probe)

        if updated and probe.log_sync.current_log is not None:
            probe.log_sync.update_percent()
            missing = probe.log_sync.missing_range()
            if missing is not None:
                self._request_missing_logs(probe, *missing)

        probe.last_status_time = now
        probe.update_status_stale(now, self.config.status_stale)
        probe.touch(now)

        if updated:
            self.logger.debug(
                f"[STATUS] {probe.serial}: seq {status.min_sequence}-{status.max_sequence} "
                f"hop={'direct' if hop_count is None else int(hop_count) + 1}"
            )
            self._emit(self._probe_handlers, "Probe", probe)

    def _update_instant_read(self, probe: Probe, celsius: float, mode_id: ModeId,
                             battery_status: BatteryStatus, hop_count: Optional[HopCount]) -> bool:
        if not self.arbitration.offer(Channel.INSTANT_READ, probe.instant_read_channel, hop_count):
            return False
        probe.update_instant_read(celsius, self.scheduler.now())
        probe.update_id_color_battery(mode_id, battery_status)
        return True

    def _add_log_record(self, probe: Probe, record: LogRecord):
        self.log_records_received += 1
        probe.log_sync.add_point(DataPoint.from_log_record(record))

    def _set_session(self, probe: Probe, session: SessionInformation):
        if probe.log_sync.set_session(session):
            self._emit(self._probe_handlers, "Probe", probe)

    def _set_probe_firmware(self, probe: Probe, firmware: str):
        probe.firmware_version = firmware
        if probe.needs_legacy_session and probe.session_information is None:
            self.logger.info(f"Probe {probe.serial} firmware {firmware} has no session info, using legacy session")
            self._set_session(probe, LEGACY_SESSION)

    def _request_missing_data(self, probe: Probe):
        serial = probe.serial_number
        if probe.session_information is None and not probe.needs_legacy_session:
            self._request_once(serial, MessageType.SESSION_INFO, self.read_session_info)

        # Revision and model info are only readable through a node; direct links
        # get them from device info on connect
        if self.router.direct_route(serial) is not None:
            return
        if probe.firmware_version is None:
            self._request_once(serial, NodeMessageType.PROBE_FIRMWARE_REVISION, self.read_firmware_revision)
        if probe.hardware_revision is None:
            self._request_once(serial, NodeMessageType.PROBE_HARDWARE_REVISION, self.read_hardware_revision)
        if probe.sku is None or probe.manufacturing_lot is None:
            self._request_once(serial, NodeMessageType.PROBE_MODEL_INFORMATION, self.read_model_info)

    def _request_once(self, serial_number: int, msg_type: int, request: Callable[[int], Future]):
        key = (serial_number, int(msg_type))
        if key in self._inflight:
            return
        future = request(serial_number)
        if future.done():
            return
        self._inflight.add(key)
        future.add_done_callback(lambda _f: self._inflight.discard(key))

    def _request_missing_logs(self, probe: Probe, min_sequence: int, max_sequence: int):
        now = self.scheduler.now()
        requested = (min_sequence, max_sequence)
        previous = self._last_log_request.get(probe.serial_number)
        if previous is not None and previous[0] == requested and now - previous[1] < self.config.direct_request_timeout:
            return
        if self.request_logs(probe.serial_number, min_sequence, max_sequence):
            self._last_log_request[probe.serial_number] = (requested, now)

    def _on_prediction(self, probe: Probe, info: Optional[PredictionInfo]):
        probe.prediction_info = info
        self._emit(self._prediction_handlers, "Prediction", probe, info)

    def _on_log_progress(self, probe: Probe, percent: int):
        self._emit(self._log_progress_handlers, "Log progress", probe, percent)

    def _get_or_create_probe(self, serial_number: int) -> Optional[Probe]:
        probe = self.probes.get(serial_number)
        if probe is not None:
            return probe

        if len(self.probes) >= MAX_PROBES:
            self.logger.warning(f"Max probes ({MAX_PROBES}) reached, ignoring {format_serial(serial_number)}")
            return None

        log_sync = LogSynchronizer(
            format_serial(serial_number),
            self.scheduler,
            accumulator_delay=self.config.accumulator_delay,
            accumulator_max=self.config.accumulator_max,
            on_progress=lambda percent: self._on_log_progress(self.probes[serial_number], percent),
        )
        probe = Probe(serial_number, log_sync)
        probe.smoother = PredictionSmoother(
            self.scheduler,
            lambda info: self._on_prediction(probe, info),
            stale_timeout=self.config.prediction_stale,
        )
        self.probes[serial_number] = probe
        self.logger.info(f"New probe discovered: {probe.serial}")
        return probe

    def _get_or_create_node(self, link_id: str) -> Optional[RepeaterNode]:
        node = self.nodes.get(link_id)
        if node is not None:
            return node

        if len(self.nodes) >= MAX_NODES:
            self.logger.warning(f"Max nodes ({MAX_NODES}) reached, ignoring {link_id}")
            return None

        node = RepeaterNode(link_id)
        self.nodes[link_id] = node
        self.logger.info(f"New node discovered: {link_id}")
        return node

    def _connect_link(self, device):
        device.connection_state = ConnectionState.CONNECTING
        if not self.transport.connect(device.link_id):
            self.logger.warning(f"Connect to {device.link_id} failed")
            device.connection_state = ConnectionState.DISCONNECTED

    # -------------------------------------------------------------------------
    # Periodic Tasks
    # -------------------------------------------------------------------------

    def _sweep(self):
        self.correlator.sweep()

    def _check_staleness(self):
        now = self.scheduler.now()
        for probe in self.probes.values():
            probe.update_instant_read_stale(now, self.config.instant_read_stale)
            probe.update_status_stale(now, self.config.status_stale)
            was_stale = probe.stale
            if probe.update_stale(now, self.config.device_stale) and not was_stale:
                self.logger.info(f"Probe {probe.serial} went stale")
        for node in self.nodes.values():
            node.update_stale(now, self.config.device_stale)
            for serial in node.prune_probes(now, self.config.probe_reachability):
                self.logger.debug(f"Node {node.link_id} no longer reports {format_serial(serial)}")

    def _refresh_sessions(self):
        for probe in self.probes.values():
            if probe.needs_legacy_session:
                continue
            if self.router.best_route(probe.serial_number) is None:
                continue
            self.read_session_info(probe.serial_number)

    # -------------------------------------------------------------------------
    # Request Plumbing
    # -------------------------------------------------------------------------

    def _send_probe_request(
        self,
        serial_number: int,
        direct_type: Optional[MessageType],
        node_type: NodeMessageType,
        payload: bytes = b"",
    ) -> Future:
        """Route a request to a probe and return the future for its response."""
        route = self.router.best_route(serial_number)
        if route is None:
            self.logger.warning(f"No route to {format_serial(serial_number)} for {node_type.name}")
            return completed(RequestResult.failure("no route"))

        if route.is_direct:
            if direct_type is None:
                return completed(RequestResult.failure("not available on direct link"))
            space, msg_type, key = RequestSpace.DIRECT, direct_type, route.link_id
            slot = None
            frame = DirectRequest(direct_type, payload).encode()
        else:
            request = NodeRequest(node_type, with_serial(serial_number, payload))
            space, msg_type, key = RequestSpace.MESH, node_type, request.request_id
            # One request per type per probe, whichever node carries it
            slot = serial_number
            frame = request.encode()

        future = self.correlator.register(space, msg_type, key, link_id=route.link_id, slot=slot)
        self.logger.debug(f"[{msg_type.name}] {format_serial(serial_number)} via {route.kind.value} {route.link_id}")
        if not self.transport.send(route.link_id, frame):
            self.correlator.resolve(space, msg_type, key, RequestResult.failure("send failed"))
        return future

    # -------------------------------------------------------------------------
    # Public API - Probe Writes
    # -------------------------------------------------------------------------

    def set_probe_id(self, serial_number: int, probe_id: ProbeID) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.SET_ID, NodeMessageType.SET_ID, set_id_payload(probe_id)
        )

    def set_probe_color(self, serial_number: int, color: ProbeColor) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.SET_COLOR, NodeMessageType.SET_COLOR, set_color_payload(color)
        )

    def set_removal_prediction(self, serial_number: int, set_point: float) -> Future:
        """Start a time-to-removal prediction for a core set point in Celsius."""
        if not 0.0 < set_point < 100.0:
            return completed(RequestResult.failure(f"set point {set_point} out of range"))
        return self._send_probe_request(
            serial_number, MessageType.SET_PREDICTION, NodeMessageType.SET_PREDICTION,
            set_prediction_payload(PredictionMode.TIME_TO_REMOVAL, set_point),
        )

    def cancel_prediction(self, serial_number: int) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.SET_PREDICTION, NodeMessageType.SET_PREDICTION,
            set_prediction_payload(PredictionMode.NONE, 0.0),
        )

    def configure_food_safe(self, serial_number: int, data: FoodSafeData) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.CONFIGURE_FOOD_SAFE, NodeMessageType.CONFIGURE_FOOD_SAFE,
            configure_food_safe_payload(data),
        )

    def reset_food_safe(self, serial_number: int) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.RESET_FOOD_SAFE, NodeMessageType.RESET_FOOD_SAFE
        )

    # -------------------------------------------------------------------------
    # Public API - Probe Reads
    # -------------------------------------------------------------------------

    def read_session_info(self, serial_number: int) -> Future:
        return self._send_probe_request(serial_number, MessageType.SESSION_INFO, NodeMessageType.SESSION_INFO)

    def read_firmware_revision(self, serial_number: int) -> Future:
        return self._send_probe_request(serial_number, None, NodeMessageType.PROBE_FIRMWARE_REVISION)

    def read_hardware_revision(self, serial_number: int) -> Future:
        return self._send_probe_request(serial_number, None, NodeMessageType.PROBE_HARDWARE_REVISION)

    def read_model_info(self, serial_number: int) -> Future:
        return self._send_probe_request(serial_number, None, NodeMessageType.PROBE_MODEL_INFORMATION)

    def read_over_temperature(self, serial_number: int) -> Future:
        return self._send_probe_request(
            serial_number, MessageType.READ_OVER_TEMPERATURE, NodeMessageType.READ_OVER_TEMPERATURE
        )

    def request_logs(self, serial_number: int, min_sequence: int, max_sequence: int) -> int:
        """
        Ask for logged records in [min, max] over every usable route.

        Records stream back as individual responses and are not correlated;
        the log store ignores duplicates. Returns the number of requests sent.
        """
        if max_sequence - min_sequence >= self.config.max_log_request:
            max_sequence = min_sequence + self.config.max_log_request - 1
        payload = log_request_payload(min_sequence, max_sequence)
        sent = 0
        for route in self.router.log_routes(serial_number):
            if route.is_direct:
                frame = DirectRequest(MessageType.LOG, payload).encode()
            else:
                frame = NodeRequest(NodeMessageType.LOG, with_serial(serial_number, payload)).encode()
            if self.transport.send(route.link_id, frame):
                sent += 1
        if sent:
            self.log_requests_sent += sent
            self.logger.info(
                f"[LOG] {format_serial(serial_number)}: requested {min_sequence}-{max_sequence} "
                f"over {sent} route(s)"
            )
        return sent

    # -------------------------------------------------------------------------
    # Public API - Connections
    # -------------------------------------------------------------------------

    def connect_probe(self, serial_number: int) -> bool:
        """Open a direct link to a probe that has been heard advertising."""
        probe = self.probes.get(serial_number)
        if probe is None or not probe.link_id:
            return False
        if probe.connection_state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return True
        self._connect_link(probe)
        return probe.connection_state == ConnectionState.CONNECTING

    def disconnect_probe(self, serial_number: int) -> bool:
        probe = self.probes.get(serial_number)
        if probe is None or not probe.link_id or not probe.connected:
            return False
        self.transport.disconnect(probe.link_id)
        return True

    # -------------------------------------------------------------------------
    # Public API - Event Handlers
    # -------------------------------------------------------------------------

    def _add_handler(self, handlers: List[Callable], handler: Callable, name: str) -> bool:
        if len(handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning(f"Max {name} handlers reached")
            return False
        handlers.append(handler)
        return True

    def on_probe_update(self, handler: Callable[[Probe], None]) -> bool:
        """Register a handler called whenever a probe's state changes."""
        return self._add_handler(self._probe_handlers, handler, "probe")

    def on_prediction(self, handler: Callable[[Probe, Optional[PredictionInfo]], None]) -> bool:
        """Register a handler for smoothed prediction updates."""
        return self._add_handler(self._prediction_handlers, handler, "prediction")

    def on_node_update(self, handler: Callable[[RepeaterNode], None]) -> bool:
        return self._add_handler(self._node_handlers, handler, "node")

    def on_log_progress(self, handler: Callable[[Probe, int], None]) -> bool:
        return self._add_handler(self._log_progress_handlers, handler, "log progress")

    # -------------------------------------------------------------------------
    # Public API - Device Queries
    # -------------------------------------------------------------------------

    def get_probes(self) -> List[Probe]:
        """Get list of all known probes."""
        return list(self.probes.values())

    def get_probe(self, serial_number: int) -> Optional[Probe]:
        return self.probes.get(serial_number)

    def get_nodes(self) -> List[RepeaterNode]:
        return list(self.nodes.values())

    def get_node(self, link_id: str) -> Optional[RepeaterNode]:
        return self.nodes.get(link_id)

    def get_nearest_probe(self) -> Optional[Probe]:
        """Probe with the strongest direct signal, if any has been heard."""
        heard = [p for p in self.probes.values() if p.rssi > MIN_RSSI]
        if not heard:
            return None
        return max(heard, key=lambda p: p.rssi)

    def get_probe_snapshot(self, serial_number: int) -> Optional[Dict[str, Any]]:
        probe = self.probes.get(serial_number)
        return probe.to_dict() if probe else None

    def get_prediction(self, serial_number: int) -> Optional[PredictionInfo]:
        probe = self.probes.get(serial_number)
        return probe.prediction_info if probe else None

    def get_log_percent(self, serial_number: int) -> Optional[int]:
        probe = self.probes.get(serial_number)
        return probe.percent_synced if probe else None

    def get_logs(self, serial_number: int) -> Dict[int, TemperatureLog]:
        """All session logs of a probe, keyed by session ID."""
        probe = self.probes.get(serial_number)
        return dict(probe.log_sync.logs) if probe else {}

    def get_log(self, serial_number: int, session_id: Optional[int] = None) -> Optional[TemperatureLog]:
        """One session log; the current session when session_id is None."""
        probe = self.probes.get(serial_number)
        if probe is None:
            return None
        if session_id is None:
            return probe.log_sync.current_log
        return probe.log_sync.logs.get(session_id)

    def get_route(self, serial_number: int) -> Optional[Route]:
        return self.router.best_route(serial_number)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the engine and all devices."""
        return {
            "running": self.running,
            "total_probes": len(self.probes),
            "connected_probes": sum(1 for p in self.probes.values() if p.connected),
            "total_nodes": len(self.nodes),
            "connected_nodes": sum(1 for n in self.nodes.values() if n.connected),
            "frames_received": self.frames_received,
            "invalid_frames": self.invalid_frames,
            "advertisements_received": self.advertisements_received,
            "status_received": self.status_received,
            "log_records_received": self.log_records_received,
            "log_requests_sent": self.log_requests_sent,
            "pending_requests": len(self.correlator),
            "requests_resolved": self.correlator.resolved_count,
            "requests_timed_out": self.correlator.timeout_count,
        }

    # -------------------------------------------------------------------------
    # Public API - Run Loop
    # -------------------------------------------------------------------------

    def start(self):
        """Subscribe to transport events and start periodic tasks."""
        if self.running:
            return
        self._subscribe()
        self.scheduler.start()
        self._timers = [
            self.scheduler.call_every(self.config.sweep_interval, self._sweep),
            self.scheduler.call_every(STALENESS_INTERVAL, self._check_staleness),
            self.scheduler.call_every(self.config.session_info_interval, self._refresh_sessions),
        ]
        self.transport.start()
        self.running = True
        self.logger.info("MeatNet controller started")

    def run(self):
        """Run the controller until interrupted."""
        self.start()
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            self.shutdown()
        return True

    def run_with_api(self, api_host: str = None, api_port: int = None):
        """
        Run the controller with the REST API server.

        Args:
            api_host: Host to bind API server to (uses config if None).
            api_port: Port for API server (uses config if None).
        """
        from .api import create_api, run_api_server

        host = api_host or self.config.api.host
        port = api_port or self.config.api.port

        self.start()
        app = create_api(self)

        self.logger.info(f"API server starting on http://{host}:{port}")
        self.logger.info(f"API docs available at http://{host}:{port}/api/docs")

        try:
            run_api_server(app, host=host, port=port)
        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            self.shutdown()

        return True

    def shutdown(self):
        """Shutdown the controller."""
        self.logger.info("Shutting down MeatNet controller...")
        self.running = False
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        self._unsubscribe()
        self.transport.stop()
        for probe in self.probes.values():
            if probe.smoother:
                probe.smoother.reset()
            probe.log_sync.close()
        self.scheduler.stop()
        self.logger.info("MeatNet controller stopped")
