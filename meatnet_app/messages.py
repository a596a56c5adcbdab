#!/usr/bin/env python3
"""
MeatNet Message Payloads

Payload records carried inside protocol frames, request payload builders and
the dispatch tables that map a message type byte to its payload decoder.

Direct responses (probe link):
    SESSION_INFO:           session ID (uint16), sample period ms (uint16)
    LOG:                    sequence (uint32), temperatures (13),
                            prediction log (7, newer firmware)
    READ_OVER_TEMPERATURE:  flag (uint8)

Node responses (mesh link) prefix the probe serial (uint32):
    SESSION_INFO:               serial, session ID (uint32), period (uint16)
    LOG:                        serial, sequence, temperatures, prediction log
    PROBE_FIRMWARE_REVISION:    serial, 20-byte NUL padded string
    PROBE_HARDWARE_REVISION:    serial, 20-byte NUL padded string
    PROBE_MODEL_INFORMATION:    serial, 50-byte "SKU:LOT" string
    READ_OVER_TEMPERATURE:      serial, flag

Node requests pushed to the app:
    PROBE_STATUS:   serial, probe status (30 or 48), hop count byte
    HEARTBEAT:      node serial (10), MAC (6), product type, network info,
                    inbound flag, 4 x connection detail (13)
"""

import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .protocol import MessageType, NodeMessageType
from .telemetry import (
    FoodSafeData,
    HopCount,
    PredictionLog,
    PredictionMode,
    ProbeColor,
    ProbeID,
    ProbeStatus,
    ProbeTemperatures,
    ProductType,
    PROBE_STATUS_EXTENDED_SIZE,
    PROBE_STATUS_SIZE,
    _enum_or,
)


# =============================================================================
# Constants
# =============================================================================

# Probes answer at most this many records per log request
MAX_LOG_RECORDS = 500

DIRECT_LOG_MIN_SIZE = 17
DIRECT_LOG_PREDICTION_SIZE = 24
DIRECT_SESSION_INFO_SIZE = 4
NODE_LOG_SIZE = 28
NODE_SESSION_INFO_SIZE = 10
REVISION_STRING_SIZE = 20
NODE_REVISION_SIZE = 4 + REVISION_STRING_SIZE
MODEL_INFO_STRING_SIZE = 50
NODE_MODEL_INFO_SIZE = 4 + MODEL_INFO_STRING_SIZE
NODE_PROBE_STATUS_SIZES = (4 + PROBE_STATUS_SIZE + 1, 4 + PROBE_STATUS_EXTENDED_SIZE + 1)
HEARTBEAT_SIZE = 71
CONNECTION_DETAIL_SIZE = 13
CONNECTION_DETAIL_COUNT = 4
NODE_SERIAL_SIZE = 10

# Set point field is 10 bits of 0.1 C
SET_POINT_MASK = 0x3FF


def _text(data: bytes) -> str:
    """Decode a fixed-size, NUL padded string field."""
    return data.split(b"\x00", 1)[0].decode("utf-8", errors="replace").strip()


def _padded(text: str, size: int) -> bytes:
    return text.encode("utf-8")[:size].ljust(size, b"\x00")


# =============================================================================
# Payload Records
# =============================================================================

@dataclass
class LogRecord:
    """One historical data point, answered for a log request."""
    sequence_number: int
    temperatures: ProbeTemperatures
    prediction_log: Optional[PredictionLog] = None
    serial_number: Optional[int] = None

    @classmethod
    def decode_direct(cls, payload: bytes) -> Optional["LogRecord"]:
        if len(payload) < DIRECT_LOG_MIN_SIZE:
            return None
        (sequence,) = struct.unpack("<I", payload[:4])
        prediction_log = None
        if len(payload) >= DIRECT_LOG_PREDICTION_SIZE:
            prediction_log = PredictionLog.decode(payload[17:24])
        return cls(
            sequence_number=sequence,
            temperatures=ProbeTemperatures.decode(payload[4:17]),
            prediction_log=prediction_log,
        )

    @classmethod
    def decode_node(cls, payload: bytes) -> Optional["LogRecord"]:
        if len(payload) < NODE_LOG_SIZE:
            return None
        serial, sequence = struct.unpack("<II", payload[:8])
        return cls(
            sequence_number=sequence,
            temperatures=ProbeTemperatures.decode(payload[8:21]),
            prediction_log=PredictionLog.decode(payload[21:28]),
            serial_number=serial,
        )

    def encode_direct(self) -> bytes:
        return (
            struct.pack("<I", self.sequence_number)
            + self.temperatures.encode()
            + (self.prediction_log or PredictionLog()).encode()
        )

    def encode_node(self) -> bytes:
        return (
            struct.pack("<II", self.serial_number or 0, self.sequence_number)
            + self.temperatures.encode()
            + (self.prediction_log or PredictionLog()).encode()
        )


@dataclass
class SessionInfo:
    """Recording session of a probe; a new ID means a new, independent log."""
    session_id: int
    sample_period: int  # milliseconds
    serial_number: Optional[int] = None

    @classmethod
    def decode_direct(cls, payload: bytes) -> Optional["SessionInfo"]:
        if len(payload) < DIRECT_SESSION_INFO_SIZE:
            return None
        session_id, period = struct.unpack("<HH", payload[:4])
        return cls(session_id=session_id, sample_period=period)

    @classmethod
    def decode_node(cls, payload: bytes) -> Optional["SessionInfo"]:
        if len(payload) < NODE_SESSION_INFO_SIZE:
            return None
        serial, session_id, period = struct.unpack("<IIH", payload[:10])
        return cls(session_id=session_id, sample_period=period, serial_number=serial)

    def encode_direct(self) -> bytes:
        return struct.pack("<HH", self.session_id & 0xFFFF, self.sample_period)

    def encode_node(self) -> bytes:
        return struct.pack("<IIH", self.serial_number or 0, self.session_id, self.sample_period)


@dataclass
class OverTemperature:
    over_temperature: bool
    serial_number: Optional[int] = None

    @classmethod
    def decode_direct(cls, payload: bytes) -> Optional["OverTemperature"]:
        if len(payload) < 1:
            return None
        return cls(over_temperature=payload[0] != 0)

    @classmethod
    def decode_node(cls, payload: bytes) -> Optional["OverTemperature"]:
        if len(payload) < 5:
            return None
        (serial,) = struct.unpack("<I", payload[:4])
        return cls(over_temperature=payload[4] != 0, serial_number=serial)


@dataclass
class RevisionInfo:
    """Firmware or hardware revision of a probe, relayed by a node."""
    serial_number: int
    revision: str

    @classmethod
    def decode_node(cls, payload: bytes) -> Optional["RevisionInfo"]:
        if len(payload) < NODE_REVISION_SIZE:
            return None
        (serial,) = struct.unpack("<I", payload[:4])
        return cls(serial_number=serial, revision=_text(payload[4:NODE_REVISION_SIZE]))

    def encode_node(self) -> bytes:
        return struct.pack("<I", self.serial_number) + _padded(self.revision, REVISION_STRING_SIZE)


@dataclass
class ModelInfo:
    """Model information string of the form "SKU:LOT"."""
    serial_number: int
    sku: str = ""
    manufacturing_lot: str = ""

    @classmethod
    def parse(cls, serial_number: int, text: str) -> "ModelInfo":
        sku, _, lot = text.partition(":")
        return cls(serial_number=serial_number, sku=sku, manufacturing_lot=lot)

    @classmethod
    def decode_node(cls, payload: bytes) -> Optional["ModelInfo"]:
        if len(payload) < NODE_MODEL_INFO_SIZE:
            return None
        (serial,) = struct.unpack("<I", payload[:4])
        return cls.parse(serial, _text(payload[4:NODE_MODEL_INFO_SIZE]))

    @property
    def text(self) -> str:
        return f"{self.sku}:{self.manufacturing_lot}"

    def encode_node(self) -> bytes:
        return struct.pack("<I", self.serial_number) + _padded(self.text, MODEL_INFO_STRING_SIZE)


@dataclass
class ProbeStatusReport:
    """Probe status relayed through the mesh."""
    serial_number: int
    status: ProbeStatus
    hop_count: HopCount = HopCount.HOP1

    @classmethod
    def decode(cls, payload: bytes) -> Optional["ProbeStatusReport"]:
        if len(payload) not in NODE_PROBE_STATUS_SIZES:
            return None
        (serial,) = struct.unpack("<I", payload[:4])
        status = ProbeStatus.decode(payload[4:-1])
        if status is None:
            return None
        return cls(
            serial_number=serial,
            status=status,
            hop_count=_enum_or(HopCount, payload[-1], HopCount.HOP4),
        )

    def encode(self) -> bytes:
        return struct.pack("<I", self.serial_number) + self.status.encode() + bytes([self.hop_count])


@dataclass
class ConnectionDetail:
    """One link of a node, as reported in its heartbeat."""
    present: bool = False
    serial_number: str = ""
    product_type: ProductType = ProductType.UNKNOWN
    rssi: int = 0

    @classmethod
    def decode(cls, data: bytes) -> "ConnectionDetail":
        if len(data) < CONNECTION_DETAIL_SIZE or not data[11] & 0x01:
            return cls()

        product_type = _enum_or(ProductType, data[10], ProductType.UNKNOWN)
        if product_type == ProductType.PROBE:
            (serial,) = struct.unpack("<I", data[:4])
            serial_number = f"{serial:02X}"
        elif product_type == ProductType.NODE:
            serial_number = _text(data[:NODE_SERIAL_SIZE])
        else:
            serial_number = ""

        (rssi,) = struct.unpack("<b", data[12:13])
        return cls(present=True, serial_number=serial_number, product_type=product_type, rssi=rssi)

    def encode(self) -> bytes:
        if not self.present:
            return bytes(CONNECTION_DETAIL_SIZE)
        if self.product_type == ProductType.PROBE:
            serial = struct.pack("<I", int(self.serial_number, 16)).ljust(NODE_SERIAL_SIZE, b"\x00")
        else:
            serial = _padded(self.serial_number, NODE_SERIAL_SIZE)
        return serial + struct.pack("<BBb", self.product_type, 0x01, self.rssi)


@dataclass
class Heartbeat:
    """Periodic topology report pushed by a repeater node."""
    serial_number: str
    mac_address: str
    product_type: ProductType
    hop_count: HopCount
    inbound: bool
    connection_details: List[ConnectionDetail] = field(default_factory=list)

    @classmethod
    def decode(cls, payload: bytes) -> Optional["Heartbeat"]:
        if len(payload) < HEARTBEAT_SIZE:
            return None

        details = []
        for i in range(CONNECTION_DETAIL_COUNT):
            start = 19 + i * CONNECTION_DETAIL_SIZE
            details.append(ConnectionDetail.decode(payload[start : start + CONNECTION_DETAIL_SIZE]))

        return cls(
            serial_number=_text(payload[:10]),
            mac_address=":".join(f"{b:02X}" for b in payload[10:16]),
            product_type=_enum_or(ProductType, payload[16], ProductType.UNKNOWN),
            hop_count=HopCount.from_network_byte(payload[17]),
            inbound=payload[18] != 0,
            connection_details=details,
        )

    def encode(self) -> bytes:
        mac = bytes(int(part, 16) for part in self.mac_address.split(":"))
        details = list(self.connection_details)[:CONNECTION_DETAIL_COUNT]
        details += [ConnectionDetail()] * (CONNECTION_DETAIL_COUNT - len(details))
        return (
            _padded(self.serial_number, NODE_SERIAL_SIZE)
            + mac.ljust(6, b"\x00")[:6]
            + bytes([self.product_type, (self.hop_count & 0x03) << 6, 1 if self.inbound else 0])
            + b"".join(d.encode() for d in details)
        )


# =============================================================================
# Request Payload Builders
# =============================================================================

def with_serial(serial_number: int, payload: bytes = b"") -> bytes:
    """Prefix a probe payload with the serial a node should forward it to."""
    return struct.pack("<I", serial_number) + payload


def log_request_payload(min_sequence: int, max_sequence: int) -> bytes:
    """Log request for [min, max], limited to the records one request can return."""
    if max_sequence - min_sequence > MAX_LOG_RECORDS:
        max_sequence = min_sequence + MAX_LOG_RECORDS - 1
    return struct.pack("<II", min_sequence, max_sequence)


def parse_log_request(payload: bytes) -> Optional[tuple]:
    """(min, max) from a direct log request payload."""
    if len(payload) < 8:
        return None
    return struct.unpack("<II", payload[:8])


def set_id_payload(probe_id: ProbeID) -> bytes:
    return bytes([ProbeID(probe_id)])


def set_color_payload(color: ProbeColor) -> bytes:
    return bytes([ProbeColor(color)])


def set_prediction_payload(mode: PredictionMode, set_point: float) -> bytes:
    raw = (int(mode) << 10) | (int(round(set_point / 0.1)) & SET_POINT_MASK)
    return struct.pack("<H", raw)


def parse_set_prediction(payload: bytes) -> Optional[tuple]:
    """(mode, set point C) from a set prediction payload."""
    if len(payload) < 2:
        return None
    (raw,) = struct.unpack("<H", payload[:2])
    return PredictionMode((raw >> 10) & 0x03), (raw & SET_POINT_MASK) * 0.1


def configure_food_safe_payload(data: FoodSafeData) -> bytes:
    return data.encode()


# =============================================================================
# Dispatch Tables
# =============================================================================

PayloadDecoder = Callable[[bytes], Optional[object]]

# Message types not listed carry no payload of interest (plain acknowledgements)
DIRECT_RESPONSE_DECODERS: Dict[MessageType, PayloadDecoder] = {
    MessageType.SESSION_INFO: SessionInfo.decode_direct,
    MessageType.LOG: LogRecord.decode_direct,
    MessageType.READ_OVER_TEMPERATURE: OverTemperature.decode_direct,
}

NODE_RESPONSE_DECODERS: Dict[NodeMessageType, PayloadDecoder] = {
    NodeMessageType.SESSION_INFO: SessionInfo.decode_node,
    NodeMessageType.LOG: LogRecord.decode_node,
    NodeMessageType.READ_OVER_TEMPERATURE: OverTemperature.decode_node,
    NodeMessageType.PROBE_FIRMWARE_REVISION: RevisionInfo.decode_node,
    NodeMessageType.PROBE_HARDWARE_REVISION: RevisionInfo.decode_node,
    NodeMessageType.PROBE_MODEL_INFORMATION: ModelInfo.decode_node,
}

NODE_REQUEST_DECODERS: Dict[NodeMessageType, PayloadDecoder] = {
    NodeMessageType.PROBE_STATUS: ProbeStatusReport.decode,
    NodeMessageType.HEARTBEAT: Heartbeat.decode,
}


def decode_payload(table: Dict, msg_type, payload: bytes) -> Optional[object]:
    """
    Decode a payload with the decoder registered for msg_type.

    Returns None when the type has no decoder or the payload is malformed.
    """
    decoder = table.get(msg_type)
    if decoder is None:
        return None
    try:
        return decoder(payload)
    except (struct.error, ValueError):
        return None
