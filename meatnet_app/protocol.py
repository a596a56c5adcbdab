#!/usr/bin/env python3
"""
MeatNet UART Framing Protocol

This module defines the framed binary protocol spoken over the UART
characteristic of a probe (direct link) or a MeatNet repeater node (mesh link).

Protocol Overview:
- Every frame starts with the sync marker 0xCA 0xFE
- A CRC16-CCITT protects everything after the CRC field
- Direct frames are exchanged with a probe we are connected to
- Node frames carry a 32-bit request ID so responses relayed through the
  mesh can be matched to the request that caused them
- A single notification may carry several frames back to back

Direct Request Format (header 6 bytes):
    Bytes 0-1: Sync (0xCA 0xFE)
    Bytes 2-3: CRC (uint16, little-endian)
    Byte 4:    Message Type
    Byte 5:    Payload Length
    Bytes 6+:  Payload

Direct Response Format (header 7 bytes):
    Bytes 0-1: Sync
    Bytes 2-3: CRC
    Byte 4:    Message Type
    Byte 5:    Success (0/1)
    Byte 6:    Payload Length
    Bytes 7+:  Payload

Node Request Format (header 10 bytes):
    Bytes 0-1: Sync
    Bytes 2-3: CRC
    Byte 4:    Message Type
    Bytes 5-8: Request ID (uint32, little-endian)
    Byte 9:    Payload Length
    Bytes 10+: Payload

Node Response Format (header 15 bytes):
    Bytes 0-1:   Sync
    Bytes 2-3:   CRC
    Byte 4:      Message Type | 0x80
    Bytes 5-8:   Request ID (uint32)
    Bytes 9-12:  Response ID (uint32)
    Byte 13:     Success (0/1)
    Byte 14:     Payload Length
    Bytes 15+:   Payload

CRC:
    CRC16-CCITT, polynomial 0x1021, initial value 0xFFFF, MSB first,
    computed over every byte between the CRC field and the end of the payload.
"""

import random
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Union


# =============================================================================
# Constants
# =============================================================================

# Frame sync marker
SYNC_BYTES = b"\xca\xfe"

# Header sizes (sync + crc included)
DIRECT_REQUEST_HEADER_SIZE = 6
DIRECT_RESPONSE_HEADER_SIZE = 7
NODE_REQUEST_HEADER_SIZE = 10
NODE_RESPONSE_HEADER_SIZE = 15

# Byte offset where the CRC-protected region starts
CRC_START = 4

# Node responses have the high bit of the message type set
RESPONSE_TYPE_FLAG = 0x80

# Payload length is a single byte
MAX_PAYLOAD_SIZE = 255

# Request IDs are never zero
MAX_REQUEST_ID = 0xFFFFFFFF

CRC16_POLYNOMIAL = 0x1021
CRC16_INITIAL = 0xFFFF


# =============================================================================
# Enums
# =============================================================================

class MessageType(IntEnum):
    """Message types on a direct probe link."""
    SET_ID = 0x01
    SET_COLOR = 0x02
    SESSION_INFO = 0x03
    LOG = 0x04
    SET_PREDICTION = 0x05
    READ_OVER_TEMPERATURE = 0x06
    CONFIGURE_FOOD_SAFE = 0x07
    RESET_FOOD_SAFE = 0x08


class NodeMessageType(IntEnum):
    """Message types on a repeater node link."""
    # Forwarded probe operations
    SET_ID = 0x01
    SET_COLOR = 0x02
    SESSION_INFO = 0x03
    LOG = 0x04
    SET_PREDICTION = 0x05
    READ_OVER_TEMPERATURE = 0x06
    CONFIGURE_FOOD_SAFE = 0x07
    RESET_FOOD_SAFE = 0x08

    # Network management
    CONNECTED = 0x40
    DISCONNECTED = 0x41
    READ_NODE_LIST = 0x42
    READ_NETWORK_TOPOLOGY = 0x43
    READ_PROBE_LIST = 0x44
    PROBE_STATUS = 0x45
    PROBE_FIRMWARE_REVISION = 0x46
    PROBE_HARDWARE_REVISION = 0x47
    PROBE_MODEL_INFORMATION = 0x48
    HEARTBEAT = 0x49
    ASSOCIATE_NODE = 0x4A
    SYNC_THERMOMETER_LIST = 0x4B


# =============================================================================
# CRC
# =============================================================================

def crc16_ccitt(data: bytes) -> int:
    """Compute CRC16-CCITT (0x1021, init 0xFFFF) bit by bit, MSB first."""
    crc = CRC16_INITIAL
    for byte in data:
        for i in range(8):
            bit = (byte >> (7 - i)) & 1
            c15 = (crc >> 15) & 1
            crc = (crc << 1) & 0xFFFF
            if c15 ^ bit:
                crc ^= CRC16_POLYNOMIAL
    return crc


def _frame(body: bytes) -> bytes:
    """Prefix a CRC-protected body with sync and CRC."""
    return SYNC_BYTES + struct.pack("<H", crc16_ccitt(body)) + body


def _check_payload(payload: bytes):
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"Payload too large: {len(payload)} > {MAX_PAYLOAD_SIZE}")


def _verify(data: bytes, header_size: int, payload_len: int) -> bool:
    """Validate declared length and CRC for a frame at the start of data."""
    if len(data) < header_size + payload_len:
        return False
    (crc,) = struct.unpack("<H", data[2:CRC_START])
    return crc == crc16_ccitt(data[CRC_START : header_size + payload_len])


def _valid_frame_size(data: bytes, header_size: int) -> Optional[int]:
    """Size of an intact frame at the start of data, whatever its type byte."""
    if len(data) < header_size or data[:2] != SYNC_BYTES:
        return None
    # Payload length is the last header byte
    payload_len = data[header_size - 1]
    if not _verify(data, header_size, payload_len):
        return None
    return header_size + payload_len


def new_request_id() -> int:
    """Pick a random, non-zero 32-bit request ID."""
    return random.randint(1, MAX_REQUEST_ID)


# =============================================================================
# Frames
# =============================================================================

@dataclass
class DirectRequest:
    """Request sent straight to a connected probe."""
    msg_type: MessageType
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode request to a framed byte string."""
        _check_payload(self.payload)
        body = struct.pack("<BB", self.msg_type, len(self.payload)) + self.payload
        return _frame(body)

    @property
    def size(self) -> int:
        return DIRECT_REQUEST_HEADER_SIZE + len(self.payload)

    @classmethod
    def decode(cls, data: bytes) -> Optional["DirectRequest"]:
        """Decode the first frame in data."""
        if len(data) < DIRECT_REQUEST_HEADER_SIZE or data[:2] != SYNC_BYTES:
            return None

        try:
            msg_type, payload_len = struct.unpack("<BB", data[4:6])
            if not _verify(data, DIRECT_REQUEST_HEADER_SIZE, payload_len):
                return None
            return cls(
                msg_type=MessageType(msg_type),
                payload=bytes(data[6 : 6 + payload_len]),
            )
        except (struct.error, ValueError):
            return None


@dataclass
class DirectResponse:
    """Response notified by a connected probe."""
    msg_type: MessageType
    success: bool = True
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode response to a framed byte string."""
        _check_payload(self.payload)
        body = struct.pack(
            "<BBB", self.msg_type, 1 if self.success else 0, len(self.payload)
        ) + self.payload
        return _frame(body)

    @property
    def size(self) -> int:
        return DIRECT_RESPONSE_HEADER_SIZE + len(self.payload)

    @classmethod
    def decode(cls, data: bytes) -> Optional["DirectResponse"]:
        """Decode the first frame in data."""
        if len(data) < DIRECT_RESPONSE_HEADER_SIZE or data[:2] != SYNC_BYTES:
            return None

        try:
            msg_type, success, payload_len = struct.unpack("<BBB", data[4:7])
            if not _verify(data, DIRECT_RESPONSE_HEADER_SIZE, payload_len):
                return None
            return cls(
                msg_type=MessageType(msg_type),
                success=success != 0,
                payload=bytes(data[7 : 7 + payload_len]),
            )
        except (struct.error, ValueError):
            return None


@dataclass
class NodeRequest:
    """
    Request exchanged with a repeater node.

    Flows both ways: the app sends requests to nodes (log, set prediction, ...)
    and nodes push requests to the app (probe status, heartbeat).
    """
    msg_type: NodeMessageType
    payload: bytes = b""
    request_id: Optional[int] = None

    def __post_init__(self):
        if self.request_id is None:
            self.request_id = new_request_id()

    def encode(self) -> bytes:
        """Encode request to a framed byte string."""
        _check_payload(self.payload)
        body = struct.pack(
            "<BIB", self.msg_type, self.request_id, len(self.payload)
        ) + self.payload
        return _frame(body)

    @property
    def size(self) -> int:
        return NODE_REQUEST_HEADER_SIZE + len(self.payload)

    @classmethod
    def decode(cls, data: bytes) -> Optional["NodeRequest"]:
        """Decode the first frame in data."""
        if len(data) < NODE_REQUEST_HEADER_SIZE or data[:2] != SYNC_BYTES:
            return None
        if data[4] & RESPONSE_TYPE_FLAG:
            return None

        try:
            msg_type, request_id, payload_len = struct.unpack("<BIB", data[4:10])
            if not _verify(data, NODE_REQUEST_HEADER_SIZE, payload_len):
                return None
            return cls(
                msg_type=NodeMessageType(msg_type),
                payload=bytes(data[10 : 10 + payload_len]),
                request_id=request_id,
            )
        except (struct.error, ValueError):
            return None


@dataclass
class NodeResponse:
    """Response relayed by a repeater node."""
    msg_type: NodeMessageType
    request_id: int
    response_id: int = 0
    success: bool = True
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode response to a framed byte string."""
        _check_payload(self.payload)
        body = struct.pack(
            "<BIIBB",
            self.msg_type | RESPONSE_TYPE_FLAG,
            self.request_id,
            self.response_id,
            1 if self.success else 0,
            len(self.payload),
        ) + self.payload
        return _frame(body)

    @property
    def size(self) -> int:
        return NODE_RESPONSE_HEADER_SIZE + len(self.payload)

    @classmethod
    def decode(cls, data: bytes) -> Optional["NodeResponse"]:
        """Decode the first frame in data."""
        if len(data) < NODE_RESPONSE_HEADER_SIZE or data[:2] != SYNC_BYTES:
            return None
        if not data[4] & RESPONSE_TYPE_FLAG:
            return None

        try:
            msg_type, request_id, response_id, success, payload_len = struct.unpack(
                "<BIIBB", data[4:15]
            )
            if not _verify(data, NODE_RESPONSE_HEADER_SIZE, payload_len):
                return None
            return cls(
                msg_type=NodeMessageType(msg_type & ~RESPONSE_TYPE_FLAG),
                request_id=request_id,
                response_id=response_id,
                success=success != 0,
                payload=bytes(data[15 : 15 + payload_len]),
            )
        except (struct.error, ValueError):
            return None


NodeMessage = Union[NodeRequest, NodeResponse]


# =============================================================================
# Stream Parsing
# =============================================================================

def decode_direct_responses(data: bytes) -> List[DirectResponse]:
    """
    Split a probe notification into responses.

    Intact frames of unknown type are skipped. Parsing stops at the first frame
    that fails validation; anything after it cannot be trusted to be aligned.
    """
    responses = []
    offset = 0
    while offset < len(data):
        response = DirectResponse.decode(data[offset:])
        if response is None:
            skip = _valid_frame_size(data[offset:], DIRECT_RESPONSE_HEADER_SIZE)
            if skip is None:
                break
            offset += skip
            continue
        responses.append(response)
        offset += response.size
    return responses


def decode_direct_requests(data: bytes) -> List[DirectRequest]:
    """Split a buffer into direct requests (probe side of the link)."""
    requests = []
    offset = 0
    while offset < len(data):
        request = DirectRequest.decode(data[offset:])
        if request is None:
            skip = _valid_frame_size(data[offset:], DIRECT_REQUEST_HEADER_SIZE)
            if skip is None:
                break
            offset += skip
            continue
        requests.append(request)
        offset += request.size
    return requests


def decode_node_messages(data: bytes) -> List[NodeMessage]:
    """Split a node notification into requests and responses."""
    messages: List[NodeMessage] = []
    offset = 0
    while offset < len(data):
        chunk = data[offset:]
        if len(chunk) > CRC_START and chunk[CRC_START] & RESPONSE_TYPE_FLAG:
            message = NodeResponse.decode(chunk)
            header_size = NODE_RESPONSE_HEADER_SIZE
        else:
            message = NodeRequest.decode(chunk)
            header_size = NODE_REQUEST_HEADER_SIZE
        if message is None:
            skip = _valid_frame_size(chunk, header_size)
            if skip is None:
                break
            offset += skip
            continue
        messages.append(message)
        offset += message.size
    return messages
