#!/usr/bin/env python3
"""
UART Framing Tests

CRC, frame layout, corruption detection and splitting of notifications that
carry several frames back to back.
"""

import struct

import pytest

from meatnet_app.protocol import (
    DirectRequest,
    DirectResponse,
    MessageType,
    NodeMessageType,
    NodeRequest,
    NodeResponse,
    crc16_ccitt,
    decode_direct_requests,
    decode_direct_responses,
    decode_node_messages,
)


# =============================================================================
# CRC
# =============================================================================

def test_crc16_ccitt_check_value():
    # CRC-16/CCITT-FALSE check value
    assert crc16_ccitt(b"123456789") == 0x29B1


def test_crc16_ccitt_empty():
    assert crc16_ccitt(b"") == 0xFFFF


# =============================================================================
# Frame Layout
# =============================================================================

def test_direct_request_layout():
    frame = DirectRequest(MessageType.SESSION_INFO).encode()

    assert frame[:2] == b"\xca\xfe"
    assert frame[4:] == b"\x03\x00"
    assert struct.unpack("<H", frame[2:4])[0] == crc16_ccitt(b"\x03\x00")
    assert len(frame) == 6


def test_direct_response_layout():
    frame = DirectResponse(MessageType.LOG, success=False, payload=b"\x01\x02").encode()

    assert len(frame) == 7 + 2
    assert frame[4] == MessageType.LOG
    assert frame[5] == 0
    assert frame[6] == 2
    assert frame[7:] == b"\x01\x02"


def test_node_request_layout():
    request = NodeRequest(NodeMessageType.LOG, b"\xaa", request_id=0x01020304)
    frame = request.encode()

    assert len(frame) == 10 + 1
    assert frame[4] == NodeMessageType.LOG
    assert frame[5:9] == b"\x04\x03\x02\x01"
    assert frame[9] == 1


def test_node_response_sets_type_flag():
    frame = NodeResponse(NodeMessageType.SESSION_INFO, request_id=7, response_id=9).encode()

    assert len(frame) == 15
    assert frame[4] == NodeMessageType.SESSION_INFO | 0x80

    decoded = NodeResponse.decode(frame)
    assert decoded.msg_type == NodeMessageType.SESSION_INFO
    assert decoded.request_id == 7
    assert decoded.response_id == 9
    assert decoded.success


def test_node_request_gets_random_id():
    first = NodeRequest(NodeMessageType.SESSION_INFO)
    second = NodeRequest(NodeMessageType.SESSION_INFO)

    assert 0 < first.request_id <= 0xFFFFFFFF
    assert 0 < second.request_id <= 0xFFFFFFFF
    assert NodeRequest(NodeMessageType.SESSION_INFO, request_id=5).request_id == 5


def test_payload_too_large():
    with pytest.raises(ValueError):
        DirectRequest(MessageType.LOG, bytes(256)).encode()


# =============================================================================
# Decoding
# =============================================================================

def test_direct_response_round_trip():
    response = DirectResponse(MessageType.SESSION_INFO, True, b"\x34\x12\xe8\x03")
    assert DirectResponse.decode(response.encode()) == response


def test_node_request_round_trip():
    request = NodeRequest(NodeMessageType.PROBE_STATUS, bytes(range(35)), request_id=42)
    assert NodeRequest.decode(request.encode()) == request


@pytest.mark.parametrize("frame, decode", [
    (DirectRequest(MessageType.SET_ID, b"\x02").encode(), DirectRequest.decode),
    (DirectResponse(MessageType.SESSION_INFO, True, b"\x01\x00\xe8\x03").encode(), DirectResponse.decode),
    (NodeRequest(NodeMessageType.LOG, b"\x05\x52\x00\x10", request_id=99).encode(), NodeRequest.decode),
    (NodeResponse(NodeMessageType.LOG, request_id=99, response_id=3, payload=b"\x01\x02").encode(), NodeResponse.decode),
])
def test_any_mutated_byte_is_rejected(frame, decode):
    assert decode(frame) is not None

    for index in range(len(frame)):
        corrupted = bytearray(frame)
        corrupted[index] ^= 0xFF
        assert decode(bytes(corrupted)) is None, f"byte {index} not detected"


def test_truncated_frame_rejected():
    frame = DirectResponse(MessageType.LOG, True, bytes(24)).encode()
    assert DirectResponse.decode(frame[:-1]) is None


def test_unknown_message_type_rejected():
    body = b"\x7f\x00"
    frame = b"\xca\xfe" + struct.pack("<H", crc16_ccitt(body)) + body
    assert DirectRequest.decode(frame) is None


# =============================================================================
# Stream Parsing
# =============================================================================

def test_multiple_frames_in_one_notification():
    data = (
        DirectResponse(MessageType.LOG, True, bytes(17)).encode()
        + DirectResponse(MessageType.LOG, True, bytes(24)).encode()
        + DirectResponse(MessageType.SET_ID).encode()
    )
    responses = decode_direct_responses(data)

    assert [r.msg_type for r in responses] == [MessageType.LOG, MessageType.LOG, MessageType.SET_ID]
    assert [len(r.payload) for r in responses] == [17, 24, 0]


def test_parsing_stops_at_corrupt_frame():
    good = DirectResponse(MessageType.SET_COLOR).encode()
    bad = bytearray(good)
    bad[2] ^= 0xFF
    data = good + bytes(bad) + good

    assert len(decode_direct_responses(data)) == 1


def test_unknown_frame_type_skipped():
    body = b"\x7f\x01\x02\xaa\xbb"
    unknown = b"\xca\xfe" + struct.pack("<H", crc16_ccitt(body)) + body
    data = DirectResponse(MessageType.SET_ID).encode() + unknown + DirectResponse(MessageType.SET_COLOR).encode()

    assert [r.msg_type for r in decode_direct_responses(data)] == [MessageType.SET_ID, MessageType.SET_COLOR]


def test_unknown_node_frame_type_skipped():
    body = struct.pack("<BIB", 0x3F, 9, 1) + b"\x00"
    unknown = b"\xca\xfe" + struct.pack("<H", crc16_ccitt(body)) + body
    data = unknown + NodeResponse(NodeMessageType.SESSION_INFO, request_id=5, payload=bytes(10)).encode()
    messages = decode_node_messages(data)

    assert len(messages) == 1
    assert messages[0].request_id == 5


def test_direct_requests_split():
    data = DirectRequest(MessageType.SET_ID, b"\x01").encode() + DirectRequest(MessageType.SESSION_INFO).encode()
    assert [r.msg_type for r in decode_direct_requests(data)] == [MessageType.SET_ID, MessageType.SESSION_INFO]


def test_node_messages_mixed():
    data = (
        NodeRequest(NodeMessageType.HEARTBEAT, bytes(71), request_id=1).encode()
        + NodeResponse(NodeMessageType.SESSION_INFO, request_id=5, payload=bytes(10)).encode()
    )
    messages = decode_node_messages(data)

    assert isinstance(messages[0], NodeRequest)
    assert messages[0].msg_type == NodeMessageType.HEARTBEAT
    assert isinstance(messages[1], NodeResponse)
    assert messages[1].request_id == 5
