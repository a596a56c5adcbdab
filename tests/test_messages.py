#!/usr/bin/env python3
"""
Message Payload Tests
"""

import struct

import pytest

from meatnet_app.messages import (
    ConnectionDetail,
    DIRECT_RESPONSE_DECODERS,
    Heartbeat,
    LogRecord,
    ModelInfo,
    NODE_REQUEST_DECODERS,
    NODE_RESPONSE_DECODERS,
    OverTemperature,
    ProbeStatusReport,
    RevisionInfo,
    SessionInfo,
    decode_payload,
    log_request_payload,
    parse_log_request,
    parse_set_prediction,
    set_color_payload,
    set_id_payload,
    set_prediction_payload,
    with_serial,
)
from meatnet_app.protocol import MessageType, NodeMessageType
from meatnet_app.telemetry import (
    HopCount,
    PredictionLog,
    PredictionMode,
    PredictionState,
    ProbeColor,
    ProbeID,
    ProbeTemperatures,
    ProductType,
)

from conftest import SERIAL, make_status


# =============================================================================
# Log Records
# =============================================================================

def test_direct_log_record_without_prediction():
    payload = struct.pack("<I", 42) + ProbeTemperatures([30.0] * 8).encode()
    record = LogRecord.decode_direct(payload)

    assert len(payload) == 17
    assert record.sequence_number == 42
    assert record.temperatures.values == pytest.approx([30.0] * 8)
    assert record.prediction_log is None


def test_direct_log_record_with_prediction():
    record = LogRecord(
        sequence_number=7,
        temperatures=ProbeTemperatures([30.0] * 8),
        prediction_log=PredictionLog(state=PredictionState.PREDICTING, seconds_remaining=300),
    )
    payload = record.encode_direct()
    decoded = LogRecord.decode_direct(payload)

    assert len(payload) == 24
    assert decoded.prediction_log.state == PredictionState.PREDICTING
    assert decoded.prediction_log.seconds_remaining == 300


def test_node_log_record_carries_serial():
    record = LogRecord(sequence_number=9, temperatures=ProbeTemperatures([21.0] * 8), serial_number=SERIAL)
    decoded = LogRecord.decode_node(record.encode_node())

    assert decoded.serial_number == SERIAL
    assert decoded.sequence_number == 9


def test_short_log_record():
    assert LogRecord.decode_direct(bytes(16)) is None
    assert LogRecord.decode_node(bytes(27)) is None


# =============================================================================
# Session, Revision and Model
# =============================================================================

def test_direct_session_info():
    info = SessionInfo.decode_direct(struct.pack("<HH", 0x1234, 1000))

    assert info.session_id == 0x1234
    assert info.sample_period == 1000
    assert info.serial_number is None


def test_node_session_info():
    info = SessionInfo.decode_node(SessionInfo(77, 5000, SERIAL).encode_node())
    assert (info.serial_number, info.session_id, info.sample_period) == (SERIAL, 77, 5000)


def test_revision_strips_padding():
    payload = struct.pack("<I", SERIAL) + b"v1.2.3".ljust(20, b"\x00")
    info = RevisionInfo.decode_node(payload)

    assert info.serial_number == SERIAL
    assert info.revision == "v1.2.3"


def test_model_info_parse():
    info = ModelInfo.parse(SERIAL, "CPTPRB-1:23091")

    assert info.sku == "CPTPRB-1"
    assert info.manufacturing_lot == "23091"
    assert ModelInfo.decode_node(info.encode_node()) == info


def test_model_info_without_lot():
    info = ModelInfo.parse(SERIAL, "CPTPRB-1")
    assert info.manufacturing_lot == ""


def test_over_temperature():
    assert OverTemperature.decode_direct(b"\x01").over_temperature
    assert not OverTemperature.decode_node(with_serial(SERIAL, b"\x00")).over_temperature


# =============================================================================
# Mesh Pushes
# =============================================================================

def test_probe_status_report():
    report = ProbeStatusReport(serial_number=SERIAL, status=make_status(2, 50), hop_count=HopCount.HOP2)
    decoded = ProbeStatusReport.decode(report.encode())

    assert decoded.serial_number == SERIAL
    assert decoded.status.max_sequence == 50
    assert decoded.hop_count == HopCount.HOP2


def test_probe_status_report_wrong_size():
    payload = ProbeStatusReport(serial_number=SERIAL, status=make_status()).encode()
    assert ProbeStatusReport.decode(payload + b"\x00") is None
    assert ProbeStatusReport.decode(payload[:-2]) is None


def test_heartbeat():
    heartbeat = Heartbeat(
        serial_number="NODE000001",
        mac_address="AA:BB:CC:01:02:03",
        product_type=ProductType.NODE,
        hop_count=HopCount.HOP2,
        inbound=True,
        connection_details=[
            ConnectionDetail(present=True, serial_number="10005205", product_type=ProductType.PROBE, rssi=-61),
            ConnectionDetail(present=True, serial_number="NODE000002", product_type=ProductType.NODE, rssi=-48),
        ],
    )
    payload = heartbeat.encode()
    decoded = Heartbeat.decode(payload)

    assert len(payload) == 71
    assert decoded.serial_number == "NODE000001"
    assert decoded.mac_address == "AA:BB:CC:01:02:03"
    assert decoded.hop_count == HopCount.HOP2
    assert decoded.inbound
    assert decoded.connection_details[0].serial_number == "10005205"
    assert decoded.connection_details[0].rssi == -61
    assert decoded.connection_details[1].product_type == ProductType.NODE
    assert not decoded.connection_details[2].present
    assert not decoded.connection_details[3].present


# =============================================================================
# Request Payloads
# =============================================================================

def test_log_request_payload():
    assert parse_log_request(log_request_payload(10, 20)) == (10, 20)


def test_log_request_payload_is_limited():
    assert parse_log_request(log_request_payload(0, 1000)) == (0, 499)


def test_set_id_and_color():
    assert set_id_payload(ProbeID.ID4) == b"\x03"
    assert set_color_payload(ProbeColor.COLOR8) == b"\x07"


def test_set_prediction_payload():
    payload = set_prediction_payload(PredictionMode.TIME_TO_REMOVAL, 54.5)
    mode, set_point = parse_set_prediction(payload)

    assert payload == struct.pack("<H", (1 << 10) | 545)
    assert mode == PredictionMode.TIME_TO_REMOVAL
    assert set_point == pytest.approx(54.5)


# =============================================================================
# Dispatch
# =============================================================================

def test_decode_payload_dispatch():
    info = decode_payload(DIRECT_RESPONSE_DECODERS, MessageType.SESSION_INFO, struct.pack("<HH", 3, 1000))
    assert isinstance(info, SessionInfo)


def test_decode_payload_without_decoder():
    assert decode_payload(DIRECT_RESPONSE_DECODERS, MessageType.SET_ID, b"") is None


def test_decode_payload_malformed():
    assert decode_payload(NODE_RESPONSE_DECODERS, NodeMessageType.SESSION_INFO, bytes(3)) is None
    assert decode_payload(NODE_REQUEST_DECODERS, NodeMessageType.HEARTBEAT, bytes(70)) is None
