#!/usr/bin/env python3
"""
REST API Tests

Runs the FastAPI app against a controller on the manual clock. The transport
acknowledges every direct request on the spot, so writes complete without
advancing time.
"""

import pytest
from fastapi.testclient import TestClient

from meatnet_app.api import create_api
from meatnet_app.messages import SessionInfo
from meatnet_app.protocol import DirectResponse, MessageType, decode_direct_requests
from meatnet_app.telemetry import ProductType
from meatnet_app.transport import (
    publish_advertising,
    publish_connected,
    publish_frame,
    publish_status,
)

from conftest import NODE_LINK, PROBE_LINK, SERIAL, RecordingTransport, make_advertising, make_status


ACK_PAYLOADS = {
    MessageType.SESSION_INFO: SessionInfo(7, 1000).encode_direct(),
    MessageType.READ_OVER_TEMPERATURE: b"\x01",
}


class AutoAckTransport(RecordingTransport):
    """Answers every direct request except log requests with a success response."""

    def send(self, link_id: str, data: bytes) -> bool:
        if not super().send(link_id, data):
            return False
        for request in decode_direct_requests(data):
            if request.msg_type == MessageType.LOG:
                continue
            payload = ACK_PAYLOADS.get(request.msg_type, b"")
            publish_frame(link_id, DirectResponse(request.msg_type, True, payload).encode())
        return True


@pytest.fixture
def transport():
    return AutoAckTransport()


@pytest.fixture
def client(controller):
    return TestClient(create_api(controller))


@pytest.fixture
def connected(controller):
    publish_advertising(PROBE_LINK, make_advertising(), -60, True)
    controller.connect_probe(SERIAL)
    publish_connected(PROBE_LINK)
    publish_status(PROBE_LINK, make_status(0, 10).encode())
    return controller.get_probe(SERIAL)


# =============================================================================
# Health and Status
# =============================================================================

def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["controller_running"] is True


def test_status(client, connected):
    data = client.get("/api/status").json()

    assert data["total_probes"] == 1
    assert data["connected_probes"] == 1
    assert data["status_received"] == 1


# =============================================================================
# Probes
# =============================================================================

def test_list_probes(client, connected):
    data = client.get("/api/probes").json()

    assert data["total"] == 1
    assert data["connected"] == 1
    probe = data["probes"][0]
    assert probe["serial_number"] == "10005205"
    assert probe["connection_state"] == "connected"
    assert probe["session"] == {"session_id": 7, "sample_period": 1000}
    assert probe["sequence_range"] == [0, 10]


def test_connected_only_filter(client, connected):
    publish_advertising("probe-other", make_advertising(serial=0x200), -70, True)

    assert client.get("/api/probes").json()["total"] == 2
    assert client.get("/api/probes", params={"connected_only": True}).json()["total"] == 1


def test_get_probe(client, connected):
    response = client.get("/api/probes/10005205")

    assert response.status_code == 200
    assert response.json()["probe_id"] == 1
    assert response.json()["temperatures"][0] == pytest.approx(40.0)


def test_bad_serial(client):
    assert client.get("/api/probes/not-a-serial").status_code == 400


def test_unknown_probe(client):
    assert client.get("/api/probes/00000001").status_code == 404


def test_prediction(client, connected):
    data = client.get("/api/probes/10005205/prediction").json()

    assert data["state"] == "unknown"
    assert data["seconds_remaining"] is None


def test_prediction_not_available(client):
    publish_advertising(PROBE_LINK, make_advertising(), -60, True)
    assert client.get("/api/probes/10005205/prediction").status_code == 404


# =============================================================================
# Logs
# =============================================================================

def test_list_logs(client, connected):
    data = client.get("/api/probes/10005205/logs").json()

    assert data["serial_number"] == "10005205"
    assert len(data["sessions"]) == 1
    session = data["sessions"][0]
    assert session["session_id"] == 7
    assert session["current"] is True
    assert session["point_count"] == 1
    assert session["last_sequence"] == 10


def test_get_log(client, connected):
    data = client.get("/api/probes/10005205/logs/7").json()

    assert data["total"] == 1
    point = data["points"][0]
    assert point["sequence_number"] == 10
    assert len(point["temperatures"]) == 8
    assert point["core"] == pytest.approx(40.0)


def test_unknown_session(client, connected):
    assert client.get("/api/probes/10005205/logs/99").status_code == 404


# =============================================================================
# Writes
# =============================================================================

def test_set_color(client, connected, transport):
    response = client.post("/api/probes/10005205/color", json={"color": 3})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Set color acknowledged"}
    request = [r for r in transport.direct_requests(PROBE_LINK) if r.msg_type == MessageType.SET_COLOR][0]
    assert request.payload == b"\x02"


def test_set_id_validation(client, connected):
    assert client.post("/api/probes/10005205/id", json={"probe_id": 9}).status_code == 422


def test_set_prediction(client, connected):
    response = client.post("/api/probes/10005205/prediction", json={"set_point": 54.5})
    assert response.json()["success"] is True


def test_set_point_out_of_range(client, connected):
    assert client.post("/api/probes/10005205/prediction", json={"set_point": 150}).status_code == 400


def test_cancel_prediction(client, connected):
    assert client.delete("/api/probes/10005205/prediction").json()["success"] is True


def test_write_without_route(client):
    publish_advertising(PROBE_LINK, make_advertising(), -60, True)
    data = client.post("/api/probes/10005205/color", json={"color": 2}).json()

    assert data["success"] is False
    assert data["message"] == "Set color failed: no route"


def test_read_over_temperature(client, connected):
    data = client.post("/api/probes/10005205/over-temperature").json()

    assert data["success"] is True
    assert data["over_temperature"] is True


def test_configure_food_safe(client, connected):
    response = client.post(
        "/api/probes/10005205/food-safe",
        json={"mode": "integrated", "product": 2, "threshold_temperature": 54.4},
    )
    assert response.json()["success"] is True


def test_invalid_food_safe_mode(client, connected):
    response = client.post("/api/probes/10005205/food-safe", json={"mode": "bogus"})
    assert response.status_code == 400


def test_reset_food_safe(client, connected):
    assert client.post("/api/probes/10005205/food-safe/reset").json()["success"] is True


# =============================================================================
# Nodes
# =============================================================================

def test_nodes(client):
    publish_advertising(NODE_LINK, make_advertising(product_type=ProductType.NODE), -50, True)
    publish_connected(NODE_LINK)

    data = client.get("/api/nodes").json()
    assert data["total"] == 1
    assert data["connected"] == 1
    assert data["nodes"][0]["node_id"] == NODE_LINK
    assert data["nodes"][0]["probes"] == ["10005205"]

    assert client.get(f"/api/nodes/{NODE_LINK}").status_code == 200
    assert client.get("/api/nodes/missing").status_code == 404
