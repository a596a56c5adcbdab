#!/usr/bin/env python3
"""
Simulation Tests

Drives the controller end to end against the simulated radio on the manual
clock: one probe heard directly and through one repeater node.
"""

import pytest

from meatnet_app.models import ConnectionState, SimulationConfig
from meatnet_app.simulation import SIM_FIRMWARE, SimulatedTransport
from meatnet_app.telemetry import ProbeColor


@pytest.fixture
def transport(scheduler):
    return SimulatedTransport(scheduler, SimulationConfig(probes=1, repeaters=1), seed=1)


@pytest.fixture
def serial(transport):
    return next(iter(transport.probes))


def test_mesh_sync(controller, transport, scheduler, serial):
    scheduler.advance(10)

    node = controller.get_node("node-1")
    assert node.connection_state == ConnectionState.CONNECTED

    probe = controller.get_probe(serial)
    simulated = transport.probes[serial]
    assert probe.session_information.session_id == simulated.session_id
    assert probe.firmware_version == SIM_FIRMWARE
    assert probe.percent_synced == 100
    assert len(controller.get_log(serial)) == simulated.max_sequence + 1


def test_direct_write(controller, transport, scheduler, serial):
    scheduler.advance(2)
    assert controller.connect_probe(serial)
    scheduler.advance(1)

    assert controller.get_route(serial).is_direct
    future = controller.set_probe_color(serial, ProbeColor.COLOR3)
    scheduler.advance(0.1)

    assert future.result().success
    assert transport.probes[serial].mode_id.color == ProbeColor.COLOR3


def test_prediction_over_mesh(controller, transport, scheduler, serial):
    scheduler.advance(3)
    assert not controller.get_route(serial).is_direct

    future = controller.set_removal_prediction(serial, 60.0)
    scheduler.advance(0.1)
    assert future.result().success

    scheduler.advance(2)
    info = controller.get_prediction(serial)
    assert info is not None
    assert info.is_running
    assert info.set_point_temperature == pytest.approx(60.0)


def test_probe_restart_starts_new_session(controller, transport, scheduler, serial):
    scheduler.advance(10)
    old_session = controller.get_probe(serial).session_information.session_id

    transport.restart_probe(serial)
    scheduler.advance(8)

    logs = controller.get_logs(serial)
    assert len(logs) == 2
    assert old_session in logs
    assert controller.get_probe(serial).session_information.session_id == transport.probes[serial].session_id
