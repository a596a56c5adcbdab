#!/usr/bin/env python3
"""
Bit-Packed Telemetry Tests
"""

import struct

import pytest

from meatnet_app.telemetry import (
    AdvertisingData,
    BatteryStatus,
    BatteryStatusVirtualSensors,
    FoodSafeData,
    FoodSafeMode,
    FoodSafeState,
    FoodSafeStatus,
    HopCount,
    ModeId,
    PredictionMode,
    PredictionState,
    PredictionStatus,
    PredictionType,
    ProbeColor,
    ProbeID,
    ProbeMode,
    ProbeStatus,
    ProbeTemperatures,
    ProductType,
    VirtualAmbientSensor,
    VirtualCoreSensor,
    VirtualSensors,
    VirtualSurfaceSensor,
    decode_advertisement,
    decode_status,
    percent_through_cook,
)


# =============================================================================
# Temperatures
# =============================================================================

def test_all_ones_is_maximum_temperature():
    temps = ProbeTemperatures.decode(b"\xff" * 13)
    assert temps.values == pytest.approx([379.15] * 8)


def test_all_zeros_is_minimum_temperature():
    temps = ProbeTemperatures.decode(bytes(13))
    assert temps.values == pytest.approx([-20.0] * 8)


def test_first_sensor_in_lowest_bits():
    # raw 800 in T1 only -> 20.0 C
    data = (800).to_bytes(13, "little")
    temps = ProbeTemperatures.decode(data)

    assert temps.values[0] == pytest.approx(20.0)
    assert temps.values[1:] == pytest.approx([-20.0] * 7)


def test_temperatures_encode():
    values = [21.5, 22.0, 30.05, 45.0, 100.0, 150.0, 200.0, -20.0]
    decoded = ProbeTemperatures.decode(ProbeTemperatures(values).encode())
    assert decoded.values == pytest.approx(values)


def test_temperatures_too_short():
    assert ProbeTemperatures.decode(bytes(12)) is None


# =============================================================================
# Mode, Battery and Virtual Sensors
# =============================================================================

def test_mode_id_bits():
    mode_id = ModeId(probe_id=ProbeID.ID3, color=ProbeColor.COLOR2, mode=ProbeMode.INSTANT_READ)

    assert mode_id.to_byte() == (2 << 5) | (1 << 2) | 1
    assert ModeId.from_byte(0x45) == mode_id


def test_battery_and_virtual_sensors():
    sensors = VirtualSensors(
        core=VirtualCoreSensor.T3,
        surface=VirtualSurfaceSensor.T6,
        ambient=VirtualAmbientSensor.T6,
    )
    byte = BatteryStatus.LOW | (sensors.to_byte() << 2)
    decoded = BatteryStatusVirtualSensors.from_byte(byte)

    assert byte == 0xC9
    assert decoded.battery_status == BatteryStatus.LOW
    assert decoded.virtual_sensors == sensors
    assert decoded.to_byte() == byte


def test_virtual_temperatures_use_sensor_map():
    values = [10.0, 11.0, 12.0, 13.0, 14.0, 15.0, 16.0, 17.0]
    sensors = VirtualSensors(
        core=VirtualCoreSensor.T3,
        surface=VirtualSurfaceSensor.T6,
        ambient=VirtualAmbientSensor.T8,
    )
    virtual = sensors.temperatures_from(values)

    assert virtual.core == 12.0
    assert virtual.surface == 15.0
    assert virtual.ambient == 17.0


def test_reserved_core_sensor_falls_back():
    assert VirtualSensors.from_byte(0x07).core == VirtualCoreSensor.T1


def test_hop_count_from_network_byte():
    assert HopCount.from_network_byte(0x00) == HopCount.HOP1
    assert HopCount.from_network_byte(0x40) == HopCount.HOP2
    assert HopCount.from_network_byte(0xC0) == HopCount.HOP4


# =============================================================================
# Prediction
# =============================================================================

def test_prediction_status_fields():
    status = PredictionStatus(
        state=PredictionState.PREDICTING,
        mode=PredictionMode.TIME_TO_REMOVAL,
        type=PredictionType.REMOVAL,
        set_point_temperature=54.4,
        heat_start_temperature=4.5,
        seconds_remaining=1234,
        estimated_core_temperature=38.7,
    )
    data = status.encode()
    decoded = PredictionStatus.decode(data)

    assert len(data) == 7
    assert decoded.state == PredictionState.PREDICTING
    assert decoded.mode == PredictionMode.TIME_TO_REMOVAL
    assert decoded.type == PredictionType.REMOVAL
    assert decoded.set_point_temperature == pytest.approx(54.4)
    assert decoded.heat_start_temperature == pytest.approx(4.5)
    assert decoded.seconds_remaining == 1234
    assert decoded.estimated_core_temperature == pytest.approx(38.7)


def test_reserved_prediction_state_is_unknown():
    status = PredictionStatus.decode((9).to_bytes(7, "little"))
    assert status.state == PredictionState.UNKNOWN


def test_percent_through_cook():
    assert percent_through_cook(20.0, 60.0, 40.0) == 50
    assert percent_through_cook(20.0, 60.0, 61.0) == 100
    assert percent_through_cook(20.0, 60.0, 10.0) == 0
    assert percent_through_cook(60.0, 60.0, 60.0) == 100


# =============================================================================
# Food Safe
# =============================================================================

def test_food_safe_data():
    data = FoodSafeData(
        mode=FoodSafeMode.INTEGRATED,
        product=2,
        threshold_temperature=54.4,
        z_value=5.55,
        reference_temperature=62.5,
        d_value_at_rt=16.5,
        target_log_reduction=7.0,
    )
    decoded = FoodSafeData.decode(data.encode())

    assert decoded.mode == FoodSafeMode.INTEGRATED
    assert decoded.product_name == "Chicken"
    assert decoded.threshold_temperature == pytest.approx(54.4)
    assert decoded.z_value == pytest.approx(5.55)
    assert decoded.target_log_reduction == pytest.approx(7.0)
    assert decoded.is_safe_mode_set


def test_food_safe_invalid_mode():
    assert FoodSafeData.decode(b"\x05" + bytes(9)) is None


def test_simplified_default_product_not_set():
    data = FoodSafeData(mode=FoodSafeMode.SIMPLIFIED, product=0)
    assert not data.is_safe_mode_set
    assert FoodSafeData(mode=FoodSafeMode.SIMPLIFIED, product=1).product_name == "Any Poultry"


def test_food_safe_status():
    status = FoodSafeStatus(
        state=FoodSafeState.SAFE,
        log_reduction=6.5,
        seconds_above_threshold=600,
        sequence_number=1234,
    )
    assert FoodSafeStatus.decode(status.encode()) == status


# =============================================================================
# Status and Advertising
# =============================================================================

def _status_bytes(extended: bool = False) -> bytes:
    status = ProbeStatus(
        min_sequence=3,
        max_sequence=120,
        temperatures=ProbeTemperatures([25.0] * 8),
        mode_id=ModeId(probe_id=ProbeID.ID2, color=ProbeColor.COLOR5),
        prediction_status=PredictionStatus(state=PredictionState.COOKING),
    )
    if extended:
        status.food_safe_data = FoodSafeData(mode=FoodSafeMode.SIMPLIFIED, product=3)
        status.food_safe_status = FoodSafeStatus(state=FoodSafeState.NOT_SAFE, sequence_number=120)
    return status.encode()


def test_status_without_food_safe():
    data = _status_bytes()
    status = decode_status(data)

    assert len(data) == 30
    assert (status.min_sequence, status.max_sequence) == (3, 120)
    assert status.mode_id.probe_id == ProbeID.ID2
    assert status.mode_id.color == ProbeColor.COLOR5
    assert status.temperatures.values == pytest.approx([25.0] * 8)
    assert status.prediction_status.state == PredictionState.COOKING
    assert status.food_safe_data is None


def test_status_with_food_safe():
    data = _status_bytes(extended=True)
    status = decode_status(data)

    assert len(data) == 48
    assert status.food_safe_data.product_name == "Pork Cuts"
    assert status.food_safe_status.sequence_number == 120


def test_status_too_short():
    assert decode_status(bytes(29)) is None


def test_advertising_decode():
    data = (
        struct.pack("<HBI", 0x09C7, ProductType.NODE, 0x10005205)
        + ProbeTemperatures([30.0] * 8).encode()
        + bytes([ModeId(mode=ProbeMode.INSTANT_READ).to_byte(), 0x00, 0x80])
    )
    advertising = decode_advertisement(data)

    assert advertising.product_type == ProductType.NODE
    assert advertising.serial_number == 0x10005205
    assert advertising.mode_id.mode == ProbeMode.INSTANT_READ
    assert advertising.hop_count == HopCount.HOP3
    assert advertising.temperatures.values == pytest.approx([30.0] * 8)


def test_advertising_minimum_length():
    data = AdvertisingData(product_type=ProductType.PROBE, serial_number=1).encode()

    assert decode_advertisement(data[:19]) is None
    short = decode_advertisement(data[:20])
    assert short.serial_number == 1
    assert short.hop_count == HopCount.HOP1


def test_advertising_unknown_product_type():
    data = bytearray(AdvertisingData(product_type=ProductType.PROBE).encode())
    data[2] = 0x09
    assert decode_advertisement(bytes(data)).product_type == ProductType.UNKNOWN
