#!/usr/bin/env python3
"""
Device Entities

Probe and RepeaterNode hold everything known about one device. They are plain
state holders updated by the controller on the reactor; arbitration, log sync
and prediction smoothing live in their own modules and are attached per probe.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .arbitration import ChannelState
from .filters import InstantReadFilter, ProximityDetector
from .log_sync import LogSynchronizer, SessionInformation
from .messages import Heartbeat
from .models import (
    ConnectionState,
    MIN_RSSI,
    OVERHEATING_THRESHOLDS,
    SESSION_INFO_MIN_FIRMWARE,
)
from .prediction import PredictionInfo, PredictionSmoother
from .telemetry import (
    BatteryStatus,
    FoodSafeData,
    FoodSafeStatus,
    ModeId,
    PredictionStatus,
    ProbeColor,
    ProbeID,
    ProbeMode,
    ProbeTemperatures,
    VirtualSensors,
    VirtualTemperatures,
)


# Probe Bluetooth address is derived from the serial number
MAC_ADDRESS_OFFSET = 6912
MAC_ADDRESS_PREFIX = 0xC00000000000

_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)\.(\d+)")


def parse_version(text: Optional[str]) -> Optional[Tuple[int, int, int]]:
    """Parse "v1.2.3" style firmware versions."""
    if not text:
        return None
    match = _VERSION_RE.search(text)
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


def format_serial(serial_number: int) -> str:
    return f"{serial_number:08X}"


def parse_serial(text: str) -> int:
    """Parse an 8-digit hex serial. Raises ValueError if malformed."""
    if not re.fullmatch(r"[0-9A-Fa-f]{1,8}", text or ""):
        raise ValueError(f"Invalid probe serial: {text!r}")
    return int(text, 16)


def probe_mac_address(serial_number: int) -> str:
    value = (serial_number * 10000 + MAC_ADDRESS_OFFSET) | MAC_ADDRESS_PREFIX
    value &= 0xFFFFFFFFFFFF
    raw = value.to_bytes(6, "big")
    return ":".join(f"{b:02X}" for b in raw)


class NodeKind(Enum):
    """What kind of product a repeater node is."""
    UNKNOWN = "unknown"
    REPEATER = "repeater"
    DISPLAY = "display"
    CHARGER = "charger"

    @classmethod
    def from_model_info(cls, model: str) -> "NodeKind":
        if "Timer" in model:
            return cls.DISPLAY
        if "Charger" in model:
            return cls.CHARGER
        return cls.REPEATER


# =============================================================================
# Base Device
# =============================================================================

class Device:
    """Link-level state shared by probes and repeater nodes."""

    def __init__(self, link_id: Optional[str] = None, rssi: int = MIN_RSSI):
        self.link_id = link_id
        self.connection_state = ConnectionState.DISCONNECTED
        self.is_connectable = False
        self.rssi = MIN_RSSI
        self._proximity = ProximityDetector()
        self.within_proximity_range = False
        self.stale = False
        self.last_update_time = 0.0

        self.firmware_version: Optional[str] = None
        self.hardware_revision: Optional[str] = None
        self.sku: Optional[str] = None
        self.manufacturing_lot: Optional[str] = None

        self.update_rssi(rssi)

    @property
    def connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def update_rssi(self, rssi: int):
        if rssi > 0:
            return
        self.rssi = rssi
        self.within_proximity_range = self._proximity.update(rssi)

    def touch(self, now: float):
        self.last_update_time = now
        self.stale = False

    def update_stale(self, now: float, timeout: float) -> bool:
        """Mark the device stale after timeout seconds of silence."""
        self.stale = now - self.last_update_time > timeout
        if self.stale:
            self.is_connectable = False
            self.update_rssi(MIN_RSSI)
        return self.stale

    def handle_disconnected(self):
        self.connection_state = ConnectionState.DISCONNECTED
        self.firmware_version = None
        self.update_rssi(MIN_RSSI)

    def _device_dict(self) -> Dict[str, Any]:
        return {
            "link_id": self.link_id,
            "connection_state": self.connection_state.value,
            "is_connectable": self.is_connectable,
            "rssi": self.rssi,
            "within_proximity_range": self.within_proximity_range,
            "stale": self.stale,
            "last_update_time": self.last_update_time,
            "firmware_version": self.firmware_version,
            "hardware_revision": self.hardware_revision,
            "sku": self.sku,
            "manufacturing_lot": self.manufacturing_lot,
        }


# =============================================================================
# Probe
# =============================================================================

class Probe(Device):
    """A temperature probe, heard directly or through repeaters."""

    def __init__(self, serial_number: int, log_sync: LogSynchronizer,
                 link_id: Optional[str] = None, rssi: int = MIN_RSSI):
        super().__init__(link_id=link_id, rssi=rssi)
        self.serial_number = serial_number

        # Identity and live readings
        self.probe_id = ProbeID.ID1
        self.color = ProbeColor.COLOR1
        self.mode = ProbeMode.NORMAL
        self.battery_status = BatteryStatus.OK
        self.temperatures: Optional[ProbeTemperatures] = None
        self.virtual_sensors: Optional[VirtualSensors] = None
        self.virtual_temperatures: Optional[VirtualTemperatures] = None
        self.overheating = False
        self.overheating_sensors: List[int] = []

        # Instant read
        self.instant_read_filter = InstantReadFilter()
        self.instant_read_temperature: Optional[float] = None
        self.last_instant_read: Optional[float] = None

        # Prediction and food safety
        self.prediction_status: Optional[PredictionStatus] = None
        self.prediction_info: Optional[PredictionInfo] = None
        self.smoother: Optional[PredictionSmoother] = None
        self.food_safe_data: Optional[FoodSafeData] = None
        self.food_safe_status: Optional[FoodSafeStatus] = None
        self.over_temperature: Optional[bool] = None

        # Arbitration
        self.instant_read_channel = ChannelState()
        self.normal_mode_channel = ChannelState()

        # Status notifications
        self.last_status_time: Optional[float] = None
        self.status_notifications_stale = False

        # Logs
        self.log_sync = log_sync

    @property
    def serial(self) -> str:
        return format_serial(self.serial_number)

    @property
    def mac_address(self) -> str:
        return probe_mac_address(self.serial_number)

    @property
    def session_information(self) -> Optional[SessionInformation]:
        return self.log_sync.session

    @property
    def sequence_range(self) -> Optional[Tuple[int, int]]:
        return self.log_sync.sequence_range

    @property
    def percent_synced(self) -> int:
        return self.log_sync.percent_synced

    @property
    def instant_read_celsius(self) -> Optional[float]:
        return self.instant_read_filter.celsius

    @property
    def instant_read_fahrenheit(self) -> Optional[float]:
        return self.instant_read_filter.fahrenheit

    @property
    def needs_legacy_session(self) -> bool:
        """Firmware too old to report session info."""
        version = parse_version(self.firmware_version)
        return version is not None and version < SESSION_INFO_MIN_FIRMWARE

    def update_id_color_battery(self, mode_id: ModeId, battery_status: BatteryStatus):
        self.probe_id = mode_id.probe_id
        self.color = mode_id.color
        self.mode = mode_id.mode
        self.battery_status = battery_status

    def update_temperatures(self, temperatures: ProbeTemperatures, virtual_sensors: VirtualSensors):
        self.temperatures = temperatures
        self.virtual_sensors = virtual_sensors
        self.virtual_temperatures = virtual_sensors.temperatures_from(temperatures.values)
        self._check_overheating()

    def update_instant_read(self, celsius: float, now: float):
        self.last_instant_read = now
        self.instant_read_temperature = celsius
        self.instant_read_filter.add_reading(celsius)

    def clear_instant_read(self):
        self.instant_read_temperature = None
        self.instant_read_filter.reset()

    def update_status_stale(self, now: float, timeout: float) -> bool:
        if self.last_status_time is None:
            self.status_notifications_stale = False
        else:
            self.status_notifications_stale = now - self.last_status_time > timeout
        return self.status_notifications_stale

    def update_instant_read_stale(self, now: float, timeout: float):
        if self.last_instant_read is not None and now - self.last_instant_read > timeout:
            self.clear_instant_read()

    def handle_disconnected(self):
        super().handle_disconnected()
        self.log_sync.clear_session()

    def _check_overheating(self):
        values = self.temperatures.values if self.temperatures else []
        self.overheating_sensors = [
            i for i, (value, limit) in enumerate(zip(values, OVERHEATING_THRESHOLDS))
            if value >= limit
        ]
        self.overheating = bool(self.overheating_sensors)

    def to_dict(self) -> Dict[str, Any]:
        data = self._device_dict()
        session = self.session_information
        virtual = self.virtual_temperatures
        prediction = self.prediction_info
        data.update({
            "serial_number": self.serial,
            "mac_address": self.mac_address,
            "probe_id": self.probe_id.value + 1,
            "color": self.color.value + 1,
            "mode": self.mode.name.lower(),
            "battery_status": self.battery_status.name.lower(),
            "temperatures": list(self.temperatures.values) if self.temperatures else None,
            "virtual_temperatures": {
                "core": virtual.core,
                "surface": virtual.surface,
                "ambient": virtual.ambient,
            } if virtual else None,
            "overheating": self.overheating,
            "overheating_sensors": list(self.overheating_sensors),
            "instant_read_celsius": self.instant_read_celsius,
            "instant_read_fahrenheit": self.instant_read_fahrenheit,
            "sequence_range": list(self.sequence_range) if self.sequence_range else None,
            "percent_synced": self.percent_synced,
            "session": {
                "session_id": session.session_id,
                "sample_period": session.sample_period,
            } if session else None,
            "status_notifications_stale": self.status_notifications_stale,
            "prediction": prediction_to_dict(prediction),
            "food_safe": {
                "mode": self.food_safe_data.mode.name.lower(),
                "product": self.food_safe_data.product_name,
                "serving": self.food_safe_data.serving.name.lower(),
            } if self.food_safe_data else None,
            "food_safe_status": {
                "state": self.food_safe_status.state.name.lower(),
                "log_reduction": self.food_safe_status.log_reduction,
                "seconds_above_threshold": self.food_safe_status.seconds_above_threshold,
            } if self.food_safe_status else None,
        })
        return data


def prediction_to_dict(info: Optional[PredictionInfo]) -> Optional[Dict[str, Any]]:
    if info is None:
        return None
    return {
        "state": info.state.name.lower(),
        "mode": info.mode.name.lower(),
        "type": info.type.name.lower(),
        "set_point_temperature": info.set_point_temperature,
        "estimated_core_temperature": info.estimated_core_temperature,
        "seconds_remaining": info.seconds_remaining,
        "percent_through_cook": info.percent_through_cook,
    }


# =============================================================================
# Repeater Node
# =============================================================================

class RepeaterNode(Device):
    """A MeatNet repeater (display, charger or repeater) identified by its link."""

    def __init__(self, link_id: str, rssi: int = MIN_RSSI):
        super().__init__(link_id=link_id, rssi=rssi)
        self.serial_number = ""
        self.kind = NodeKind.UNKNOWN
        self.probes: Dict[int, float] = {}
        self.last_heartbeat: Optional[Heartbeat] = None
        self.last_heartbeat_time: Optional[float] = None

    def update_model_info(self, model: str):
        self.kind = NodeKind.from_model_info(model)
        sku, _, lot = model.partition(":")
        self.sku = sku or None
        self.manufacturing_lot = lot or None

    def report_probe(self, serial_number: int, now: float):
        """Record that this node currently hears a probe."""
        self.probes[serial_number] = now

    def reaches(self, serial_number: int, now: float, timeout: float) -> bool:
        seen = self.probes.get(serial_number)
        return seen is not None and now - seen <= timeout

    def prune_probes(self, now: float, timeout: float) -> List[int]:
        expired = [s for s, seen in self.probes.items() if now - seen > timeout]
        for serial_number in expired:
            del self.probes[serial_number]
        return expired

    def update_heartbeat(self, heartbeat: Heartbeat, now: float):
        self.last_heartbeat = heartbeat
        self.last_heartbeat_time = now
        if heartbeat.serial_number:
            self.serial_number = heartbeat.serial_number

    def handle_disconnected(self):
        super().handle_disconnected()
        self.probes.clear()

    def to_dict(self) -> Dict[str, Any]:
        data = self._device_dict()
        heartbeat = self.last_heartbeat
        data.update({
            "node_id": self.link_id,
            "serial_number": self.serial_number,
            "kind": self.kind.value,
            "probes": [format_serial(s) for s in sorted(self.probes)],
            "heartbeat": {
                "mac_address": heartbeat.mac_address,
                "hop_count": int(heartbeat.hop_count) + 1,
                "inbound": heartbeat.inbound,
                "connections": [
                    {
                        "serial_number": d.serial_number,
                        "product_type": d.product_type.name.lower(),
                        "rssi": d.rssi,
                    }
                    for d in heartbeat.connection_details if d.present
                ],
                "received_at": self.last_heartbeat_time,
            } if heartbeat else None,
        })
        return data
