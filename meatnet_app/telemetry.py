#!/usr/bin/env python3
"""
Bit-Packed Probe Telemetry

Decoders and encoders for the compact records a probe puts in its advertising
packets, status notifications and log records.

Most records are little-endian packed bitfields: the record is read as one
little-endian integer and each field takes the next N bits, starting at bit 0.
This layout is a firmware contract and must not drift.

Temperatures (13 bytes):
    8 x 13-bit raw values, T1 in the lowest bits.
    Celsius = raw * 0.05 - 20.0

ModeId (1 byte):
    Bits 0-1: Mode (normal, instant read, reserved, error)
    Bits 2-4: Color
    Bits 5-7: Probe ID

Battery Status / Virtual Sensors (1 byte):
    Bits 0-1: Battery status
    Bits 2-4: Virtual core sensor (T1-T6)
    Bits 5-6: Virtual surface sensor (T4-T7)
    Bit  7:   Virtual ambient sensor (T5-T8, upper bit not carried)

Prediction Status (7 bytes):
    state 4 | mode 2 | type 2 | set point 10 | heat start 10 |
    seconds remaining 17 | estimated core 11

Prediction Log (7 bytes, log records):
    virtual sensors 7 | state 4 | mode 2 | type 2 | set point 10 |
    seconds remaining 17 | estimated core 11

Food Safe Data (10 bytes):
    mode 3 | product 10 | serving 3 | threshold 13 | z-value 13 |
    reference temperature 13 | D-value at RT 13 | target log reduction 8

Food Safe Status (8 bytes):
    state 3 | log reduction 8 | seconds above threshold 16 | sequence 32

Probe Status (30 or 48 bytes):
    Bytes 0-3:   Min sequence number (uint32)
    Bytes 4-7:   Max sequence number (uint32)
    Bytes 8-20:  Temperatures
    Byte 21:     ModeId
    Byte 22:     Battery status / virtual sensors
    Bytes 23-29: Prediction status
    Bytes 30-39: Food safe data (newer firmware)
    Bytes 40-47: Food safe status (newer firmware)

Advertising Manufacturer Data (20+ bytes):
    Bytes 0-1:   Vendor ID
    Byte 2:      Product type
    Bytes 3-6:   Serial number (uint32)
    Bytes 7-19:  Temperatures
    Byte 20:     ModeId (optional)
    Byte 21:     Battery status / virtual sensors (optional)
    Byte 22:     Network info, hop count in bits 6-7 (optional)
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple


# =============================================================================
# Constants
# =============================================================================

TEMPERATURE_COUNT = 8
TEMPERATURE_RAW_SIZE = 13
TEMPERATURE_BITS = 13
TEMPERATURE_SCALE = 0.05
TEMPERATURE_OFFSET = -20.0

PREDICTION_STATUS_SIZE = 7
PREDICTION_LOG_SIZE = 7
FOOD_SAFE_DATA_SIZE = 10
FOOD_SAFE_STATUS_SIZE = 8

PROBE_STATUS_SIZE = 30
PROBE_STATUS_EXTENDED_SIZE = 48

ADVERTISING_MIN_SIZE = 20

# Bluetooth SIG company identifier carried in manufacturer data
VENDOR_ID = 0x09C7

# Predictions longer than this are not meaningful
MAX_PREDICTION_SECONDS = 4 * 60 * 60


# =============================================================================
# Enums
# =============================================================================

class ProductType(IntEnum):
    """Product type byte in advertising data."""
    UNKNOWN = 0x00
    PROBE = 0x01
    NODE = 0x02


class ProbeMode(IntEnum):
    NORMAL = 0x00
    INSTANT_READ = 0x01
    RESERVED = 0x02
    ERROR = 0x03


class ProbeID(IntEnum):
    ID1 = 0
    ID2 = 1
    ID3 = 2
    ID4 = 3
    ID5 = 4
    ID6 = 5
    ID7 = 6
    ID8 = 7


class ProbeColor(IntEnum):
    COLOR1 = 0
    COLOR2 = 1
    COLOR3 = 2
    COLOR4 = 3
    COLOR5 = 4
    COLOR6 = 5
    COLOR7 = 6
    COLOR8 = 7


class BatteryStatus(IntEnum):
    OK = 0x00
    LOW = 0x01


class VirtualCoreSensor(IntEnum):
    T1 = 0
    T2 = 1
    T3 = 2
    T4 = 3
    T5 = 4
    T6 = 5

    @property
    def index(self) -> int:
        return int(self)


class VirtualSurfaceSensor(IntEnum):
    T4 = 0
    T5 = 1
    T6 = 2
    T7 = 3

    @property
    def index(self) -> int:
        # Surface range starts at T4
        return int(self) + 3


class VirtualAmbientSensor(IntEnum):
    T5 = 0
    T6 = 1
    T7 = 2
    T8 = 3

    @property
    def index(self) -> int:
        # Ambient range starts at T5
        return int(self) + 4


class HopCount(IntEnum):
    """Number of repeaters a relayed report went through."""
    HOP1 = 0
    HOP2 = 1
    HOP3 = 2
    HOP4 = 3

    @classmethod
    def from_network_byte(cls, byte: int) -> "HopCount":
        return cls((byte >> 6) & 0x03)


class PredictionState(IntEnum):
    PROBE_NOT_INSERTED = 0
    PROBE_INSERTED = 1
    COOKING = 2
    PREDICTING = 3
    REMOVAL_PREDICTION_DONE = 4
    # 5-14 reserved
    UNKNOWN = 15


class PredictionMode(IntEnum):
    NONE = 0
    TIME_TO_REMOVAL = 1
    REMOVAL_AND_RESTING = 2
    RESERVED = 3


class PredictionType(IntEnum):
    NONE = 0
    REMOVAL = 1
    RESTING = 2
    RESERVED = 3


class FoodSafeMode(IntEnum):
    SIMPLIFIED = 0
    INTEGRATED = 1


class FoodSafeState(IntEnum):
    NOT_SAFE = 0
    SAFE = 1
    SAFETY_IMPOSSIBLE = 2


class Serving(IntEnum):
    SERVED_IMMEDIATELY = 0
    COOKED_AND_CHILLED = 1


class SimplifiedModeProduct(IntEnum):
    DEFAULT = 0x000
    ANY_POULTRY = 0x001
    BEEF_CUTS = 0x002
    PORK_CUTS = 0x003
    VEAL_CUTS = 0x004
    LAMB_CUTS = 0x005
    GROUND_MEATS = 0x006
    HAM_FRESH_OR_SMOKED = 0x007
    HAM_COOKED_AND_REHEATED = 0x008
    EGGS = 0x009
    FISH_AND_SHELLFISH = 0x00A
    LEFTOVERS = 0x00B
    CASSEROLES = 0x00C


class IntegratedModeProduct(IntEnum):
    DEFAULT = 0x000
    BEEF = 0x001
    CHICKEN = 0x002
    PORK = 0x003
    HAM = 0x004
    TURKEY = 0x005
    LAMB = 0x006
    FISH = 0x007
    DAIRY_MILK = 0x008
    CUSTOM = 0x3FF


def _enum_or(enum_cls, raw: int, default):
    """Map a raw value onto enum_cls, falling back for reserved values."""
    try:
        return enum_cls(raw)
    except ValueError:
        return default


# =============================================================================
# Bitfield Helpers
# =============================================================================

def _unpack_fields(data: bytes, widths: Sequence[int]) -> List[int]:
    """Split a little-endian packed bitfield into unsigned fields."""
    value = int.from_bytes(data, "little")
    fields = []
    offset = 0
    for width in widths:
        fields.append((value >> offset) & ((1 << width) - 1))
        offset += width
    return fields


def _pack_fields(fields: Sequence[Tuple[int, int]], size: int) -> bytes:
    """Pack (value, width) pairs into a little-endian bitfield of size bytes."""
    value = 0
    offset = 0
    for raw, width in fields:
        value |= (int(raw) & ((1 << width) - 1)) << offset
        offset += width
    return value.to_bytes(size, "little")


def _scaled(value: float, scale: float, offset: float = 0.0) -> int:
    return int(round((value - offset) / scale))


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ProbeTemperatures:
    """Eight sensor readings in Celsius, T1 (tip) through T8 (handle)."""
    values: List[float] = field(default_factory=lambda: [0.0] * TEMPERATURE_COUNT)

    @classmethod
    def decode(cls, data: bytes) -> Optional["ProbeTemperatures"]:
        """Decode 13 packed bytes."""
        if len(data) < TEMPERATURE_RAW_SIZE:
            return None
        raw = _unpack_fields(data[:TEMPERATURE_RAW_SIZE], [TEMPERATURE_BITS] * TEMPERATURE_COUNT)
        return cls(values=[r * TEMPERATURE_SCALE + TEMPERATURE_OFFSET for r in raw])

    def encode(self) -> bytes:
        """Encode to 13 packed bytes, clamping to the 13-bit range."""
        max_raw = (1 << TEMPERATURE_BITS) - 1
        fields = []
        for value in self.values[:TEMPERATURE_COUNT]:
            raw = min(max(_scaled(value, TEMPERATURE_SCALE, TEMPERATURE_OFFSET), 0), max_raw)
            fields.append((raw, TEMPERATURE_BITS))
        return _pack_fields(fields, TEMPERATURE_RAW_SIZE)


@dataclass
class ModeId:
    """Probe ID, color and operating mode, packed in one byte."""
    probe_id: ProbeID = ProbeID.ID1
    color: ProbeColor = ProbeColor.COLOR1
    mode: ProbeMode = ProbeMode.NORMAL

    @classmethod
    def from_byte(cls, byte: int) -> "ModeId":
        return cls(
            probe_id=ProbeID((byte >> 5) & 0x07),
            color=ProbeColor((byte >> 2) & 0x07),
            mode=ProbeMode(byte & 0x03),
        )

    def to_byte(self) -> int:
        return (self.probe_id << 5) | (self.color << 2) | self.mode


@dataclass
class VirtualTemperatures:
    core: float
    surface: float
    ambient: float


@dataclass
class VirtualSensors:
    """Which physical sensors currently represent core, surface and ambient."""
    core: VirtualCoreSensor = VirtualCoreSensor.T1
    surface: VirtualSurfaceSensor = VirtualSurfaceSensor.T4
    ambient: VirtualAmbientSensor = VirtualAmbientSensor.T5

    @classmethod
    def from_byte(cls, byte: int) -> "VirtualSensors":
        return cls(
            core=_enum_or(VirtualCoreSensor, byte & 0x07, VirtualCoreSensor.T1),
            surface=VirtualSurfaceSensor((byte >> 3) & 0x03),
            ambient=VirtualAmbientSensor((byte >> 5) & 0x03),
        )

    def to_byte(self) -> int:
        return self.core | (self.surface << 3) | (self.ambient << 5)

    def temperatures_from(self, values: Sequence[float]) -> VirtualTemperatures:
        return VirtualTemperatures(
            core=values[self.core.index],
            surface=values[self.surface.index],
            ambient=values[self.ambient.index],
        )


@dataclass
class BatteryStatusVirtualSensors:
    battery_status: BatteryStatus = BatteryStatus.OK
    virtual_sensors: VirtualSensors = field(default_factory=VirtualSensors)

    @classmethod
    def from_byte(cls, byte: int) -> "BatteryStatusVirtualSensors":
        return cls(
            battery_status=_enum_or(BatteryStatus, byte & 0x03, BatteryStatus.OK),
            virtual_sensors=VirtualSensors.from_byte(byte >> 2),
        )

    def to_byte(self) -> int:
        return (self.battery_status | (self.virtual_sensors.to_byte() << 2)) & 0xFF


def percent_through_cook(
    heat_start_temperature: float,
    set_point_temperature: float,
    core_temperature: float,
) -> int:
    """Progress from heat start toward the set point, 0-100."""
    start = heat_start_temperature
    end = set_point_temperature
    if core_temperature > end:
        return 100
    if start > core_temperature:
        return 0
    if end == start:
        return 100
    return int((core_temperature - start) / (end - start) * 100)


@dataclass
class PredictionStatus:
    """Prediction fields of a status notification (7 bytes)."""
    state: PredictionState = PredictionState.UNKNOWN
    mode: PredictionMode = PredictionMode.NONE
    type: PredictionType = PredictionType.NONE
    set_point_temperature: float = 0.0
    heat_start_temperature: float = 0.0
    seconds_remaining: int = 0
    estimated_core_temperature: float = 0.0

    WIDTHS = (4, 2, 2, 10, 10, 17, 11)

    @classmethod
    def decode(cls, data: bytes) -> Optional["PredictionStatus"]:
        if len(data) < PREDICTION_STATUS_SIZE:
            return None
        state, mode, ptype, set_point, heat_start, seconds, core = _unpack_fields(
            data[:PREDICTION_STATUS_SIZE], cls.WIDTHS
        )
        return cls(
            state=_enum_or(PredictionState, state, PredictionState.UNKNOWN),
            mode=PredictionMode(mode),
            type=PredictionType(ptype),
            set_point_temperature=set_point * 0.1,
            heat_start_temperature=heat_start * 0.1,
            seconds_remaining=seconds,
            estimated_core_temperature=core * 0.1 - 20.0,
        )

    def encode(self) -> bytes:
        values = (
            self.state,
            self.mode,
            self.type,
            _scaled(self.set_point_temperature, 0.1),
            _scaled(self.heat_start_temperature, 0.1),
            self.seconds_remaining,
            _scaled(self.estimated_core_temperature, 0.1, -20.0),
        )
        return _pack_fields(list(zip(values, self.WIDTHS)), PREDICTION_STATUS_SIZE)

    @property
    def percent_through_cook(self) -> int:
        return percent_through_cook(
            self.heat_start_temperature,
            self.set_point_temperature,
            self.estimated_core_temperature,
        )


@dataclass
class PredictionLog:
    """Virtual sensors and prediction snapshot stored with each log record."""
    virtual_sensors: VirtualSensors = field(default_factory=VirtualSensors)
    state: PredictionState = PredictionState.UNKNOWN
    mode: PredictionMode = PredictionMode.NONE
    type: PredictionType = PredictionType.NONE
    set_point_temperature: float = 0.0
    seconds_remaining: int = 0
    estimated_core_temperature: float = 0.0

    WIDTHS = (7, 4, 2, 2, 10, 17, 11)

    @classmethod
    def decode(cls, data: bytes) -> Optional["PredictionLog"]:
        if len(data) < PREDICTION_LOG_SIZE:
            return None
        sensors, state, mode, ptype, set_point, seconds, core = _unpack_fields(
            data[:PREDICTION_LOG_SIZE], cls.WIDTHS
        )
        return cls(
            virtual_sensors=VirtualSensors.from_byte(sensors),
            state=_enum_or(PredictionState, state, PredictionState.UNKNOWN),
            mode=PredictionMode(mode),
            type=PredictionType(ptype),
            set_point_temperature=set_point * 0.1,
            seconds_remaining=seconds,
            estimated_core_temperature=core * 0.1 - 20.0,
        )

    def encode(self) -> bytes:
        values = (
            self.virtual_sensors.to_byte(),
            self.state,
            self.mode,
            self.type,
            _scaled(self.set_point_temperature, 0.1),
            self.seconds_remaining,
            _scaled(self.estimated_core_temperature, 0.1, -20.0),
        )
        return _pack_fields(list(zip(values, self.WIDTHS)), PREDICTION_LOG_SIZE)


@dataclass
class FoodSafeData:
    """Food safety program configuration (10 bytes)."""
    mode: FoodSafeMode = FoodSafeMode.SIMPLIFIED
    product: int = 0
    serving: Serving = Serving.SERVED_IMMEDIATELY
    threshold_temperature: float = 0.0
    z_value: float = 0.0
    reference_temperature: float = 0.0
    d_value_at_rt: float = 0.0
    target_log_reduction: float = 0.0

    WIDTHS = (3, 10, 3, 13, 13, 13, 13, 8)

    @classmethod
    def decode(cls, data: bytes) -> Optional["FoodSafeData"]:
        if len(data) < FOOD_SAFE_DATA_SIZE:
            return None
        mode, product, serving, threshold, z_value, reference, d_value, log_reduction = (
            _unpack_fields(data[:FOOD_SAFE_DATA_SIZE], cls.WIDTHS)
        )
        if mode not in FoodSafeMode._value2member_map_:
            return None
        return cls(
            mode=FoodSafeMode(mode),
            product=product,
            serving=_enum_or(Serving, serving, Serving.SERVED_IMMEDIATELY),
            threshold_temperature=round(threshold * 0.05, 2),
            z_value=round(z_value * 0.05, 2),
            reference_temperature=round(reference * 0.05, 2),
            d_value_at_rt=round(d_value * 0.05, 2),
            target_log_reduction=round(log_reduction * 0.1, 1),
        )

    def encode(self) -> bytes:
        values = (
            self.mode,
            self.product,
            self.serving,
            _scaled(self.threshold_temperature, 0.05),
            _scaled(self.z_value, 0.05),
            _scaled(self.reference_temperature, 0.05),
            _scaled(self.d_value_at_rt, 0.05),
            _scaled(self.target_log_reduction, 0.1),
        )
        return _pack_fields(list(zip(values, self.WIDTHS)), FOOD_SAFE_DATA_SIZE)

    @property
    def product_name(self) -> str:
        """Human readable product for the configured mode."""
        enum_cls = SimplifiedModeProduct if self.mode == FoodSafeMode.SIMPLIFIED else IntegratedModeProduct
        product = _enum_or(enum_cls, self.product, enum_cls.DEFAULT)
        return product.name.replace("_", " ").title()

    @property
    def is_safe_mode_set(self) -> bool:
        if self.mode == FoodSafeMode.INTEGRATED:
            return True
        return self.product != SimplifiedModeProduct.DEFAULT


@dataclass
class FoodSafeStatus:
    """Food safety program progress (8 bytes)."""
    state: FoodSafeState = FoodSafeState.NOT_SAFE
    log_reduction: float = 0.0
    seconds_above_threshold: int = 0
    sequence_number: int = 0

    WIDTHS = (3, 8, 16, 32)

    @classmethod
    def decode(cls, data: bytes) -> Optional["FoodSafeStatus"]:
        if len(data) < FOOD_SAFE_STATUS_SIZE:
            return None
        state, log_reduction, seconds, sequence = _unpack_fields(
            data[:FOOD_SAFE_STATUS_SIZE], cls.WIDTHS
        )
        return cls(
            state=_enum_or(FoodSafeState, state, FoodSafeState.NOT_SAFE),
            log_reduction=round(log_reduction * 0.1, 1),
            seconds_above_threshold=seconds,
            sequence_number=sequence,
        )

    def encode(self) -> bytes:
        values = (
            self.state,
            _scaled(self.log_reduction, 0.1),
            self.seconds_above_threshold,
            self.sequence_number,
        )
        return _pack_fields(list(zip(values, self.WIDTHS)), FOOD_SAFE_STATUS_SIZE)


@dataclass
class ProbeStatus:
    """Status notification from a probe (direct or relayed by a node)."""
    min_sequence: int = 0
    max_sequence: int = 0
    temperatures: ProbeTemperatures = field(default_factory=ProbeTemperatures)
    mode_id: ModeId = field(default_factory=ModeId)
    battery_status_virtual_sensors: BatteryStatusVirtualSensors = field(
        default_factory=BatteryStatusVirtualSensors
    )
    prediction_status: PredictionStatus = field(default_factory=PredictionStatus)
    food_safe_data: Optional[FoodSafeData] = None
    food_safe_status: Optional[FoodSafeStatus] = None

    HEADER_FORMAT = "<II"

    @classmethod
    def decode(cls, data: bytes) -> Optional["ProbeStatus"]:
        if len(data) < PROBE_STATUS_SIZE:
            return None

        try:
            min_seq, max_seq = struct.unpack(cls.HEADER_FORMAT, data[:8])
        except struct.error:
            return None

        food_safe_data = None
        food_safe_status = None
        if len(data) >= PROBE_STATUS_EXTENDED_SIZE:
            food_safe_data = FoodSafeData.decode(data[30:40])
            food_safe_status = FoodSafeStatus.decode(data[40:48])

        return cls(
            min_sequence=min_seq,
            max_sequence=max_seq,
            temperatures=ProbeTemperatures.decode(data[8:21]),
            mode_id=ModeId.from_byte(data[21]),
            battery_status_virtual_sensors=BatteryStatusVirtualSensors.from_byte(data[22]),
            prediction_status=PredictionStatus.decode(data[23:30]),
            food_safe_data=food_safe_data,
            food_safe_status=food_safe_status,
        )

    def encode(self) -> bytes:
        data = (
            struct.pack(self.HEADER_FORMAT, self.min_sequence, self.max_sequence)
            + self.temperatures.encode()
            + bytes([self.mode_id.to_byte(), self.battery_status_virtual_sensors.to_byte()])
            + self.prediction_status.encode()
        )
        if self.food_safe_data is not None or self.food_safe_status is not None:
            data += (self.food_safe_data or FoodSafeData()).encode()
            data += (self.food_safe_status or FoodSafeStatus()).encode()
        return data


@dataclass
class AdvertisingData:
    """Manufacturer data broadcast by a probe, or by a node repeating a probe."""
    product_type: ProductType = ProductType.UNKNOWN
    serial_number: int = 0
    temperatures: ProbeTemperatures = field(default_factory=ProbeTemperatures)
    mode_id: ModeId = field(default_factory=ModeId)
    battery_status_virtual_sensors: BatteryStatusVirtualSensors = field(
        default_factory=BatteryStatusVirtualSensors
    )
    hop_count: HopCount = HopCount.HOP1

    @classmethod
    def decode(cls, data: bytes) -> Optional["AdvertisingData"]:
        if data is None or len(data) < ADVERTISING_MIN_SIZE:
            return None

        try:
            (serial,) = struct.unpack("<I", data[3:7])
        except struct.error:
            return None

        advertising = cls(
            product_type=_enum_or(ProductType, data[2], ProductType.UNKNOWN),
            serial_number=serial,
            temperatures=ProbeTemperatures.decode(data[7:20]),
        )
        if len(data) > 20:
            advertising.mode_id = ModeId.from_byte(data[20])
        if len(data) > 21:
            advertising.battery_status_virtual_sensors = BatteryStatusVirtualSensors.from_byte(data[21])
        if len(data) > 22:
            advertising.hop_count = HopCount.from_network_byte(data[22])
        return advertising

    def encode(self) -> bytes:
        return (
            struct.pack("<HBI", VENDOR_ID, self.product_type, self.serial_number)
            + self.temperatures.encode()
            + bytes([
                self.mode_id.to_byte(),
                self.battery_status_virtual_sensors.to_byte(),
                (self.hop_count & 0x03) << 6,
            ])
        )


# =============================================================================
# Helper Functions
# =============================================================================

def decode_advertisement(data: bytes) -> Optional[AdvertisingData]:
    """Decode manufacturer data, or None if too short."""
    return AdvertisingData.decode(data)


def decode_status(data: bytes) -> Optional[ProbeStatus]:
    """Decode a status notification, or None if too short."""
    return ProbeStatus.decode(data)
