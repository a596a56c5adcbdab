#!/usr/bin/env python3
"""
Data Models for the MeatNet Engine

Engine-wide constants, connection state and configuration.
"""

import yaml
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


# =============================================================================
# Constants (fixed bounds for all limits)
# =============================================================================

# Maximum handlers per event type
MAX_EVENT_HANDLERS = 32

# Maximum number of probes / nodes to track
MAX_PROBES = 256
MAX_NODES = 64

# Request timeouts (seconds)
DEFAULT_DIRECT_REQUEST_TIMEOUT = 5.0
DEFAULT_MESH_REQUEST_TIMEOUT = 30.0
DEFAULT_SWEEP_INTERVAL = 1.0

# Arbitration lockout windows (seconds)
DEFAULT_INSTANT_READ_LOCKOUT = 1.0
DEFAULT_NORMAL_MODE_LOCKOUT = 5.0

# Staleness (seconds)
DEFAULT_DEVICE_STALE = 15.0
DEFAULT_STATUS_STALE = 16.0
DEFAULT_INSTANT_READ_STALE = 5.0
DEFAULT_PROBE_REACHABILITY = 30.0

# Log synchronisation
DEFAULT_ACCUMULATOR_DELAY = 0.2
DEFAULT_ACCUMULATOR_MAX = 500
DEFAULT_SESSION_INFO_INTERVAL = 5.0
DEFAULT_MAX_LOG_REQUEST = 500

# Prediction
DEFAULT_PREDICTION_STALE = 15.0

# Per-sensor overheating thresholds T1..T8 (Celsius)
OVERHEATING_THRESHOLDS = (105.0, 105.0, 115.0, 125.0, 300.0, 300.0, 300.0, 300.0)

# Placeholder RSSI for "no signal"
MIN_RSSI = -128

# Firmware older than this has no session info support
SESSION_INFO_MIN_FIRMWARE = (0, 8, 0)


# =============================================================================
# Enums
# =============================================================================

class ConnectionState(Enum):
    """Link state of a device."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class RequestSpace(Enum):
    """Correlation spaces for outstanding requests."""
    DIRECT = "direct"
    MESH = "mesh"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ApiConfig:
    """API server configuration."""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class SimulationConfig:
    """Simulated radio used when no real transport is attached."""
    probes: int = 2
    repeaters: int = 1


@dataclass
class EngineConfig:
    """Configuration for the MeatNet engine."""
    enabled: bool = True

    # Timeouts
    direct_request_timeout: float = DEFAULT_DIRECT_REQUEST_TIMEOUT
    mesh_request_timeout: float = DEFAULT_MESH_REQUEST_TIMEOUT
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    instant_read_lockout: float = DEFAULT_INSTANT_READ_LOCKOUT
    normal_mode_lockout: float = DEFAULT_NORMAL_MODE_LOCKOUT
    device_stale: float = DEFAULT_DEVICE_STALE
    status_stale: float = DEFAULT_STATUS_STALE
    instant_read_stale: float = DEFAULT_INSTANT_READ_STALE
    probe_reachability: float = DEFAULT_PROBE_REACHABILITY

    # Log sync
    accumulator_delay: float = DEFAULT_ACCUMULATOR_DELAY
    accumulator_max: int = DEFAULT_ACCUMULATOR_MAX
    session_info_interval: float = DEFAULT_SESSION_INFO_INTERVAL
    max_log_request: int = DEFAULT_MAX_LOG_REQUEST

    # Prediction
    prediction_stale: float = DEFAULT_PREDICTION_STALE

    # API settings
    api: ApiConfig = field(default_factory=ApiConfig)

    # Simulation
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = "meatnet.log"

    @classmethod
    def from_yaml(cls, path: str) -> "EngineConfig":
        """Load configuration from YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict) -> "EngineConfig":
        """Build configuration from a parsed mapping; missing keys use defaults."""
        timeouts = data.get("timeouts", {}) or {}
        log_sync = data.get("log_sync", {}) or {}
        api_data = data.get("api", {}) or {}
        sim_data = data.get("simulation", {}) or {}

        return cls(
            enabled=data.get("meatnet", {}).get("enabled", True),
            direct_request_timeout=timeouts.get("direct_request", DEFAULT_DIRECT_REQUEST_TIMEOUT),
            mesh_request_timeout=timeouts.get("mesh_request", DEFAULT_MESH_REQUEST_TIMEOUT),
            sweep_interval=timeouts.get("sweep_interval", DEFAULT_SWEEP_INTERVAL),
            instant_read_lockout=timeouts.get("instant_read_lockout", DEFAULT_INSTANT_READ_LOCKOUT),
            normal_mode_lockout=timeouts.get("normal_mode_lockout", DEFAULT_NORMAL_MODE_LOCKOUT),
            device_stale=timeouts.get("device_stale", DEFAULT_DEVICE_STALE),
            status_stale=timeouts.get("status_stale", DEFAULT_STATUS_STALE),
            instant_read_stale=timeouts.get("instant_read_stale", DEFAULT_INSTANT_READ_STALE),
            probe_reachability=timeouts.get("probe_reachability", DEFAULT_PROBE_REACHABILITY),
            accumulator_delay=log_sync.get("accumulator_delay", DEFAULT_ACCUMULATOR_DELAY),
            accumulator_max=log_sync.get("accumulator_max", DEFAULT_ACCUMULATOR_MAX),
            session_info_interval=log_sync.get("session_info_interval", DEFAULT_SESSION_INFO_INTERVAL),
            max_log_request=log_sync.get("max_log_request", DEFAULT_MAX_LOG_REQUEST),
            prediction_stale=data.get("prediction", {}).get("stale_timeout", DEFAULT_PREDICTION_STALE),
            api=ApiConfig(
                enabled=api_data.get("enabled", False),
                host=api_data.get("host", "0.0.0.0"),
                port=api_data.get("port", 8080),
            ),
            simulation=SimulationConfig(
                probes=sim_data.get("probes", 2),
                repeaters=sim_data.get("repeaters", 1),
            ),
            log_level=data.get("logging", {}).get("level", "INFO"),
            log_file=data.get("logging", {}).get("file", "meatnet.log"),
        )

    def to_dict(self) -> Dict:
        """Convert config to dictionary."""
        return {
            "meatnet": {
                "enabled": self.enabled,
            },
            "timeouts": {
                "direct_request": self.direct_request_timeout,
                "mesh_request": self.mesh_request_timeout,
                "sweep_interval": self.sweep_interval,
                "instant_read_lockout": self.instant_read_lockout,
                "normal_mode_lockout": self.normal_mode_lockout,
                "device_stale": self.device_stale,
                "status_stale": self.status_stale,
                "instant_read_stale": self.instant_read_stale,
                "probe_reachability": self.probe_reachability,
            },
            "log_sync": {
                "accumulator_delay": self.accumulator_delay,
                "accumulator_max": self.accumulator_max,
                "session_info_interval": self.session_info_interval,
                "max_log_request": self.max_log_request,
            },
            "prediction": {
                "stale_timeout": self.prediction_stale,
            },
            "api": {
                "enabled": self.api.enabled,
                "host": self.api.host,
                "port": self.api.port,
            },
            "simulation": {
                "probes": self.simulation.probes,
                "repeaters": self.simulation.repeaters,
            },
            "logging": {
                "level": self.log_level,
                "file": self.log_file,
            },
        }
