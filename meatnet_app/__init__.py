"""
MeatNet Controller Module

Track wireless temperature probes heard directly or through a mesh of
repeater nodes, keep their session logs complete and smooth their
time-to-removal predictions. The radio stack is pluggable: anything that
implements Transport and publishes link events can drive the engine.

Architecture:
    Application / REST API
        │
        ├── MeatNetController (this module)
        ▼
    Transport (radio stack or SimulatedTransport)
        │
        ├── Direct link (UART frames, status notifications)
        ▼
    Probes ◄──── Repeater Nodes (MeatNet, up to 4 hops)

Data Flow:
    Probe → App:
        - Advertising: live temperatures, ID, color, battery (direct or repeated)
        - Status notifications: sequence range, temperatures, prediction,
          food safe state (direct link or PROBE_STATUS through a node)
        - Log records: back-filled on request, one per sample

    App → Probe:
        - Session info, log, revision and model reads
        - Set ID / color / prediction, food safe configure / reset

Log Sync:
    1. A status notification reports the probe's [min, max] sequence range
    2. The newest point is stored from the status itself
    3. The first gap below max is requested from every usable route
    4. Records arrive out of order and are merged in bulk
    5. Percent synced is published whenever it changes

Usage:
    from meatnet_app import EngineConfig, MeatNetController, ThreadedScheduler
    from meatnet_app.simulation import SimulatedTransport

    config = EngineConfig.from_yaml("config.yaml")
    scheduler = ThreadedScheduler()
    controller = MeatNetController(config, SimulatedTransport(scheduler), scheduler)

    # Register handlers
    controller.on_probe_update(lambda probe: print(f"{probe.serial}: {probe.temperatures}"))
    controller.on_log_progress(lambda probe, percent: print(f"{probe.serial}: {percent}% synced"))

    # Run main loop
    controller.run()
"""

from .controller import MeatNetController
from .correlator import RequestCorrelator, RequestResult
from .devices import NodeKind, Probe, RepeaterNode, format_serial, parse_serial
from .log_sync import DataPoint, LogSynchronizer, SessionInformation, TemperatureLog
from .models import ApiConfig, ConnectionState, EngineConfig, SimulationConfig
from .prediction import PredictionInfo, PredictionSmoother
from .protocol import (
    DirectRequest,
    DirectResponse,
    MessageType,
    NodeMessageType,
    NodeRequest,
    NodeResponse,
    crc16_ccitt,
)
from .routing import Route, RouteKind, RouteSelector
from .scheduler import Scheduler, ThreadedScheduler
from .telemetry import (
    AdvertisingData,
    ProbeColor,
    ProbeID,
    ProbeMode,
    ProbeStatus,
    ProbeTemperatures,
)
from .transport import Transport

__version__ = "0.3.0"
__all__ = [
    # Controller
    "MeatNetController",
    "EngineConfig",
    "ApiConfig",
    "SimulationConfig",
    "ConnectionState",
    # Devices
    "Probe",
    "RepeaterNode",
    "NodeKind",
    "format_serial",
    "parse_serial",
    # Engine
    "Scheduler",
    "ThreadedScheduler",
    "Transport",
    "RequestCorrelator",
    "RequestResult",
    "Route",
    "RouteKind",
    "RouteSelector",
    "LogSynchronizer",
    "TemperatureLog",
    "SessionInformation",
    "DataPoint",
    "PredictionSmoother",
    "PredictionInfo",
    # Protocol
    "MessageType",
    "NodeMessageType",
    "DirectRequest",
    "DirectResponse",
    "NodeRequest",
    "NodeResponse",
    "crc16_ccitt",
    "AdvertisingData",
    "ProbeStatus",
    "ProbeTemperatures",
    "ProbeMode",
    "ProbeID",
    "ProbeColor",
]
