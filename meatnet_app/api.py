#!/usr/bin/env python3
"""
REST API for the MeatNet Controller

This module provides a FastAPI-based REST API for reading probe and repeater
state, browsing session logs and sending writes to probes. It's designed to
be used by web applications to display cook data.

Endpoints:
    GET    /api/health                                - API health
    GET    /api/status                                - Engine status and statistics
    GET    /api/probes                                - List all probes
    GET    /api/probes/{serial}                       - Probe details
    GET    /api/probes/{serial}/prediction            - Smoothed prediction
    GET    /api/probes/{serial}/logs                  - Session logs summary
    GET    /api/probes/{serial}/logs/{session_id}     - Data points of one session
    GET    /api/nodes                                 - List repeater nodes
    GET    /api/nodes/{node_id}                       - Repeater details
    POST   /api/probes/{serial}/id                    - Set probe ID
    POST   /api/probes/{serial}/color                 - Set probe color
    POST   /api/probes/{serial}/prediction            - Start removal prediction
    DELETE /api/probes/{serial}/prediction            - Cancel prediction
    POST   /api/probes/{serial}/over-temperature      - Read over-temperature flag
    POST   /api/probes/{serial}/food-safe             - Configure food safe
    POST   /api/probes/{serial}/food-safe/reset       - Reset food safe

Serial numbers are 8-digit hex strings (e.g. 10005205).

Engine state is owned by the controller's reactor, so every handler runs its
work there with scheduler.call() and awaits the result.

Usage:
    from meatnet_app import MeatNetController, EngineConfig
    from meatnet_app.api import create_api, run_api_server

    controller = MeatNetController(config, transport)
    controller.start()

    app = create_api(controller)
    run_api_server(app, host="0.0.0.0", port=8080)
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

try:
    from fastapi import FastAPI, HTTPException, Query
    from fastapi.middleware.cors import CORSMiddleware
    from pydantic import BaseModel, Field
except ImportError:
    raise ImportError(
        "FastAPI and Pydantic are required for the API module.\n"
        "Install with: pip3 install fastapi uvicorn pydantic"
    )

from .correlator import RequestResult
from .devices import parse_serial, prediction_to_dict
from .telemetry import FoodSafeData, FoodSafeMode, ProbeColor, ProbeID, Serving


# =============================================================================
# Constants
# =============================================================================

# Maximum data points returned per log request
MAX_LOG_POINTS = 1000

# Extra seconds to wait for a write beyond the mesh request timeout
WRITE_WAIT_MARGIN = 2.0


# =============================================================================
# Pydantic Models for API Responses
# =============================================================================

class HealthResponse(BaseModel):
    """API health check response."""
    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Current server time")
    controller_running: bool = Field(..., description="Whether the controller is running")


class StatusResponse(BaseModel):
    """Engine status and statistics."""
    running: bool = Field(..., description="Whether the controller is running")
    total_probes: int = Field(..., ge=0, description="Probes heard so far")
    connected_probes: int = Field(..., ge=0, description="Probes with a direct link")
    total_nodes: int = Field(..., ge=0, description="Repeater nodes heard so far")
    connected_nodes: int = Field(..., ge=0, description="Connected repeater nodes")
    frames_received: int = Field(..., ge=0, description="UART notifications received")
    invalid_frames: int = Field(..., ge=0, description="Notifications with undecodable bytes")
    advertisements_received: int = Field(..., ge=0, description="Valid advertisements")
    status_received: int = Field(..., ge=0, description="Status notifications processed")
    log_records_received: int = Field(..., ge=0, description="Log records received")
    log_requests_sent: int = Field(..., ge=0, description="Log requests sent")
    pending_requests: int = Field(..., ge=0, description="Requests awaiting a response")
    requests_resolved: int = Field(..., ge=0, description="Requests answered")
    requests_timed_out: int = Field(..., ge=0, description="Requests that timed out")


class PredictionResponse(BaseModel):
    """Smoothed prediction of a probe."""
    state: str = Field(..., description="Prediction state")
    mode: str = Field(..., description="Prediction mode")
    type: str = Field(..., description="Prediction type")
    set_point_temperature: float = Field(..., description="Removal set point (C)")
    estimated_core_temperature: float = Field(..., description="Estimated core temperature (C)")
    seconds_remaining: Optional[int] = Field(None, ge=0, description="Seconds until removal")
    percent_through_cook: int = Field(..., ge=0, le=100, description="Cook progress %")


class ProbeResponse(BaseModel):
    """Full probe information."""
    serial_number: str = Field(..., description="Probe serial (8 hex digits)")
    mac_address: str = Field(..., description="Bluetooth address derived from the serial")
    link_id: Optional[str] = Field(None, description="Direct link identity")
    connection_state: str = Field(..., description="Direct link state")
    is_connectable: bool = Field(..., description="Whether the probe accepts a direct link")
    rssi: int = Field(..., description="Direct signal strength (dBm)")
    within_proximity_range: bool = Field(..., description="Probe is close to this device")
    stale: bool = Field(..., description="Nothing heard recently")
    last_update_time: float = Field(..., description="Unix timestamp of last update")
    firmware_version: Optional[str] = Field(None, description="Firmware revision")
    hardware_revision: Optional[str] = Field(None, description="Hardware revision")
    sku: Optional[str] = Field(None, description="Model SKU")
    manufacturing_lot: Optional[str] = Field(None, description="Manufacturing lot")
    probe_id: int = Field(..., ge=1, le=8, description="Probe ID (1-8)")
    color: int = Field(..., ge=1, le=8, description="Probe color (1-8)")
    mode: str = Field(..., description="Operating mode")
    battery_status: str = Field(..., description="Battery status")
    temperatures: Optional[List[float]] = Field(None, description="T1..T8 in Celsius")
    virtual_temperatures: Optional[Dict[str, float]] = Field(None, description="Core/surface/ambient")
    overheating: bool = Field(..., description="Any sensor above its limit")
    overheating_sensors: List[int] = Field(..., description="Indexes of overheating sensors")
    instant_read_celsius: Optional[float] = Field(None, description="Filtered instant read (C)")
    instant_read_fahrenheit: Optional[float] = Field(None, description="Filtered instant read (F)")
    sequence_range: Optional[List[int]] = Field(None, description="[min, max] sequence on the probe")
    percent_synced: int = Field(..., ge=0, le=100, description="Current session log completeness %")
    session: Optional[Dict[str, int]] = Field(None, description="Current recording session")
    status_notifications_stale: bool = Field(..., description="No status notifications recently")
    prediction: Optional[PredictionResponse] = Field(None, description="Smoothed prediction")
    food_safe: Optional[Dict[str, str]] = Field(None, description="Food safe configuration")
    food_safe_status: Optional[Dict[str, Any]] = Field(None, description="Food safe progress")


class ProbeListResponse(BaseModel):
    """List of probes with summary."""
    total: int = Field(..., ge=0, description="Total number of probes")
    connected: int = Field(..., ge=0, description="Probes with a direct link")
    probes: List[ProbeResponse] = Field(..., description="List of probes")


class NodeInfoResponse(BaseModel):
    """Repeater node information."""
    node_id: str = Field(..., description="Link identity of the node")
    serial_number: str = Field("", description="Node serial from heartbeat")
    kind: str = Field(..., description="Product kind (repeater, display, charger)")
    connection_state: str = Field(..., description="Link state")
    is_connectable: bool = Field(..., description="Whether the node accepts a link")
    rssi: int = Field(..., description="Signal strength (dBm)")
    stale: bool = Field(..., description="Nothing heard recently")
    last_update_time: float = Field(..., description="Unix timestamp of last update")
    firmware_version: Optional[str] = Field(None, description="Firmware revision")
    hardware_revision: Optional[str] = Field(None, description="Hardware revision")
    sku: Optional[str] = Field(None, description="Model SKU")
    manufacturing_lot: Optional[str] = Field(None, description="Manufacturing lot")
    probes: List[str] = Field(..., description="Probes this node currently hears")
    heartbeat: Optional[Dict[str, Any]] = Field(None, description="Last heartbeat")


class NodeListResponse(BaseModel):
    total: int = Field(..., ge=0, description="Total number of nodes")
    connected: int = Field(..., ge=0, description="Connected nodes")
    nodes: List[NodeInfoResponse] = Field(..., description="List of nodes")


class LogSummary(BaseModel):
    """One recording session of a probe."""
    session_id: int = Field(..., description="Session ID")
    sample_period: int = Field(..., ge=0, description="Sample period (ms)")
    start_time: Optional[float] = Field(None, description="Unix timestamp of sequence 0")
    point_count: int = Field(..., ge=0, description="Data points stored")
    first_sequence: Optional[int] = Field(None, description="Lowest stored sequence")
    last_sequence: Optional[int] = Field(None, description="Highest stored sequence")
    current: bool = Field(..., description="Whether this is the probe's current session")


class LogListResponse(BaseModel):
    serial_number: str = Field(..., description="Probe serial")
    percent_synced: int = Field(..., ge=0, le=100, description="Current session completeness %")
    sessions: List[LogSummary] = Field(..., description="Recorded sessions")


class DataPointResponse(BaseModel):
    sequence_number: int = Field(..., ge=0, description="Sample sequence number")
    timestamp: Optional[float] = Field(None, description="Unix timestamp of the sample")
    temperatures: List[float] = Field(..., description="T1..T8 in Celsius")
    core: Optional[float] = Field(None, description="Virtual core temperature")
    surface: Optional[float] = Field(None, description="Virtual surface temperature")
    ambient: Optional[float] = Field(None, description="Virtual ambient temperature")


class LogResponse(BaseModel):
    """Data points of one session."""
    session: LogSummary = Field(..., description="Session summary")
    total: int = Field(..., ge=0, description="Data points in the session")
    points: List[DataPointResponse] = Field(..., description="Data points, in sequence order")


class SetIdRequest(BaseModel):
    probe_id: int = Field(..., ge=1, le=8, description="Probe ID (1-8)")


class SetColorRequest(BaseModel):
    color: int = Field(..., ge=1, le=8, description="Probe color (1-8)")


class SetPredictionRequest(BaseModel):
    set_point: float = Field(..., description="Core removal temperature in Celsius (0-100 exclusive)")


class FoodSafeRequest(BaseModel):
    """Food safe program configuration."""
    mode: str = Field("simplified", description="simplified or integrated")
    product: int = Field(0, ge=0, le=0x3FF, description="Product code for the mode")
    serving: str = Field("served_immediately", description="served_immediately or cooked_and_chilled")
    threshold_temperature: float = Field(0.0, ge=0, description="Threshold temperature (C)")
    z_value: float = Field(0.0, ge=0, description="Z-value (C)")
    reference_temperature: float = Field(0.0, ge=0, description="Reference temperature (C)")
    d_value_at_rt: float = Field(0.0, ge=0, description="D-value at reference temperature (s)")
    target_log_reduction: float = Field(0.0, ge=0, description="Target log reduction")


class CommandResponse(BaseModel):
    """Outcome of a write to a probe."""
    success: bool = Field(..., description="Whether the probe acknowledged")
    message: str = Field(..., description="Status message")


class OverTemperatureResponse(CommandResponse):
    over_temperature: Optional[bool] = Field(None, description="Over-temperature flag")


# =============================================================================
# API Factory
# =============================================================================

def create_api(controller) -> FastAPI:
    """
    Create a FastAPI application with controller reference.

    Args:
        controller: MeatNetController instance.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="MeatNet Controller API",
        description="REST API for monitoring probes and repeaters on a MeatNet",
        version="0.3.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # Add CORS middleware for web access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.controller = controller
    logger = logging.getLogger("API")

    # -------------------------------------------------------------------------
    # Helper Functions
    # -------------------------------------------------------------------------

    def get_controller():
        """Get controller from app state."""
        return app.state.controller

    async def on_reactor(callback: Callable, *args):
        """Run callback on the controller's reactor and wait for its result."""
        ctrl = get_controller()
        return await asyncio.wrap_future(ctrl.scheduler.call(callback, *args))

    def to_serial(serial: str) -> int:
        try:
            return parse_serial(serial)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    async def require_probe(serial: str) -> int:
        serial_number = to_serial(serial)
        ctrl = get_controller()
        probe = await on_reactor(ctrl.get_probe, serial_number)
        if probe is None:
            raise HTTPException(status_code=404, detail=f"Probe {serial.upper()} not found")
        return serial_number

    async def run_write(name: str, method: Callable, *args) -> RequestResult:
        """Issue a write on the reactor and wait for the probe's answer."""
        ctrl = get_controller()
        future = await on_reactor(method, *args)
        timeout = ctrl.config.mesh_request_timeout + WRITE_WAIT_MARGIN
        result = await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        logger.info(f"[{name}] {args[0]:08X}: success={result.success} {result.reason}")
        return result

    def result_message(name: str, result) -> str:
        if result.success:
            return f"{name} acknowledged"
        if result.timed_out:
            return f"{name} timed out"
        return f"{name} failed: {result.reason or 'rejected by probe'}"

    def log_summary(log, current_id: Optional[int]) -> LogSummary:
        points = log.data_points
        return LogSummary(
            session_id=log.session_id,
            sample_period=log.session.sample_period,
            start_time=log.start_time,
            point_count=len(points),
            first_sequence=points[0].sequence_number if points else None,
            last_sequence=log.last_sequence,
            current=log.session_id == current_id,
        )

    def point_to_response(log, point) -> DataPointResponse:
        virtual = None
        if point.virtual_sensors is not None:
            virtual = point.virtual_sensors.temperatures_from(point.temperatures.values)
        timestamp = None
        if log.start_time is not None:
            timestamp = log.start_time + point.sequence_number * log.session.sample_period / 1000.0
        return DataPointResponse(
            sequence_number=point.sequence_number,
            timestamp=timestamp,
            temperatures=[round(v, 2) for v in point.temperatures.values],
            core=virtual.core if virtual else None,
            surface=virtual.surface if virtual else None,
            ambient=virtual.ambient if virtual else None,
        )

    # -------------------------------------------------------------------------
    # Health / Status Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Check API and controller health."""
        ctrl = get_controller()
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now().isoformat(),
            controller_running=ctrl.running,
        )

    @app.get("/api/status", response_model=StatusResponse, tags=["Status"])
    async def get_status():
        """Get engine statistics."""
        ctrl = get_controller()
        stats = await on_reactor(ctrl.get_stats)
        return StatusResponse(**stats)

    # -------------------------------------------------------------------------
    # Probe Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/probes", response_model=ProbeListResponse, tags=["Probes"])
    async def list_probes(
        connected_only: bool = Query(False, description="Only return directly connected probes"),
    ):
        """List all probes heard directly or through repeaters."""
        ctrl = get_controller()

        def snapshot():
            return [p.to_dict() for p in ctrl.get_probes()]

        probes = await on_reactor(snapshot)
        connected = sum(1 for p in probes if p["connection_state"] == "connected")
        if connected_only:
            probes = [p for p in probes if p["connection_state"] == "connected"]

        return ProbeListResponse(
            total=len(probes),
            connected=connected,
            probes=[ProbeResponse(**p) for p in probes],
        )

    @app.get("/api/probes/{serial}", response_model=ProbeResponse, tags=["Probes"])
    async def get_probe(serial: str):
        """
        Get detailed information for a probe.

        Args:
            serial: Probe serial number (8 hex digits)
        """
        ctrl = get_controller()
        snapshot = await on_reactor(ctrl.get_probe_snapshot, to_serial(serial))
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"Probe {serial.upper()} not found")
        return ProbeResponse(**snapshot)

    @app.get("/api/probes/{serial}/prediction", response_model=PredictionResponse, tags=["Prediction"])
    async def get_prediction(serial: str):
        """Get the smoothed time-to-removal prediction of a probe."""
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        info = await on_reactor(ctrl.get_prediction, serial_number)
        if info is None:
            raise HTTPException(status_code=404, detail=f"No prediction available for {serial.upper()}")
        return PredictionResponse(**prediction_to_dict(info))

    @app.get("/api/probes/{serial}/logs", response_model=LogListResponse, tags=["Logs"])
    async def list_logs(serial: str):
        """List the recording sessions stored for a probe."""
        serial_number = await require_probe(serial)
        ctrl = get_controller()

        def summaries():
            probe = ctrl.get_probe(serial_number)
            current = probe.session_information
            current_id = current.session_id if current else None
            logs = ctrl.get_logs(serial_number)
            return probe.percent_synced, [log_summary(log, current_id) for log in logs.values()]

        percent, sessions = await on_reactor(summaries)
        return LogListResponse(
            serial_number=f"{serial_number:08X}",
            percent_synced=percent,
            sessions=sessions,
        )

    @app.get("/api/probes/{serial}/logs/{session_id}", response_model=LogResponse, tags=["Logs"])
    async def get_log(
        serial: str,
        session_id: int,
        limit: int = Query(MAX_LOG_POINTS, ge=1, le=MAX_LOG_POINTS, description="Max points to return"),
        offset: int = Query(0, ge=0, description="Offset for pagination"),
    ):
        """
        Get the data points of one recording session.

        Points are returned in sequence order.
        """
        serial_number = await require_probe(serial)
        ctrl = get_controller()

        def read():
            log = ctrl.get_log(serial_number, session_id)
            if log is None:
                return None
            probe = ctrl.get_probe(serial_number)
            current = probe.session_information
            points = log.data_points
            return (
                log_summary(log, current.session_id if current else None),
                len(points),
                [point_to_response(log, p) for p in points[offset : offset + limit]],
            )

        result = await on_reactor(read)
        if result is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found for {serial.upper()}")

        summary, total, points = result
        return LogResponse(session=summary, total=total, points=points)

    # -------------------------------------------------------------------------
    # Node Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/nodes", response_model=NodeListResponse, tags=["Nodes"])
    async def list_nodes():
        """List repeater nodes."""
        ctrl = get_controller()
        nodes = await on_reactor(lambda: [n.to_dict() for n in ctrl.get_nodes()])
        return NodeListResponse(
            total=len(nodes),
            connected=sum(1 for n in nodes if n["connection_state"] == "connected"),
            nodes=[NodeInfoResponse(**n) for n in nodes],
        )

    @app.get("/api/nodes/{node_id}", response_model=NodeInfoResponse, tags=["Nodes"])
    async def get_node(node_id: str):
        ctrl = get_controller()

        def read():
            node = ctrl.get_node(node_id)
            return node.to_dict() if node else None

        node = await on_reactor(read)
        if node is None:
            raise HTTPException(status_code=404, detail=f"Node {node_id} not found")
        return NodeInfoResponse(**node)

    # -------------------------------------------------------------------------
    # Probe Write Endpoints
    # -------------------------------------------------------------------------

    @app.post("/api/probes/{serial}/id", response_model=CommandResponse, tags=["Commands"])
    async def set_probe_id(serial: str, request: SetIdRequest):
        """Set the probe ID (1-8)."""
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        result = await run_write("SET_ID", ctrl.set_probe_id, serial_number, ProbeID(request.probe_id - 1))
        return CommandResponse(success=result.success, message=result_message("Set ID", result))

    @app.post("/api/probes/{serial}/color", response_model=CommandResponse, tags=["Commands"])
    async def set_probe_color(serial: str, request: SetColorRequest):
        """Set the probe color (1-8)."""
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        result = await run_write("SET_COLOR", ctrl.set_probe_color, serial_number, ProbeColor(request.color - 1))
        return CommandResponse(success=result.success, message=result_message("Set color", result))

    @app.post("/api/probes/{serial}/prediction", response_model=CommandResponse, tags=["Prediction"])
    async def set_prediction(serial: str, request: SetPredictionRequest):
        """Start a time-to-removal prediction for a core set point."""
        serial_number = await require_probe(serial)
        if not 0.0 < request.set_point < 100.0:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid set point: {request.set_point}. Must be between 0 and 100 C",
            )
        ctrl = get_controller()
        result = await run_write("SET_PREDICTION", ctrl.set_removal_prediction, serial_number, request.set_point)
        return CommandResponse(success=result.success, message=result_message("Set prediction", result))

    @app.delete("/api/probes/{serial}/prediction", response_model=CommandResponse, tags=["Prediction"])
    async def cancel_prediction(serial: str):
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        result = await run_write("SET_PREDICTION", ctrl.cancel_prediction, serial_number)
        return CommandResponse(success=result.success, message=result_message("Cancel prediction", result))

    @app.post("/api/probes/{serial}/over-temperature", response_model=OverTemperatureResponse, tags=["Commands"])
    async def read_over_temperature(serial: str):
        """Ask the probe whether it has been over temperature."""
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        result = await run_write("READ_OVER_TEMPERATURE", ctrl.read_over_temperature, serial_number)
        flag = getattr(result.response, "over_temperature", None) if result.success else None
        return OverTemperatureResponse(
            success=result.success,
            message=result_message("Read over-temperature", result),
            over_temperature=flag,
        )

    @app.post("/api/probes/{serial}/food-safe", response_model=CommandResponse, tags=["Food Safe"])
    async def configure_food_safe(serial: str, request: FoodSafeRequest):
        """Configure the probe's food safe program."""
        serial_number = await require_probe(serial)
        try:
            data = FoodSafeData(
                mode=FoodSafeMode[request.mode.upper()],
                product=request.product,
                serving=Serving[request.serving.upper()],
                threshold_temperature=request.threshold_temperature,
                z_value=request.z_value,
                reference_temperature=request.reference_temperature,
                d_value_at_rt=request.d_value_at_rt,
                target_log_reduction=request.target_log_reduction,
            )
        except KeyError as e:
            raise HTTPException(status_code=400, detail=f"Invalid food safe option: {e}")

        ctrl = get_controller()
        result = await run_write("CONFIGURE_FOOD_SAFE", ctrl.configure_food_safe, serial_number, data)
        return CommandResponse(success=result.success, message=result_message("Configure food safe", result))

    @app.post("/api/probes/{serial}/food-safe/reset", response_model=CommandResponse, tags=["Food Safe"])
    async def reset_food_safe(serial: str):
        serial_number = await require_probe(serial)
        ctrl = get_controller()
        result = await run_write("RESET_FOOD_SAFE", ctrl.reset_food_safe, serial_number)
        return CommandResponse(success=result.success, message=result_message("Reset food safe", result))

    return app


# =============================================================================
# Server Runner
# =============================================================================

def run_api_server(
    app: FastAPI,
    host: str = "0.0.0.0",
    port: int = 8080,
    log_level: str = "info",
):
    """
    Run the API server (blocking).

    Args:
        app: FastAPI application instance.
        host: Host to bind to.
        port: Port to bind to.
        log_level: Logging level.
    """
    try:
        import uvicorn
    except ImportError:
        raise ImportError("uvicorn is required. Install with: pip3 install uvicorn")

    uvicorn.run(app, host=host, port=port, log_level=log_level)
