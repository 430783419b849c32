"""FastAPI REST and WebSocket interface for the shutter tester.

Single-process, single-device lifecycle with thread-safe access to:
- ConnectionManager (discovery, permission, serial session)
- LatestValueStore (latest measurement + status, written by the read loop)
- PortMonitor (optional attach/detach polling for auto-connect)

Error mapping:
- Connect attempt that ends DISCONNECTED → 503 with the status text
- Connect attempt waiting for permission → 202
"""

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from threading import RLock
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from shutter_lib import (
    ConnectionManager,
    ConnectionState,
    MeasurementRecord,
    PortMonitor,
    PySerialDeviceProvider,
    StatusSnapshot,
    create_manager,
)
from shutter_lib import protocol

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9160"))
AUTO_CONNECT = os.getenv("AUTO_CONNECT", "1") not in ("0", "false", "False", "")
PORT_POLL_INTERVAL_S = float(os.getenv("PORT_POLL_INTERVAL_S", "1.0"))
STREAM_MIN_INTERVAL_S = 0.1  # WebSocket push rate cap (10 Hz)
MAX_LINE_BUFFER = int(os.getenv("MAX_LINE_BUFFER", str(protocol.MAX_LINE_BUFFER_CHARS)))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

# Version tracking
API_VERSION = "0.1.0"
try:
    GIT_COMMIT = subprocess.check_output(["git", "rev-parse", "--short", "HEAD"], cwd=Path(__file__).parent.parent, stderr=subprocess.DEVNULL).decode().strip()
except Exception:
    GIT_COMMIT = "unknown"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_manager: Optional[ConnectionManager] = None
_monitor: Optional[PortMonitor] = None
_lock = RLock()  # Protects manager creation and lifecycle calls

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Shutter Tester API",
    description="REST and WebSocket interface for the USB shutter tester",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# =============================================================================
# Request/Response Models
# =============================================================================

class MeasurementResponse(BaseModel):
    """Latest measurement, wire fields plus derived values."""
    effectiveTime: int
    totalTime: int
    relativeSignal: float
    maxRelativeSignal: float
    effective_ms: float
    total_ms: float
    shutter_speed: Optional[float]
    efficiency_pct: Optional[float]
    signal_pct: float


class StatusResponse(BaseModel):
    """Response for GET /status and POST /connect."""
    state: str
    status: str
    connected: bool
    device_id: Optional[str]
    version: int
    decode_errors: int
    last_decode_error: Optional[str]
    overflowed_chars: int


class LatestResponse(BaseModel):
    """Response for GET /latest."""
    connected: bool
    status: str
    version: int
    measurement: MeasurementResponse


# =============================================================================
# Helpers
# =============================================================================

def _get_manager() -> ConnectionManager:
    """Return the process-wide manager, creating the pyserial-backed one on first use."""
    global _manager

    with _lock:
        if _manager is None:
            _manager = create_manager(max_buffer_chars=MAX_LINE_BUFFER)
        return _manager


def measurement_payload(record: MeasurementRecord) -> MeasurementResponse:
    """Convert a record to its API representation."""
    return MeasurementResponse(
        effectiveTime=record.effective_time,
        totalTime=record.total_time,
        relativeSignal=record.relative_signal,
        maxRelativeSignal=record.max_relative_signal,
        effective_ms=record.effective_ms,
        total_ms=record.total_ms,
        shutter_speed=record.shutter_speed,
        efficiency_pct=record.efficiency_pct,
        signal_pct=record.signal_pct,
    )


def _status_response(snapshot: StatusSnapshot, device_id: Optional[str]) -> StatusResponse:
    last_error = snapshot.last_decode_error
    return StatusResponse(
        state=snapshot.state.value,
        status=snapshot.status,
        connected=snapshot.connected,
        device_id=device_id,
        version=snapshot.version,
        decode_errors=snapshot.decode_errors,
        last_decode_error=f"{last_error.kind.value}: {last_error.reason}" if last_error else None,
        overflowed_chars=snapshot.overflowed_chars,
    )


def _latest_response(snapshot: StatusSnapshot) -> LatestResponse:
    return LatestResponse(
        connected=snapshot.connected,
        status=snapshot.status,
        version=snapshot.version,
        measurement=measurement_payload(snapshot.record),
    )


# =============================================================================
# Read-Only Endpoints (Low Latency)
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get connection state, status text and decode diagnostics."""
    manager = _get_manager()
    device = manager.device
    return _status_response(manager.snapshot(), device.device_id if device else None)


@app.get("/latest", response_model=LatestResponse)
async def get_latest():
    """Get the most recent measurement (all zeros before the first record)."""
    return _latest_response(_get_manager().snapshot())


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@app.post("/connect", response_model=StatusResponse)
async def connect(response: Response):
    """Discover the tester and open it.

    Returns:
        200 with status when connected, 202 while the host permission request is pending

    Raises:
        503: If no device was found or the port could not be opened
    """
    with _lock:
        manager = _get_manager()
        logger.info("Connect requested")
        state = manager.request_connect()
        snapshot = manager.snapshot()
        device = manager.device

    if state == ConnectionState.DISCONNECTED:
        raise HTTPException(status_code=503, detail=snapshot.status)

    if state == ConnectionState.PERMISSION_REQUESTED:
        response.status_code = 202

    return _status_response(snapshot, device.device_id if device else None)


@app.post("/disconnect")
async def disconnect():
    """Close the serial session (or drop a pending permission request)."""
    with _lock:
        manager = _get_manager()
        logger.info("Disconnect requested")
        manager.request_disconnect()

    return {"status": "disconnected"}


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint pushing the latest snapshot whenever it changes.

    Subscribes to the store and sends a LatestResponse JSON message whenever
    the store version moves, at most every 100ms (10 Hz).

    Usage:
        ws = new WebSocket("ws://localhost:9160/stream");
        ws.onmessage = (event) => {
            const latest = JSON.parse(event.data);
            console.log(latest.measurement.shutter_speed, latest.status);
        };
    """
    await websocket.accept()
    logger.info(f"WebSocket client connected: {websocket.client}")

    store = _get_manager().store
    loop = asyncio.get_running_loop()
    changed = asyncio.Event()

    def on_change(snapshot: StatusSnapshot) -> None:
        # Runs on the writer's thread
        loop.call_soon_threadsafe(changed.set)

    unsubscribe = store.subscribe(on_change)

    try:
        last_version = None

        while True:
            changed.clear()
            snapshot = store.snapshot()

            if snapshot.version != last_version:
                await websocket.send_json(_latest_response(snapshot).model_dump())
                last_version = snapshot.version

            await asyncio.sleep(STREAM_MIN_INTERVAL_S)
            await changed.wait()

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception:
            pass
    finally:
        unsubscribe()


# =============================================================================
# Health Check
# =============================================================================

@app.get("/")
async def root():
    """Service info."""
    return {
        "service": "Shutter Tester API",
        "version": API_VERSION,
        "status": "online"
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    manager = _get_manager()
    return {
        "service": "Shutter Tester API",
        "version": API_VERSION,
        "status": "online",
        "connected": manager.is_connected(),
        "monitoring": _monitor is not None and _monitor.is_running(),
    }


@app.get("/version")
async def version():
    """Version tracking endpoint for debugging and compatibility checks."""
    return {
        "api": API_VERSION,
        "git": GIT_COMMIT,
        "status": "online"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log configuration and, with AUTO_CONNECT, start monitoring and connect."""
    global _monitor

    logger.info("=" * 60)
    logger.info("Shutter Tester API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Git Commit: {GIT_COMMIT}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Auto Connect: {AUTO_CONNECT}")
    logger.info(f"Port Poll Interval: {PORT_POLL_INTERVAL_S}s")
    logger.info(f"Max Line Buffer: {MAX_LINE_BUFFER}")
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)

    if not AUTO_CONNECT:
        return

    with _lock:
        manager = _get_manager()
        if _monitor is None:
            _monitor = PortMonitor(
                PySerialDeviceProvider(), manager, poll_interval_s=PORT_POLL_INTERVAL_S
            )
        _monitor.start()
        manager.request_connect()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop monitoring and close the serial session."""
    global _monitor

    logger.info("Shutting down Shutter Tester API...")

    with _lock:
        if _monitor is not None:
            logger.info("Stopping port monitor...")
            _monitor.stop()
            _monitor = None

        if _manager is not None:
            logger.info("Disconnecting...")
            try:
                _manager.close()
            except Exception as e:
                logger.error(f"Error during shutdown: {e}")

    logger.info("Shutdown complete")


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
