"""
shutter_lib - Telemetry reader for the USB shutter tester.

Reads newline-delimited JSON measurements from the tester's serial port and
keeps the latest record and connection status for display.
"""

from shutter_lib.controller import ConnectionManager
from shutter_lib.discovery import (
    DeviceDescriptor,
    FilesystemPermissionGate,
    PySerialDeviceProvider,
    PySerialTransportProvider,
)
from shutter_lib.errors import DeviceNotFound, SerialIOError, ShutterTesterError
from shutter_lib.latest_store import LatestValueStore
from shutter_lib.models import (
    DEFAULT_RECORD,
    ConnectionState,
    DecodeError,
    DecodeErrorKind,
    MeasurementRecord,
    StatusSnapshot,
)
from shutter_lib.port_monitor import PortMonitor

__version__ = "0.1.0"

__all__ = [
    "ConnectionManager",
    "LatestValueStore",
    "PortMonitor",
    "DeviceDescriptor",
    "PySerialDeviceProvider",
    "FilesystemPermissionGate",
    "PySerialTransportProvider",
    "MeasurementRecord",
    "DEFAULT_RECORD",
    "ConnectionState",
    "StatusSnapshot",
    "DecodeError",
    "DecodeErrorKind",
    "ShutterTesterError",
    "SerialIOError",
    "DeviceNotFound",
    "create_manager",
]


def create_manager(**kwargs) -> ConnectionManager:
    """Build a ConnectionManager wired to the default pyserial host bindings.

    Keyword arguments are passed to ConnectionManager (e.g., store, max_buffer_chars).
    """
    return ConnectionManager(
        device_provider=PySerialDeviceProvider(),
        permission_gate=FilesystemPermissionGate(),
        transport_provider=PySerialTransportProvider(),
        **kwargs,
    )
