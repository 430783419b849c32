"""Host bindings: device enumeration, access permission and port opening.

The connection manager only talks to the three protocols defined here, so it
never depends on a particular host event or USB stack. The PySerial* and
Filesystem* classes are the default bindings for desktop Linux/macOS/Windows.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from shutter_lib.errors import DeviceNotFound, SerialIOError
from shutter_lib.transport import Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceDescriptor:
    """An attached USB device exposing zero or more serial endpoints.

    Attributes:
        device_id: Stable identity used to match attach/detach events
                   (e.g., "2e8a:000a:E66118604B2F3B21").
        endpoints: Serial port names in discovery order (e.g., ("/dev/ttyACM0",)).
        description: Human-readable product description.
    """

    device_id: str
    endpoints: Tuple[str, ...] = field(default_factory=tuple)
    description: str = ""


PermissionCallback = Callable[[DeviceDescriptor, bool], None]


@dataclass(frozen=True)
class OpenResult:
    """Outcome of opening an endpoint: a transport or an error description."""

    transport: Optional[Transport] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True if the endpoint was opened."""
        return self.transport is not None


class DeviceProvider(Protocol):
    """Enumerates candidate devices."""

    def list_candidate_devices(self) -> List[DeviceDescriptor]:
        """Return attached devices in a stable order."""
        ...


class PermissionGate(Protocol):
    """Host permission check for a device."""

    def has_permission(self, device: DeviceDescriptor) -> bool:
        """True if the process may open the device's endpoints now."""
        ...

    def request_permission(
        self, device: DeviceDescriptor, callback: PermissionCallback
    ) -> None:
        """Ask the host for access. Must not block; callback reports (device, granted)."""
        ...


class TransportProvider(Protocol):
    """Opens an endpoint."""

    def open(self, endpoint: str) -> OpenResult:
        """Open endpoint and return the result (never raises)."""
        ...


def first_usable_endpoint(
    devices: List[DeviceDescriptor],
) -> Tuple[DeviceDescriptor, str]:
    """Select the first device that has an endpoint, and its first endpoint.

    Args:
        devices: Candidates as returned by a DeviceProvider

    Returns:
        Tuple of (device, endpoint)

    Raises:
        DeviceNotFound: If no device exposes an endpoint
    """
    for device in devices:
        if device.endpoints:
            return device, device.endpoints[0]
    raise DeviceNotFound(f"No usable serial endpoint among {len(devices)} device(s)")


# ============================================================================
# Default host bindings
# ============================================================================


class PySerialDeviceProvider:
    """Lists USB serial devices via pyserial's port enumeration.

    Ports sharing (vid, pid, serial number) are grouped into one device so a
    composite device with several CDC interfaces yields one descriptor with
    several endpoints. Boards that report no serial number are told apart by
    the USB port path they are plugged into.
    """

    def __init__(self, vid: Optional[int] = None, pid: Optional[int] = None) -> None:
        """Initialize provider.

        Args:
            vid: Only report devices with this USB vendor ID (None = any USB device)
            pid: Only report devices with this USB product ID (None = any)
        """
        self._vid = vid
        self._pid = pid

    def list_candidate_devices(self) -> List[DeviceDescriptor]:
        """Enumerate attached USB serial devices, sorted by first endpoint name."""
        import serial.tools.list_ports

        groups: Dict[str, List[str]] = {}
        descriptions: Dict[str, str] = {}

        for info in sorted(serial.tools.list_ports.comports(), key=lambda p: p.device):
            if info.vid is None:
                continue  # Not a USB device (built-in UART, bluetooth, etc.)
            if self._vid is not None and info.vid != self._vid:
                continue
            if self._pid is not None and info.pid != self._pid:
                continue

            device_id = f"{info.vid:04x}:{info.pid:04x}"
            if info.serial_number:
                device_id += f":{info.serial_number}"
            elif getattr(info, "location", None):
                # USB port path without the interface suffix ("1-1.2:1.0" -> "1-1.2")
                device_id += f"@{info.location.split(':')[0]}"

            groups.setdefault(device_id, []).append(info.device)
            descriptions.setdefault(device_id, info.description or "")

        devices = [
            DeviceDescriptor(
                device_id=device_id,
                endpoints=tuple(endpoints),
                description=descriptions[device_id],
            )
            for device_id, endpoints in groups.items()
        ]
        logger.debug(f"Found {len(devices)} candidate device(s): {[d.device_id for d in devices]}")
        return devices


class FilesystemPermissionGate:
    """Permission check based on read/write access to the endpoint node.

    Desktop hosts have no interactive USB permission dialog; access is granted
    by group membership or udev rules. request_permission() therefore re-checks
    access on a worker thread and reports the answer asynchronously.
    """

    def has_permission(self, device: DeviceDescriptor) -> bool:
        """True if every endpoint of device is readable and writable."""
        if not device.endpoints:
            return False
        return all(_node_accessible(endpoint) for endpoint in device.endpoints)

    def request_permission(
        self, device: DeviceDescriptor, callback: PermissionCallback
    ) -> None:
        """Re-check access asynchronously and report through callback."""

        def answer() -> None:
            granted = self.has_permission(device)
            if not granted:
                logger.warning(
                    f"No read/write access to {', '.join(device.endpoints)}; "
                    "add the user to the serial group (e.g. 'dialout') or install a udev rule"
                )
            callback(device, granted)

        threading.Thread(target=answer, name="PermissionRequest", daemon=True).start()


class PySerialTransportProvider:
    """Opens endpoints with pyserial at the tester's link settings."""

    def open(self, endpoint: str) -> OpenResult:
        """Open endpoint, converting failures into an OpenResult error."""
        try:
            return OpenResult(transport=Transport.open(endpoint))
        except SerialIOError as e:
            logger.warning(f"Open failed: {e}")
            return OpenResult(error=str(e))


def _node_accessible(path: str) -> bool:
    # Non-filesystem port names (e.g. COM3 on Windows) cannot be checked up front
    if not os.path.exists(path):
        return os.name == "nt"
    return os.access(path, os.R_OK | os.W_OK)
