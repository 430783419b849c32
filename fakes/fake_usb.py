"""Fake host bindings: device enumeration, permission gate and transport provider."""

import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

from fakes.fake_serial import FakeSerial
from shutter_lib.discovery import DeviceDescriptor, OpenResult, PermissionCallback
from shutter_lib.transport import Transport

logger = logging.getLogger(__name__)

PICO = DeviceDescriptor(
    device_id="2e8a:000a:E6614C311B5A6F2D",
    endpoints=("/dev/ttyFAKE0",),
    description="Pico - Board CDC",
)


class FakeDeviceProvider:
    """Mutable list of attached devices."""

    def __init__(self, devices: Optional[List[DeviceDescriptor]] = None) -> None:
        self._devices: List[DeviceDescriptor] = list(devices or [])
        self._lock = threading.Lock()
        self.list_calls = 0

    def list_candidate_devices(self) -> List[DeviceDescriptor]:
        with self._lock:
            self.list_calls += 1
            return list(self._devices)

    def attach(self, device: DeviceDescriptor) -> None:
        with self._lock:
            self._devices.append(device)

    def detach(self, device: DeviceDescriptor) -> None:
        with self._lock:
            self._devices = [d for d in self._devices if d.device_id != device.device_id]


class FakePermissionGate:
    """Permission gate with a granted set and optional automatic answers.

    Args:
        granted: device_ids that already have permission
        auto_answer: If set, request_permission() answers with this value on a
                     worker thread (and grants on True). If None, requests stay
                     pending until answer() is called.
    """

    def __init__(
        self,
        granted: Optional[Set[str]] = None,
        auto_answer: Optional[bool] = None,
    ) -> None:
        self.granted: Set[str] = set(granted or ())
        self.auto_answer = auto_answer
        self.requests: List[Tuple[DeviceDescriptor, PermissionCallback]] = []

    def has_permission(self, device: DeviceDescriptor) -> bool:
        return device.device_id in self.granted

    def request_permission(
        self, device: DeviceDescriptor, callback: PermissionCallback
    ) -> None:
        self.requests.append((device, callback))
        if self.auto_answer is not None:
            answer = self.auto_answer
            threading.Thread(
                target=self.answer, args=(device, answer), name="FakePermission", daemon=True
            ).start()

    def answer(self, device: DeviceDescriptor, granted: bool) -> None:
        """Complete the latest pending request for device."""
        if granted:
            self.granted.add(device.device_id)
        for requested, callback in reversed(self.requests):
            if requested.device_id == device.device_id:
                callback(device, granted)
                return
        raise AssertionError(f"No permission request for {device.device_id}")


class FakeTransportProvider:
    """Opens FakeSerial ports, or fails with a configured error."""

    def __init__(
        self,
        factory: Optional[Callable[[str], FakeSerial]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Initialize provider.

        Args:
            factory: Builds the FakeSerial for an endpoint (default: streaming FakeSerial)
            error: If set, every open() fails with this error
        """
        self._factory = factory or (lambda endpoint: FakeSerial(port=endpoint))
        self.error = error
        self.opened: Dict[str, List[FakeSerial]] = {}
        self.open_calls: List[str] = []

    def open(self, endpoint: str) -> OpenResult:
        self.open_calls.append(endpoint)
        if self.error is not None:
            return OpenResult(error=self.error)

        port = self._factory(endpoint)
        self.opened.setdefault(endpoint, []).append(port)
        return OpenResult(transport=Transport(port, name=endpoint))

    @property
    def last_port(self) -> FakeSerial:
        """Most recently opened FakeSerial."""
        endpoint = self.open_calls[-1]
        return self.opened[endpoint][-1]
