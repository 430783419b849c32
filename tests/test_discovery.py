"""Tests for device selection and the default pyserial host bindings."""

import threading
from types import SimpleNamespace

import pytest
import serial.tools.list_ports

from shutter_lib.discovery import (
    DeviceDescriptor,
    FilesystemPermissionGate,
    PySerialDeviceProvider,
    PySerialTransportProvider,
    first_usable_endpoint,
)
from shutter_lib.errors import DeviceNotFound


def port_info(device, vid=None, pid=None, serial_number=None, description="n/a", location=None):
    return SimpleNamespace(
        device=device,
        vid=vid,
        pid=pid,
        serial_number=serial_number,
        description=description,
        location=location,
    )


@pytest.fixture
def fake_comports(monkeypatch):
    """Replace pyserial's port enumeration with a fixed list."""
    ports = []
    monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: list(ports))
    return ports


def test_first_usable_endpoint_picks_first_device_first_port() -> None:
    """Test selection is first device with endpoints, then its first endpoint."""
    empty = DeviceDescriptor("a", ())
    pico = DeviceDescriptor("b", ("/dev/ttyACM0", "/dev/ttyACM1"))
    other = DeviceDescriptor("c", ("/dev/ttyUSB0",))

    device, endpoint = first_usable_endpoint([empty, pico, other])

    assert device is pico
    assert endpoint == "/dev/ttyACM0"


@pytest.mark.parametrize("devices", [[], [DeviceDescriptor("a", ())]])
def test_first_usable_endpoint_none(devices) -> None:
    """Test no endpoints raises DeviceNotFound."""
    with pytest.raises(DeviceNotFound):
        first_usable_endpoint(devices)


def test_provider_groups_usb_ports(fake_comports) -> None:
    """Test ports of one USB device are grouped and non-USB ports skipped."""
    fake_comports.extend([
        port_info("/dev/ttyS0"),
        port_info("/dev/ttyACM1", 0x2E8A, 0x000A, "E661", "Pico - Board CDC"),
        port_info("/dev/ttyACM0", 0x2E8A, 0x000A, "E661", "Pico - Board CDC"),
        port_info("/dev/ttyUSB0", 0x0403, 0x6001, None, "FT232R USB UART"),
    ])

    devices = PySerialDeviceProvider().list_candidate_devices()

    assert [d.device_id for d in devices] == ["2e8a:000a:E661", "0403:6001"]
    assert devices[0].endpoints == ("/dev/ttyACM0", "/dev/ttyACM1")
    assert devices[0].description == "Pico - Board CDC"
    assert devices[1].endpoints == ("/dev/ttyUSB0",)


def test_provider_separates_identical_boards_without_serial(fake_comports) -> None:
    """Test two boards lacking a serial number stay distinct by USB port path."""
    fake_comports.extend([
        port_info("/dev/ttyUSB0", 0x0403, 0x6001, None, "FT232R", location="1-1.2:1.0"),
        port_info("/dev/ttyUSB1", 0x0403, 0x6001, None, "FT232R", location="1-1.3:1.0"),
    ])

    devices = PySerialDeviceProvider().list_candidate_devices()

    assert [d.device_id for d in devices] == ["0403:6001@1-1.2", "0403:6001@1-1.3"]
    assert [d.endpoints for d in devices] == [("/dev/ttyUSB0",), ("/dev/ttyUSB1",)]


def test_provider_groups_interfaces_of_one_board_without_serial(fake_comports) -> None:
    """Test interfaces on the same USB port path still form one device."""
    fake_comports.extend([
        port_info("/dev/ttyACM0", 0x2E8A, 0x000A, None, location="1-1.2:1.0"),
        port_info("/dev/ttyACM1", 0x2E8A, 0x000A, None, location="1-1.2:1.2"),
    ])

    devices = PySerialDeviceProvider().list_candidate_devices()

    assert len(devices) == 1
    assert devices[0].device_id == "2e8a:000a@1-1.2"
    assert devices[0].endpoints == ("/dev/ttyACM0", "/dev/ttyACM1")

def test_provider_filters_by_vid_pid(fake_comports) -> None:
    """Test vid/pid filters restrict the candidates."""
    fake_comports.extend([
        port_info("/dev/ttyACM0", 0x2E8A, 0x000A, "E661"),
        port_info("/dev/ttyUSB0", 0x0403, 0x6001),
    ])

    devices = PySerialDeviceProvider(vid=0x0403).list_candidate_devices()
    assert [d.device_id for d in devices] == ["0403:6001"]

    assert PySerialDeviceProvider(vid=0x2E8A, pid=0x0005).list_candidate_devices() == []


def test_permission_gate_on_accessible_node(tmp_path) -> None:
    """Test a readable/writable node counts as permitted."""
    node = tmp_path / "ttyACM0"
    node.write_bytes(b"")
    device = DeviceDescriptor("pico", (str(node),))

    assert FilesystemPermissionGate().has_permission(device) is True


def test_permission_gate_request_answers_asynchronously(tmp_path) -> None:
    """Test request_permission reports through the callback."""
    device = DeviceDescriptor("gone", (str(tmp_path / "missing"),))
    answered = threading.Event()
    answers = []

    def callback(dev, granted) -> None:
        answers.append((dev, granted))
        answered.set()

    gate = FilesystemPermissionGate()
    assert gate.has_permission(device) is False
    gate.request_permission(device, callback)

    assert answered.wait(timeout=2.0)
    assert answers == [(device, False)]


def test_permission_gate_rejects_device_without_endpoints() -> None:
    """Test a device with no endpoints is never permitted."""
    assert FilesystemPermissionGate().has_permission(DeviceDescriptor("x", ())) is False


def test_transport_provider_reports_open_failure(tmp_path) -> None:
    """Test opening a missing endpoint yields an error result, not an exception."""
    result = PySerialTransportProvider().open(str(tmp_path / "ttyNOPE"))

    assert not result.ok
    assert result.transport is None
    assert "ttyNOPE" in result.error
