"""Tests for PortMonitor attach/detach detection."""

import time

import pytest

from fakes.fake_serial import FakeSerial
from fakes.fake_usb import PICO, FakeDeviceProvider, FakePermissionGate, FakeTransportProvider
from shutter_lib import protocol
from shutter_lib.controller import ConnectionManager
from shutter_lib.discovery import DeviceDescriptor
from shutter_lib.models import ConnectionState
from shutter_lib.port_monitor import PortMonitor


class RecordingManager:
    """Stand-in that records the events PortMonitor dispatches."""

    def __init__(self) -> None:
        self.events = []

    def on_device_attached(self, device: DeviceDescriptor) -> None:
        self.events.append(("attached", device.device_id))

    def on_device_detached(self, device: DeviceDescriptor) -> None:
        self.events.append(("detached", device.device_id))


OTHER = DeviceDescriptor(device_id="0403:6001:A50285BI", endpoints=("/dev/ttyUSB0",))


def test_poll_once_reports_changes() -> None:
    """Test arrivals and removals since the last poll are dispatched."""
    provider = FakeDeviceProvider([PICO])
    manager = RecordingManager()
    monitor = PortMonitor(provider, manager)
    monitor.poll_once()
    assert manager.events == [("attached", PICO.device_id)]

    manager.events.clear()
    provider.detach(PICO)
    provider.attach(OTHER)
    monitor.poll_once()

    assert manager.events == [
        ("detached", PICO.device_id),
        ("attached", OTHER.device_id),
    ]


def test_no_events_without_changes() -> None:
    """Test a stable device list produces no events."""
    provider = FakeDeviceProvider([PICO])
    manager = RecordingManager()
    monitor = PortMonitor(provider, manager)
    monitor.poll_once()
    manager.events.clear()

    monitor.poll_once()
    monitor.poll_once()

    assert manager.events == []


def test_invalid_interval_rejected() -> None:
    """Test a non-positive poll interval raises."""
    with pytest.raises(ValueError):
        PortMonitor(FakeDeviceProvider(), RecordingManager(), poll_interval_s=0)


def test_start_treats_present_devices_as_known() -> None:
    """Test devices present at start() do not produce attach events."""
    provider = FakeDeviceProvider([PICO])
    manager = RecordingManager()
    monitor = PortMonitor(provider, manager, poll_interval_s=0.02)

    monitor.start()
    try:
        assert monitor.is_running()
        time.sleep(0.1)
        assert manager.events == []

        provider.attach(OTHER)
        time.sleep(0.1)
        assert manager.events == [("attached", OTHER.device_id)]
    finally:
        monitor.stop()

    assert not monitor.is_running()


def test_plug_cycle_reconnects_manager() -> None:
    """Test unplug then replug drives the manager through a full reconnect."""
    provider = FakeDeviceProvider([PICO])
    transports = FakeTransportProvider(
        factory=lambda endpoint: FakeSerial(port=endpoint, stream=False)
    )
    manager = ConnectionManager(
        provider, FakePermissionGate(granted={PICO.device_id}), transports
    )
    monitor = PortMonitor(provider, manager, poll_interval_s=0.02)

    manager.request_connect()
    monitor.start()
    try:
        assert manager.state == ConnectionState.CONNECTED

        provider.detach(PICO)
        deadline = time.time() + 2.0
        while manager.state != ConnectionState.DISCONNECTED and time.time() < deadline:
            time.sleep(0.01)
        assert manager.store.status == protocol.STATUS_DETACHED

        provider.attach(PICO)
        deadline = time.time() + 2.0
        while manager.state != ConnectionState.CONNECTED and time.time() < deadline:
            time.sleep(0.01)
        assert manager.state == ConnectionState.CONNECTED
        assert len(transports.open_calls) == 2
    finally:
        monitor.stop()
        manager.close()


def test_monitor_survives_enumeration_errors() -> None:
    """Test a failing enumeration is logged and polling continues."""

    class FlakyProvider(FakeDeviceProvider):
        def list_candidate_devices(self):
            devices = super().list_candidate_devices()
            if self.list_calls == 2:
                raise OSError("enumeration failed")
            return devices

    provider = FlakyProvider()
    manager = RecordingManager()
    monitor = PortMonitor(provider, manager, poll_interval_s=0.02)

    monitor.start()
    try:
        provider.attach(PICO)
        time.sleep(0.2)
        assert monitor.is_running()
        assert ("attached", PICO.device_id) in manager.events
    finally:
        monitor.stop()
