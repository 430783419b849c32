"""Polling device presence monitor that turns enumeration changes into attach/detach events."""

import logging
import threading
from typing import Dict, Optional

from shutter_lib.controller import ConnectionManager
from shutter_lib.discovery import DeviceDescriptor, DeviceProvider

logger = logging.getLogger(__name__)


class PortMonitor:
    """Background thread that polls a DeviceProvider and reports changes.

    Devices present when the monitor starts are treated as already known, so
    only later arrivals produce attach events.
    """

    def __init__(
        self,
        provider: DeviceProvider,
        manager: ConnectionManager,
        poll_interval_s: float = 1.0,
    ) -> None:
        """Initialize monitor (not started).

        Args:
            provider: Device enumeration to poll
            manager: Receives on_device_attached / on_device_detached calls
            poll_interval_s: Seconds between enumerations
        """
        if poll_interval_s <= 0:
            raise ValueError(f"poll_interval_s must be positive, got {poll_interval_s}")

        self._provider = provider
        self._manager = manager
        self._poll_interval_s = poll_interval_s
        self._known: Dict[str, DeviceDescriptor] = {}

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Take the initial inventory and start polling."""
        if self._thread and self._thread.is_alive():
            return

        self._known = self._enumerate()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop,
            name="PortMonitor",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Port monitor started with {len(self._known)} known device(s)")

    def stop(self) -> None:
        """Stop and join the polling thread."""
        if self._thread and self._thread.is_alive():
            self._stop_event.set()
            self._thread.join(timeout=self._poll_interval_s + 2.0)
            if self._thread.is_alive():
                logger.warning("Port monitor thread did not stop cleanly")
        self._thread = None

    def is_running(self) -> bool:
        """Check if polling thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> None:
        """Enumerate once and dispatch attach/detach events for the differences."""
        current = self._enumerate()

        for device_id, device in self._known.items():
            if device_id not in current:
                logger.info(f"Detached: {device_id}")
                self._manager.on_device_detached(device)

        for device_id, device in current.items():
            if device_id not in self._known:
                logger.info(f"Attached: {device_id}")
                self._manager.on_device_attached(device)

        self._known = current

    def _enumerate(self) -> Dict[str, DeviceDescriptor]:
        return {d.device_id: d for d in self._provider.list_candidate_devices()}

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(timeout=self._poll_interval_s):
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Error polling devices: {e}", exc_info=True)
