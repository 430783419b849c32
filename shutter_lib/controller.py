"""Connection lifecycle state machine for the shutter tester."""

import logging
import threading
from typing import Optional

from shutter_lib import protocol
from shutter_lib.discovery import (
    DeviceDescriptor,
    DeviceProvider,
    PermissionGate,
    TransportProvider,
    first_usable_endpoint,
)
from shutter_lib.errors import DeviceNotFound, SerialIOError
from shutter_lib.latest_store import LatestValueStore
from shutter_lib.models import ConnectionState, StatusSnapshot
from shutter_lib.reader import ReadLoop
from shutter_lib.transport import Transport

logger = logging.getLogger(__name__)

# Lock polling interval used by the read loop when it re-enters the manager
_FATAL_LOCK_POLL_S = 0.05


class ConnectionManager:
    """Drives Disconnected -> PermissionRequested -> Connected -> Disconnected.

    Inputs are explicit method calls: connect/disconnect intents from the
    presentation layer and attach/detach/permission events from the host. All
    transitions are serialized by one re-entrant lock. The manager is the only
    component that opens and closes transports; the active ReadLoop is the only
    reader. Teardown always cancels and joins the loop before closing its
    transport.

    No operation raises on discovery, permission, open or read failures; they
    are reported through the store's status text.
    """

    def __init__(
        self,
        device_provider: DeviceProvider,
        permission_gate: PermissionGate,
        transport_provider: TransportProvider,
        store: Optional[LatestValueStore] = None,
        max_buffer_chars: int = protocol.MAX_LINE_BUFFER_CHARS,
        loop_join_timeout_s: float = protocol.LOOP_JOIN_TIMEOUT_S,
    ) -> None:
        """Initialize manager in the DISCONNECTED state.

        Args:
            device_provider: Enumerates candidate devices
            permission_gate: Checks and requests device access
            transport_provider: Opens endpoints
            store: Latest-value store to publish into. A new one is created if None.
            max_buffer_chars: Line buffer bound handed to each read loop
            loop_join_timeout_s: How long teardown waits for the read loop to stop
        """
        self._devices = device_provider
        self._permissions = permission_gate
        self._transports = transport_provider
        self._store = store if store is not None else LatestValueStore()
        self._max_buffer_chars = max_buffer_chars
        self._loop_join_timeout_s = loop_join_timeout_s

        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.RLock()

        self._read_loop: Optional[ReadLoop] = None
        self._transport: Optional[Transport] = None
        self._device: Optional[DeviceDescriptor] = None
        self._pending_device: Optional[DeviceDescriptor] = None

    # ========================================================================
    # Intents
    # ========================================================================

    def request_connect(self) -> ConnectionState:
        """Run device discovery and connect if possible.

        A no-op while already CONNECTED.

        Returns:
            State after the attempt
        """
        with self._state_lock:
            if self._state == ConnectionState.CONNECTED:
                logger.debug("request_connect ignored: already connected")
                return self._state

            self._discover()
            return self._state

    def request_disconnect(self) -> None:
        """Close the session, or abandon a pending permission request."""
        with self._state_lock:
            if self._state == ConnectionState.CONNECTED:
                self._teardown(protocol.STATUS_DISCONNECTED)
            elif self._state == ConnectionState.PERMISSION_REQUESTED:
                logger.info("Abandoning pending permission request")
                self._pending_device = None
                self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_DISCONNECTED)

    def close(self) -> None:
        """Disconnect on application shutdown."""
        self.request_disconnect()

    # ========================================================================
    # Host Events
    # ========================================================================

    def on_device_attached(self, device: DeviceDescriptor) -> None:
        """Handle a USB attach event: retry discovery when disconnected."""
        with self._state_lock:
            if self._state != ConnectionState.DISCONNECTED:
                logger.debug(f"Attach of {device.device_id} ignored in state {self._state.value}")
                return

            logger.info(f"Device attached: {device.device_id}")
            self._store.set_status(protocol.STATUS_ATTACHED)
            self._discover()

    def on_device_detached(self, device: DeviceDescriptor) -> None:
        """Handle a USB detach event for the active or pending device."""
        with self._state_lock:
            if (
                self._state == ConnectionState.CONNECTED
                and self._device is not None
                and self._device.device_id == device.device_id
            ):
                logger.info(f"Active device detached: {device.device_id}")
                self._teardown(protocol.STATUS_DETACHED)

            elif (
                self._state == ConnectionState.PERMISSION_REQUESTED
                and self._pending_device is not None
                and self._pending_device.device_id == device.device_id
            ):
                logger.info(f"Device detached while awaiting permission: {device.device_id}")
                self._pending_device = None
                self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_DETACHED)

    def on_permission_result(self, device: DeviceDescriptor, granted: bool) -> None:
        """Completion of an asynchronous permission request."""
        with self._state_lock:
            if self._state != ConnectionState.PERMISSION_REQUESTED:
                logger.debug(
                    f"Permission result for {device.device_id} ignored in state {self._state.value}"
                )
                return

            self._pending_device = None

            if not granted:
                logger.warning(f"Permission denied for {device.device_id}")
                self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_PERMISSION_DENIED)
                return

            logger.info(f"Permission granted for {device.device_id}")
            self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_DISCONNECTED)
            self._discover()

    # ========================================================================
    # Read Loop
    # ========================================================================

    def start_reading(
        self, transport: Transport, device: Optional[DeviceDescriptor] = None
    ) -> bool:
        """Start the read loop on an opened, configured transport.

        Args:
            transport: Transport to read from; ownership passes to the manager
            device: Device the transport belongs to (for detach matching)

        Returns:
            True if a loop was started, False if one is already active (no-op)
        """
        with self._state_lock:
            if self._read_loop is not None and self._read_loop.is_alive:
                if transport is not self._transport:
                    logger.warning("start_reading ignored: a read loop is already active")
                return False

            self._transport = transport
            self._device = device
            self._read_loop = ReadLoop(
                transport,
                self._store,
                on_fatal=self._on_fatal_read,
                max_buffer_chars=self._max_buffer_chars,
            )
            self._set_state(ConnectionState.CONNECTED, protocol.STATUS_WAITING_FOR_DATA)
            self._read_loop.start()
            logger.info(f"Connected to {transport.name}")
            return True

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def store(self) -> LatestValueStore:
        """Latest-value store observed by consumers."""
        return self._store

    @property
    def read_loop(self) -> Optional[ReadLoop]:
        """Active read loop, if any."""
        return self._read_loop

    @property
    def device(self) -> Optional[DeviceDescriptor]:
        """Device of the active session, if any."""
        return self._device

    def is_connected(self) -> bool:
        """True while a session with a live read loop is active."""
        return self._state == ConnectionState.CONNECTED

    def snapshot(self) -> StatusSnapshot:
        """Shortcut for store.snapshot()."""
        return self._store.snapshot()

    # ========================================================================
    # Internal Helpers: Transitions
    # ========================================================================

    def _discover(self) -> None:
        """Select first device/endpoint, then request permission or open it."""
        if self._previous_loop_running():
            logger.warning("Previous read loop has not exited yet; not opening a new transport")
            self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_CLOSING)
            return

        try:
            device, endpoint = first_usable_endpoint(self._devices.list_candidate_devices())
        except DeviceNotFound as e:
            logger.info(f"Discovery: {e}")
            self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_NO_DEVICE)
            return
        except Exception as e:
            logger.error(f"Device enumeration failed: {e}", exc_info=True)
            self._set_state(ConnectionState.DISCONNECTED, protocol.STATUS_NO_DEVICE)
            return

        if not self._permissions.has_permission(device):
            logger.info(f"Requesting permission for {device.device_id}")
            self._pending_device = device
            # State first: the gate may answer synchronously
            self._set_state(
                ConnectionState.PERMISSION_REQUESTED, protocol.STATUS_PERMISSION_REQUESTED
            )
            self._permissions.request_permission(device, self.on_permission_result)
            return

        self._open_and_start(device, endpoint)

    def _open_and_start(self, device: DeviceDescriptor, endpoint: str) -> None:
        logger.info(f"Opening {endpoint} ({device.device_id})")
        result = self._transports.open(endpoint)

        if result.transport is None:
            reason = result.error or "unknown error"
            logger.warning(f"Could not open {endpoint}: {reason}")
            status = (
                protocol.open_failed_status(reason)
                if result.error
                else protocol.STATUS_CONNECTION_REFUSED
            )
            self._set_state(ConnectionState.DISCONNECTED, status)
            return

        transport = result.transport
        try:
            transport.configure(
                baud=protocol.BAUD_RATE,
                data_bits=protocol.DATA_BITS,
                stop_bits=protocol.STOP_BITS,
                parity=protocol.PARITY,
            )
            transport.set_control_lines(dtr=protocol.ASSERT_DTR, rts=protocol.ASSERT_RTS)
        except (SerialIOError, ValueError) as e:
            logger.warning(f"Could not configure {endpoint}: {e}")
            transport.close()
            self._set_state(ConnectionState.DISCONNECTED, protocol.open_failed_status(str(e)))
            return

        self.start_reading(transport, device)

    def _teardown(self, status: str) -> None:
        """Cancel and join the loop, close the transport, reset the store.

        If the join times out, the loop keeps its transport and closes it on
        exit; the references stay so no new transport is opened meanwhile.

        Caller must hold the state lock.
        """
        loop = self._read_loop
        transport = self._transport

        logger.info(f"Disconnecting: {status}")

        handed_off = False
        if loop is not None and not loop.stop(timeout=self._loop_join_timeout_s):
            # The thread is stuck in a read and still owns the transport
            handed_off = not loop.release_on_exit()

        if handed_off:
            logger.warning(
                f"Read loop still running; {loop.transport.name} will be closed when it exits"
            )
        else:
            if loop is not None:
                loop.framer.clear()
            if transport is not None:
                transport.close()
            self._read_loop = None
            self._transport = None

        self._device = None
        self._state = ConnectionState.DISCONNECTED
        self._store.reset(status)
        logger.info("Disconnected")

    def _previous_loop_running(self) -> bool:
        """True while a torn-down read loop is still finishing its last read."""
        loop = self._read_loop
        if loop is None or self._state == ConnectionState.CONNECTED:
            return False
        if loop.is_alive:
            return True

        # Late exit finished; the loop released its own transport
        self._read_loop = None
        self._transport = None
        return False

    def _on_fatal_read(self, loop: ReadLoop, reason: str) -> None:
        """Read loop callback (runs on the loop thread) after a transport failure."""
        # A lock holder may be tearing this loop down and joining it; it cancels
        # the loop first, so give up once that is observed.
        while not self._state_lock.acquire(timeout=_FATAL_LOCK_POLL_S):
            if loop.cancelled:
                return

        try:
            if self._read_loop is not loop:
                return
            self._teardown(protocol.read_failed_status(reason))
        finally:
            self._state_lock.release()

    def _set_state(self, state: ConnectionState, status: str) -> None:
        self._state = state
        self._store.set_state(state, status)
