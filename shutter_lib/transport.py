"""Serial transport layer for shutter tester communication."""

import logging
from typing import Optional, Protocol

from shutter_lib import protocol
from shutter_lib.errors import SerialIOError
from shutter_lib.models import ReadResult

logger = logging.getLogger(__name__)

VALID_DATA_BITS = {5, 6, 7, 8}
VALID_STOP_BITS = {1, 1.5, 2}
VALID_PARITIES = {"N", "E", "O", "M", "S"}


class SerialLike(Protocol):
    """Protocol for serial port interface (allows test doubles)."""

    baudrate: int
    bytesize: int
    stopbits: float
    parity: str
    timeout: Optional[float]
    dtr: bool
    rts: bool

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, returning early when the timeout elapses."""
        ...

    def close(self) -> None:
        """Close serial port."""
        ...

    @property
    def in_waiting(self) -> int:
        """Number of bytes already received and not yet read."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if port is open."""
        ...


class Transport:
    """Wrapper around pyserial exposing the operations the read loop needs.

    Fallible reads are reported as ReadResult values rather than exceptions so
    the read loop can treat them as an ordinary end-of-session signal.
    """

    def __init__(self, serial_port: SerialLike, name: str = "") -> None:
        """Initialize transport with a serial port instance.

        Args:
            serial_port: Object implementing SerialLike protocol
                        (e.g., serial.Serial or FakeSerial for testing)
            name: Endpoint name for log messages
        """
        self._port = serial_port
        self._name = name or getattr(serial_port, "port", "") or "serial"

    @classmethod
    def open(
        cls,
        port: str,
        baud: int = protocol.BAUD_RATE,
        timeout_s: float = protocol.READ_TIMEOUT_S,
    ) -> "Transport":
        """Open a real serial port (requires pyserial).

        Args:
            port: Serial port device name (e.g., "/dev/ttyACM0")
            baud: Baud rate. Default 115200 matches the tester firmware.
            timeout_s: Read timeout in seconds, i.e. the read loop poll interval.

        Returns:
            Transport instance wrapping opened serial port

        Raises:
            SerialIOError: If port cannot be opened
        """
        import serial

        try:
            ser = serial.Serial(
                port=port,
                baudrate=baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=timeout_s,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
            logger.info(f"Opened serial port {port} at {baud} baud, timeout={timeout_s}s")
            return cls(ser, name=port)
        except (serial.SerialException, OSError, ValueError) as e:
            raise SerialIOError(f"Failed to open {port} at {baud} baud: {e}") from e

    def configure(
        self,
        baud: int = protocol.BAUD_RATE,
        data_bits: int = protocol.DATA_BITS,
        stop_bits: float = protocol.STOP_BITS,
        parity: str = protocol.PARITY,
    ) -> None:
        """Apply link parameters to the open port.

        Args:
            baud: Baud rate
            data_bits: 5-8
            stop_bits: 1, 1.5 or 2
            parity: One of N, E, O, M, S

        Raises:
            ValueError: If a parameter is out of range
            SerialIOError: If the port is closed or rejects the settings
        """
        if data_bits not in VALID_DATA_BITS:
            raise ValueError(f"data_bits must be one of {VALID_DATA_BITS}, got {data_bits}")
        if stop_bits not in VALID_STOP_BITS:
            raise ValueError(f"stop_bits must be one of {VALID_STOP_BITS}, got {stop_bits}")
        if parity not in VALID_PARITIES:
            raise ValueError(f"parity must be one of {VALID_PARITIES}, got {parity!r}")

        self._ensure_open()
        try:
            self._port.baudrate = baud
            self._port.bytesize = data_bits
            self._port.stopbits = stop_bits
            self._port.parity = parity
            logger.debug(f"Configured {self._name}: {baud} {data_bits}{parity}{stop_bits}")
        except Exception as e:
            raise SerialIOError(f"Failed to configure {self._name}: {e}") from e

    def set_control_lines(self, dtr: bool, rts: bool) -> None:
        """Set the DTR and RTS modem control lines.

        Args:
            dtr: Data Terminal Ready level
            rts: Request To Send level

        Raises:
            SerialIOError: If the port is closed or the driver rejects the change
        """
        self._ensure_open()
        try:
            self._port.dtr = dtr
            self._port.rts = rts
            logger.debug(f"Control lines on {self._name}: DTR={dtr} RTS={rts}")
        except Exception as e:
            raise SerialIOError(f"Failed to set control lines on {self._name}: {e}") from e

    def read_chunk(self, size: int = protocol.READ_CHUNK_SIZE) -> ReadResult:
        """Read whatever is available, waiting at most one port timeout.

        Args:
            size: Maximum number of bytes to return

        Returns:
            ReadResult with the bytes read (possibly empty on timeout) or an
            error description if the port is closed or the read failed
        """
        if not self._port.is_open:
            return ReadResult(error="Serial port is not open")

        try:
            # Block for at least one byte (bounded by the port timeout), then take the backlog
            want = min(size, max(1, self._port.in_waiting))
            data = self._port.read(want)
        except Exception as e:
            logger.debug(f"Read failed on {self._name}: {e}")
            return ReadResult(error=str(e) or type(e).__name__)

        if data:
            logger.debug(f"Received {len(data)} bytes from {self._name}")
        return ReadResult(data=bytes(data))

    def close(self) -> None:
        """Close the serial port. Failures are logged and swallowed."""
        try:
            if self._port.is_open:
                self._port.close()
                logger.info(f"Closed serial port {self._name}")
        except Exception as e:
            logger.debug(f"Ignoring error while closing {self._name}: {e}")

    @property
    def is_open(self) -> bool:
        """Check if port is currently open."""
        return self._port.is_open

    @property
    def name(self) -> str:
        """Endpoint name."""
        return self._name

    def _ensure_open(self) -> None:
        if not self._port.is_open:
            raise SerialIOError(f"Serial port {self._name} is not open")
