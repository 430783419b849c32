"""Wire protocol constants for the shutter tester telemetry stream.

The tester (a Raspberry Pi Pico behind a USB CDC serial port) emits one JSON
object per measurement, terminated by a single LF. There is no checksum,
length prefix or escaping beyond the line terminator.
"""

from typing import Final, Tuple

# ============================================================================
# Line Framing
# ============================================================================

LINE_TERMINATOR: Final[str] = "\n"

TEXT_ENCODING: Final[str] = "utf-8"

# Pending text without a newline is trimmed to this many characters (newest kept)
MAX_LINE_BUFFER_CHARS: Final[int] = 65536

# ============================================================================
# Record Keys
# ============================================================================

KEY_EFFECTIVE_TIME: Final[str] = "effectiveTime"
KEY_TOTAL_TIME: Final[str] = "totalTime"
KEY_RELATIVE_SIGNAL: Final[str] = "relativeSignal"
KEY_MAX_RELATIVE_SIGNAL: Final[str] = "maxRelativeSignal"

INT_KEYS: Final[Tuple[str, ...]] = (KEY_EFFECTIVE_TIME, KEY_TOTAL_TIME)
FLOAT_KEYS: Final[Tuple[str, ...]] = (KEY_RELATIVE_SIGNAL, KEY_MAX_RELATIVE_SIGNAL)

# ============================================================================
# Link Parameters
# ============================================================================

BAUD_RATE: Final[int] = 115200
DATA_BITS: Final[int] = 8
STOP_BITS: Final[int] = 1
PARITY: Final[str] = "N"

# The Pico only starts streaming once the host asserts both lines
ASSERT_DTR: Final[bool] = True
ASSERT_RTS: Final[bool] = True

# ============================================================================
# Read Loop Timing
# ============================================================================

READ_TIMEOUT_S: Final[float] = 0.1  # Poll interval, also the cancellation latency bound
READ_CHUNK_SIZE: Final[int] = 8192
LOOP_JOIN_TIMEOUT_S: Final[float] = 5.0

# ============================================================================
# Status Messages
# ============================================================================

STATUS_INITIAL: Final[str] = "Disconnected. Plug in the tester."
STATUS_NO_DEVICE: Final[str] = "No USB serial device found."
STATUS_PERMISSION_REQUESTED: Final[str] = "USB permission requested..."
STATUS_PERMISSION_DENIED: Final[str] = "Permission denied."
STATUS_ATTACHED: Final[str] = "Device attached. Attempting auto-connect."
STATUS_CONNECTION_REFUSED: Final[str] = "Error: connection refused."
STATUS_WAITING_FOR_DATA: Final[str] = "Connected. Waiting for data."
STATUS_CONNECTED: Final[str] = "Connected"
STATUS_DISCONNECTED: Final[str] = "Disconnected."
STATUS_DETACHED: Final[str] = "Disconnected. Device removed."
STATUS_CLOSING: Final[str] = "Disconnected. Previous session is still closing."


def open_failed_status(reason: str) -> str:
    """Status text for a port that could not be opened or configured."""
    return f"Error: failed to open port. ({reason})"


def read_failed_status(reason: str) -> str:
    """Status text after a fatal read error ended the session."""
    return f"Disconnected after read error: {reason}"
