"""Data models for the shutter tester library."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionState(Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    PERMISSION_REQUESTED = "permission_requested"
    CONNECTED = "connected"


@dataclass(frozen=True)
class MeasurementRecord:
    """One decoded telemetry sample from the tester.

    Attributes:
        effective_time: Time the shutter was effectively open, in microseconds.
        total_time: Total opening time including ramps, in microseconds.
            Normally >= effective_time, not enforced.
        relative_signal: Light level relative to the calibration reference (typically 0-1).
        max_relative_signal: Peak relative light level seen during the exposure.
    """

    effective_time: int
    total_time: int
    relative_signal: float
    max_relative_signal: float

    def __post_init__(self) -> None:
        """Validate time fields."""
        if self.effective_time < 0:
            raise ValueError(f"effective_time must be >= 0, got {self.effective_time}")
        if self.total_time < 0:
            raise ValueError(f"total_time must be >= 0, got {self.total_time}")

    @property
    def effective_ms(self) -> float:
        """Effective time in milliseconds."""
        return self.effective_time / 1000.0

    @property
    def total_ms(self) -> float:
        """Total time in milliseconds."""
        return self.total_time / 1000.0

    @property
    def shutter_speed(self) -> Optional[float]:
        """Denominator N of the measured speed expressed as 1/N s.

        Returns:
            1e6 / effective_time, or None when no exposure was measured
        """
        if self.effective_time == 0:
            return None
        return 1_000_000.0 / self.effective_time

    @property
    def efficiency_pct(self) -> Optional[float]:
        """Shutter efficiency: effective time as a percentage of total time."""
        if self.total_time == 0:
            return None
        return self.effective_time / self.total_time * 100.0

    @property
    def signal_pct(self) -> float:
        """Relative signal as a percentage."""
        return self.relative_signal * 100.0


# Pre-connection placeholder, also restored on every disconnect
DEFAULT_RECORD = MeasurementRecord(
    effective_time=0,
    total_time=0,
    relative_signal=0.0,
    max_relative_signal=0.0,
)


class DecodeErrorKind(Enum):
    """Why a line could not be turned into a MeasurementRecord."""

    INVALID_JSON = "invalid_json"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class DecodeError:
    """A recoverable, per-line decode failure."""

    kind: DecodeErrorKind
    reason: str
    line: str


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one line.

    Exactly one of record/error is set, except for blank lines where both are
    None (nothing to report).
    """

    record: Optional[MeasurementRecord] = None
    error: Optional[DecodeError] = None

    @property
    def ok(self) -> bool:
        """True if a record was decoded."""
        return self.record is not None

    @property
    def empty(self) -> bool:
        """True for blank input: no record and no error."""
        return self.record is None and self.error is None


@dataclass(frozen=True)
class ReadResult:
    """Outcome of one bounded-timeout read from the transport.

    An empty ``data`` with no error means the poll interval elapsed without input.
    """

    data: bytes = b""
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        """True if the read hit a transport-level failure."""
        return self.error is not None


@dataclass(frozen=True)
class StatusSnapshot:
    """Consistent view of the latest-value store handed to consumers.

    Attributes:
        state: Current connection state.
        status: Advisory human-readable status text.
        record: Most recently decoded measurement (DEFAULT_RECORD before any data).
        version: Monotonic counter bumped on every change.
        decode_errors: Number of lines rejected by the decoder this session.
        last_decode_error: Most recent decode failure, if any.
        overflowed_chars: Characters discarded by the line buffer bound this session.
    """

    state: ConnectionState
    status: str
    record: MeasurementRecord
    version: int
    decode_errors: int = 0
    last_decode_error: Optional[DecodeError] = None
    overflowed_chars: int = 0

    @property
    def connected(self) -> bool:
        """Connected flag for presentation."""
        return self.state == ConnectionState.CONNECTED
