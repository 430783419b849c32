"""Fake serial port that simulates the shutter tester firmware.

The simulated Pico behaves like the real CDC device: it stays silent until the
host asserts both DTR and RTS, then streams one JSON measurement per line at a
fixed period. Tests can also inject raw byte chunks and force read failures.
"""

import logging
import random
import threading
import time
from typing import Iterable, Iterator, List, Optional

from shutter_lib.models import MeasurementRecord
from shutter_lib.parsing import encode_record

logger = logging.getLogger(__name__)


class FakeSerialException(OSError):
    """Raised by FakeSerial reads after a simulated unplug or I/O error."""

    pass


class FakeSerial:
    """Deterministic simulator of the tester's serial endpoint.

    Implements the SerialLike protocol used by Transport:
    - read(size) honours the port timeout and returns b"" when it elapses
    - in_waiting reports buffered output
    - dtr/rts gate the measurement stream
    - close() makes further reads fail like a closed pyserial port
    """

    def __init__(
        self,
        port: str = "/dev/ttyFAKE0",
        records: Optional[Iterable[MeasurementRecord]] = None,
        period_s: float = 0.05,
        stream: bool = True,
    ) -> None:
        """Initialize fake tester.

        Args:
            port: Endpoint name reported to Transport
            records: Records to stream, in order (then cycled). Random if None.
            period_s: Seconds between streamed lines
            stream: If False, only injected bytes are ever delivered
        """
        self.port = port
        self.period_s = period_s
        self.stream = stream

        # Link settings written by Transport.configure()
        self.baudrate = 9600
        self.bytesize = 8
        self.stopbits = 1
        self.parity = "N"
        self.timeout: Optional[float] = 0.1

        self._dtr = False
        self._rts = False

        self._records: Optional[List[MeasurementRecord]] = list(records) if records else None
        self._record_iter: Iterator[MeasurementRecord] = self._record_source()
        self.sent_records: List[MeasurementRecord] = []

        # Output queue for bytes to send to "host"
        self._output = bytearray()
        self._cond = threading.Condition()

        self._read_error: Optional[str] = None
        self.read_calls = 0
        self.close_calls = 0

        # Threading for streaming
        self._stream_thread: Optional[threading.Thread] = None
        self._stop_streaming = threading.Event()

        # Port state
        self.is_open = True

    # ========================================================================
    # SerialLike
    # ========================================================================

    @property
    def dtr(self) -> bool:
        return self._dtr

    @dtr.setter
    def dtr(self, value: bool) -> None:
        self._dtr = bool(value)
        self._update_streaming()

    @property
    def rts(self) -> bool:
        return self._rts

    @rts.setter
    def rts(self, value: bool) -> None:
        self._rts = bool(value)
        self._update_streaming()

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._output)

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, waiting at most self.timeout for the first one."""
        self.read_calls += 1

        with self._cond:
            self._raise_if_broken()

            if not self._output:
                self._cond.wait_for(
                    lambda: bool(self._output) or self._read_error is not None or not self.is_open,
                    timeout=self.timeout,
                )
                self._raise_if_broken()

            data = bytes(self._output[:size])
            del self._output[:size]
            return data

    def close(self) -> None:
        """Close the fake serial port."""
        self.close_calls += 1
        self.is_open = False
        self._stop_streaming_thread()
        with self._cond:
            self._cond.notify_all()
        logger.debug("FakeSerial closed")

    # ========================================================================
    # Test Hooks
    # ========================================================================

    def inject(self, data: bytes) -> None:
        """Queue raw bytes for the host, bypassing the DTR/RTS gate."""
        with self._cond:
            self._output.extend(data)
            self._cond.notify_all()

    def inject_record(self, record: MeasurementRecord) -> None:
        """Queue one encoded record."""
        self.inject(encode_record(record).encode("utf-8"))

    def fail_reads(self, message: str = "device reports readiness to read but returned no data") -> None:
        """Make every following read raise, as after a USB unplug."""
        with self._cond:
            self._read_error = message
            self._cond.notify_all()

    def wait_for_reads(self, count: int, timeout: float = 2.0) -> bool:
        """Wait until the host has issued at least count reads."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.read_calls >= count:
                return True
            time.sleep(0.01)
        return False

    @property
    def streaming(self) -> bool:
        """True while the streaming thread runs."""
        return self._stream_thread is not None and self._stream_thread.is_alive()

    # ========================================================================
    # Internal
    # ========================================================================

    def _raise_if_broken(self) -> None:
        if not self.is_open:
            raise FakeSerialException("Attempting to use a port that is not open")
        if self._read_error is not None:
            raise FakeSerialException(self._read_error)

    def _record_source(self) -> Iterator[MeasurementRecord]:
        if self._records:
            while True:
                yield from self._records
        while True:
            effective = random.randint(900, 1100)
            signal = round(random.uniform(0.4, 0.6), 4)
            yield MeasurementRecord(
                effective_time=effective,
                total_time=effective + random.randint(100, 300),
                relative_signal=signal,
                max_relative_signal=round(signal + 0.1, 4),
            )

    def _update_streaming(self) -> None:
        if self.stream and self.is_open and self._dtr and self._rts:
            self._start_streaming_thread()
        else:
            self._stop_streaming_thread()

    def _start_streaming_thread(self) -> None:
        if self._stream_thread and self._stream_thread.is_alive():
            return
        self._stop_streaming.clear()
        self._stream_thread = threading.Thread(
            target=self._streaming_loop,
            name="FakeTesterStream",
            daemon=True,
        )
        self._stream_thread.start()
        logger.debug("Started streaming thread")

    def _stop_streaming_thread(self) -> None:
        if self._stream_thread and self._stream_thread.is_alive():
            self._stop_streaming.set()
            if self._stream_thread is not threading.current_thread():
                self._stream_thread.join(timeout=2.0)
            self._stream_thread = None
            logger.debug("Stopped streaming thread")

    def _streaming_loop(self) -> None:
        logger.debug(f"Streaming loop started, period={self.period_s:.3f}s")

        while not self._stop_streaming.wait(timeout=self.period_s):
            record = next(self._record_iter)
            self.sent_records.append(record)
            self.inject_record(record)

        logger.debug("Streaming loop stopped")
