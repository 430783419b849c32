"""Line framing for the newline-delimited telemetry stream."""

import codecs
import logging
from typing import Iterator

from shutter_lib import protocol

logger = logging.getLogger(__name__)


class LineFramer:
    """Accumulates raw serial bytes and extracts complete LF-terminated lines.

    Bytes are decoded incrementally as UTF-8 with replacement, so a multi-byte
    character split across two reads decodes the same as if it arrived whole
    and invalid sequences never abort a chunk. Whatever follows the last
    newline stays buffered for the next feed().

    Not thread-safe: a framer belongs to exactly one read loop.
    """

    def __init__(self, max_buffer_chars: int = protocol.MAX_LINE_BUFFER_CHARS) -> None:
        """Initialize an empty framer.

        Args:
            max_buffer_chars: Upper bound on buffered text without a newline.
                When exceeded, the oldest characters are dropped.
        """
        if max_buffer_chars <= 0:
            raise ValueError(f"max_buffer_chars must be positive, got {max_buffer_chars}")

        self._max_buffer_chars = max_buffer_chars
        self._decoder = codecs.getincrementaldecoder(protocol.TEXT_ENCODING)(errors="replace")
        self._buffer = ""
        self._overflow_count = 0

    def feed(self, data: bytes) -> Iterator[str]:
        """Append a chunk and return a lazy iterator over the completed lines.

        The chunk is buffered immediately, so lines not consumed from the
        returned iterator are still yielded by the next call.

        Args:
            data: Raw bytes as read from the transport

        Returns:
            Iterator of complete lines, stripped of surrounding whitespace
        """
        if data:
            self._buffer += self._decoder.decode(data)
            self._enforce_bound()
        return self._drain()

    def _drain(self) -> Iterator[str]:
        while True:
            idx = self._buffer.find(protocol.LINE_TERMINATOR)
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1 :]  # Consume including LF
            yield line.strip()

    def _enforce_bound(self) -> None:
        # Only the fragment after the last newline counts toward the bound
        start = self._buffer.rfind(protocol.LINE_TERMINATOR) + 1
        excess = len(self._buffer) - start - self._max_buffer_chars
        if excess > 0:
            self._buffer = self._buffer[:start] + self._buffer[start + excess :]
            self._overflow_count += excess
            logger.warning(
                f"Line buffer exceeded {self._max_buffer_chars} chars without a newline, "
                f"dropped {excess} oldest chars"
            )

    def clear(self) -> None:
        """Drop buffered text and any half-decoded byte sequence."""
        self._buffer = ""
        self._decoder.reset()

    def take_overflow(self) -> int:
        """Return and reset the number of characters dropped since the last call."""
        count = self._overflow_count
        self._overflow_count = 0
        return count

    @property
    def pending(self) -> str:
        """Buffered text of the incomplete trailing message."""
        return self._buffer

    @property
    def max_buffer_chars(self) -> int:
        """Configured buffer bound."""
        return self._max_buffer_chars

    def __len__(self) -> int:
        return len(self._buffer)
