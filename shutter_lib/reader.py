"""Background read loop: transport bytes -> lines -> records -> latest-value store."""

import logging
import threading
from typing import Callable, Optional

from shutter_lib import parsing, protocol
from shutter_lib.framing import LineFramer
from shutter_lib.latest_store import LatestValueStore
from shutter_lib.transport import Transport

logger = logging.getLogger(__name__)


class ReadLoop:
    """One cancellable reader thread per connection.

    The loop is the only reader of its transport and the only writer of its
    LineFramer. Cancellation is cooperative: the stop event is checked at every
    poll boundary, so a cancelled loop exits within one read timeout.

    A read failure ends the loop. Unless the loop was already cancelled, the
    owner's on_fatal callback is invoked from the loop thread with the loop and
    the failure reason so it can tear the session down.
    """

    def __init__(
        self,
        transport: Transport,
        store: LatestValueStore,
        on_fatal: Callable[["ReadLoop", str], None],
        max_buffer_chars: int = protocol.MAX_LINE_BUFFER_CHARS,
        chunk_size: int = protocol.READ_CHUNK_SIZE,
    ) -> None:
        """Initialize loop (not started).

        Args:
            transport: Open transport to read from
            store: Destination for decoded records and decode diagnostics
            on_fatal: Called once from the loop thread after a read failure
            max_buffer_chars: Bound for the line buffer
            chunk_size: Maximum bytes per read
        """
        self._transport = transport
        self._store = store
        self._on_fatal = on_fatal
        self._chunk_size = chunk_size
        self._framer = LineFramer(max_buffer_chars=max_buffer_chars)

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        # Guards the hand-off of transport close to the reader thread
        self._exit_lock = threading.Lock()
        self._exited = False
        self._release_on_exit = False

        self.records_decoded = 0
        self.lines_rejected = 0

    def start(self) -> None:
        """Start the reader thread. A second call is a no-op."""
        if self._thread is not None:
            logger.debug("Read loop already started")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="TelemetryReader",
            daemon=True,
        )
        self._thread.start()
        logger.debug(f"Started read loop on {self._transport.name}")

    def cancel(self) -> None:
        """Request the loop to stop at the next poll boundary."""
        self._stop_event.set()

    def join(self, timeout: float = protocol.LOOP_JOIN_TIMEOUT_S) -> bool:
        """Wait for the reader thread to finish.

        Joining from the reader thread itself returns immediately.

        Args:
            timeout: Max seconds to wait

        Returns:
            True if the thread is no longer running
        """
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True

        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Read loop did not stop cleanly")
            return False
        return True

    def stop(self, timeout: float = protocol.LOOP_JOIN_TIMEOUT_S) -> bool:
        """Cancel and join. Returns True once the loop is confirmed stopped."""
        self.cancel()
        return self.join(timeout=timeout)

    def release_on_exit(self) -> bool:
        """Hand closing the transport and clearing the framer to the reader thread.

        Used when stop() timed out: the thread still owns both, so it releases
        them itself once its in-flight read returns.

        Returns:
            True if the thread has already exited and the caller must release
            the transport itself, False if the thread will do it
        """
        with self._exit_lock:
            if self._exited or self._thread is None:
                return True
            self._release_on_exit = True
            return False

    @property
    def cancelled(self) -> bool:
        """True once cancel() has been called."""
        return self._stop_event.is_set()

    @property
    def is_alive(self) -> bool:
        """True while the reader thread runs."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def framer(self) -> LineFramer:
        """The loop's line buffer. Only touch it once the loop has stopped."""
        return self._framer

    @property
    def transport(self) -> Transport:
        """Transport this loop reads from."""
        return self._transport

    # ========================================================================
    # Internal
    # ========================================================================

    def _run(self) -> None:
        logger.info(f"Read loop started (thread {threading.get_ident()})")

        try:
            while not self._stop_event.is_set():
                result = self._transport.read_chunk(self._chunk_size)

                if result.failed:
                    self._fail(result.error or "unknown read error")
                    break

                if not result.data:
                    continue  # Poll timeout, nothing received

                if self._stop_event.is_set():
                    break  # Cancelled during the read; drop the chunk

                self._handle_chunk(result.data)

        except Exception as e:
            logger.error(f"Error in read loop: {e}", exc_info=True)
            self._fail(str(e) or type(e).__name__)

        finally:
            self._on_exit()

        logger.info(
            f"Read loop stopped ({self.records_decoded} records, {self.lines_rejected} rejected)"
        )

    def _handle_chunk(self, data: bytes) -> None:
        for line in self._framer.feed(data):
            if self._stop_event.is_set():
                return

            result = parsing.parse_record_line(line)

            if result.ok:
                self.records_decoded += 1
                self._store.publish_record(result.record, status=protocol.STATUS_CONNECTED)
                logger.debug(f"Record: {result.record}")

            elif result.error is not None:
                self.lines_rejected += 1
                self._store.record_decode_error(result.error)
                logger.warning(
                    f"Skipping unparseable line ({result.error.kind.value}): {line[:80]!r}"
                )

        self._store.record_overflow(self._framer.take_overflow())

    def _on_exit(self) -> None:
        with self._exit_lock:
            self._exited = True
            release = self._release_on_exit

        if release:
            logger.info(f"Releasing {self._transport.name} after late read loop exit")
            self._framer.clear()
            self._transport.close()

    def _fail(self, reason: str) -> None:
        if self._stop_event.is_set():
            logger.debug(f"Read failure after cancellation ignored: {reason}")
            return

        logger.error(f"Fatal read error on {self._transport.name}: {reason}")
        self._on_fatal(self, reason)
