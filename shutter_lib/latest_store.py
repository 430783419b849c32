"""Thread-safe single-slot store for the latest measurement and connection status."""

import logging
import threading
from typing import Callable, List, Optional

from shutter_lib import protocol
from shutter_lib.models import (
    DEFAULT_RECORD,
    ConnectionState,
    DecodeError,
    MeasurementRecord,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[StatusSnapshot], None]


class LatestValueStore:
    """Mutex-guarded slot holding (state, status, record) plus diagnostics.

    Writers are the connection manager and its read loop; any number of
    consumer threads may read snapshots, block in wait_for_update(), or
    register subscribers that are called after each change.
    """

    def __init__(self, initial_status: str = protocol.STATUS_INITIAL) -> None:
        """Initialize store in the disconnected state.

        Args:
            initial_status: Status text shown before any connection attempt
        """
        self._cond = threading.Condition(threading.Lock())
        self._state = ConnectionState.DISCONNECTED
        self._status = initial_status
        self._record = DEFAULT_RECORD
        self._version = 0
        self._decode_errors = 0
        self._last_decode_error: Optional[DecodeError] = None
        self._overflowed_chars = 0
        self._subscribers: List[Subscriber] = []

    # ========================================================================
    # Writers
    # ========================================================================

    def publish_record(
        self, record: MeasurementRecord, status: Optional[str] = None
    ) -> None:
        """Replace the current record, optionally updating status text."""
        with self._cond:
            self._record = record
            if status is not None:
                self._status = status
            snapshot = self._bump()
        self._notify(snapshot)

    def set_status(self, status: str) -> None:
        """Update the advisory status text only."""
        with self._cond:
            self._status = status
            snapshot = self._bump()
        self._notify(snapshot)

    def set_state(self, state: ConnectionState, status: str) -> None:
        """Update connection state and status text together."""
        with self._cond:
            self._state = state
            self._status = status
            snapshot = self._bump()
        logger.debug(f"State -> {state.value}: {status}")
        self._notify(snapshot)

    def record_decode_error(self, error: DecodeError) -> None:
        """Count a rejected line. The stored record is left untouched."""
        with self._cond:
            self._decode_errors += 1
            self._last_decode_error = error
            snapshot = self._bump()
        self._notify(snapshot)

    def record_overflow(self, chars: int) -> None:
        """Count characters discarded by the line buffer bound."""
        if chars <= 0:
            return
        with self._cond:
            self._overflowed_chars += chars
            snapshot = self._bump()
        self._notify(snapshot)

    def reset(self, status: str = protocol.STATUS_DISCONNECTED) -> None:
        """Return to defaults: disconnected, DEFAULT_RECORD, counters cleared."""
        with self._cond:
            self._state = ConnectionState.DISCONNECTED
            self._status = status
            self._record = DEFAULT_RECORD
            self._decode_errors = 0
            self._last_decode_error = None
            self._overflowed_chars = 0
            snapshot = self._bump()
        self._notify(snapshot)

    # ========================================================================
    # Readers
    # ========================================================================

    def snapshot(self) -> StatusSnapshot:
        """Get a consistent copy of all fields (thread-safe)."""
        with self._cond:
            return self._snapshot_locked()

    def wait_for_update(
        self, since_version: int, timeout: Optional[float] = None
    ) -> Optional[StatusSnapshot]:
        """Block until the store version moves past since_version.

        Args:
            since_version: Version the caller has already seen
            timeout: Max seconds to wait, None to wait forever

        Returns:
            New snapshot, or None on timeout
        """
        with self._cond:
            changed = self._cond.wait_for(
                lambda: self._version > since_version, timeout=timeout
            )
            if not changed:
                return None
            return self._snapshot_locked()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback.

        Callbacks run on the writer's thread after the lock is released and
        must not block.

        Args:
            callback: Called with the new StatusSnapshot after each change

        Returns:
            Function that removes the subscription
        """
        with self._cond:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._cond:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def record(self) -> MeasurementRecord:
        """Most recent record."""
        with self._cond:
            return self._record

    @property
    def status(self) -> str:
        """Current status text."""
        with self._cond:
            return self._status

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        with self._cond:
            return self._state

    @property
    def connected(self) -> bool:
        """True while a session is active."""
        with self._cond:
            return self._state == ConnectionState.CONNECTED

    @property
    def version(self) -> int:
        """Change counter."""
        with self._cond:
            return self._version

    # ========================================================================
    # Internal
    # ========================================================================

    def _bump(self) -> StatusSnapshot:
        self._version += 1
        self._cond.notify_all()
        return self._snapshot_locked()

    def _snapshot_locked(self) -> StatusSnapshot:
        return StatusSnapshot(
            state=self._state,
            status=self._status,
            record=self._record,
            version=self._version,
            decode_errors=self._decode_errors,
            last_decode_error=self._last_decode_error,
            overflowed_chars=self._overflowed_chars,
        )

    def _notify(self, snapshot: StatusSnapshot) -> None:
        with self._cond:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Store subscriber {callback!r} failed: {e}", exc_info=True)
