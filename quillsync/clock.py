"""Client clock calibrated against the backend clock."""

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class ServerClock:
    """Issues server-comparable timestamps.

    The offset is the difference between client time and server time in
    milliseconds. It is recalibrated from the server time signal of every
    successful request.

    Timestamps returned by ``now()`` are strictly increasing, so a change
    made after a cut timestamp always compares greater than that cut.
    Across restarts this holds once the stored timestamps are passed to
    ``advance_to()``.
    """

    def __init__(self, offset_ms: int = 0, time_source: Callable[[], float] | None = None):
        """Initialize the clock.

        Args:
            offset_ms: Initial client minus server offset in milliseconds.
            time_source: Returns client time in seconds (default time.time).
        """
        self.offset_ms = offset_ms
        self._time_source = time_source or time.time
        self._last_issued = 0

    def client_ms(self) -> int:
        """Current client time in milliseconds."""
        return int(self._time_source() * 1000)

    def now(self) -> int:
        """Current server-comparable time in milliseconds."""
        current = self.client_ms() - self.offset_ms
        if current <= self._last_issued:
            current = self._last_issued + 1
        self._last_issued = current
        return current

    def advance_to(self, timestamp_ms: int) -> None:
        """Issue only timestamps greater than one issued by a previous run."""
        if timestamp_ms > self._last_issued:
            self._last_issued = timestamp_ms

    def server_seconds(self, timestamp_ms: int | None = None) -> int:
        """Server unix time in seconds for a server-comparable timestamp."""
        if timestamp_ms is None:
            timestamp_ms = self.now()
        return timestamp_ms // 1000

    def calibrate(self, server_time_seconds: float) -> None:
        """Recompute the offset from a server time signal."""
        self.offset_ms = self.client_ms() - int(server_time_seconds * 1000)
        logger.debug(f"Clock offset recalibrated to {self.offset_ms} ms")
