"""
Rate Governor for WebSecScan

Single global request slot shared by the crawler and every test runner:
- Fixed minimum spacing between request starts
- Request and wall-clock budget (the emergency brake)
"""

import asyncio
import time
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateGovernor:
    """
    Enforces a fixed interval between outbound requests for a whole scan.

    The first request is issued immediately; every later request starts at
    least `interval` seconds after the previous one. Slot assignment is
    serialized by a lock, so concurrent callers queue in arrival order.
    """

    DEFAULT_MAX_REQUESTS = 500
    DEFAULT_MAX_DURATION = 1800.0  # seconds

    def __init__(
            self,
            interval: float,
            max_requests: int = DEFAULT_MAX_REQUESTS,
            max_duration: float = DEFAULT_MAX_DURATION,
            clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the governor.

        Args:
            interval: Minimum seconds between two request starts
            max_requests: Request budget for the scan
            max_duration: Wall-clock budget for the scan in seconds
            clock: Monotonic time source
        """
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = interval
        self.max_requests = max_requests
        self.max_duration = max_duration
        self._clock = clock

        self._lock = asyncio.Lock()
        self._started_at: Optional[float] = None
        self._last_slot: Optional[float] = None
        self._requests_issued = 0

    def start(self):
        """Start the scan clock. Called implicitly by the first acquire()."""
        if self._started_at is None:
            self._started_at = self._clock()

    @property
    def requests_issued(self) -> int:
        return self._requests_issued

    @property
    def elapsed(self) -> float:
        """Seconds since the scan clock started."""
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def budget_exceeded(self) -> bool:
        """True once the request or time budget is used up."""
        return (self._requests_issued >= self.max_requests
                or self.elapsed >= self.max_duration)

    async def acquire(self, precheck: Optional[Callable[[], None]] = None):
        """
        Wait for the next request slot.

        Args:
            precheck: Called under the slot lock before and after the
                spacing wait; may raise to refuse the slot
        """
        async with self._lock:
            self.start()
            if precheck:
                precheck()

            if self._last_slot is not None:
                wait = self._last_slot + self.interval - self._clock()
                if wait > 0:
                    await asyncio.sleep(wait)
                    if precheck:
                        precheck()

            self._last_slot = self._clock()
            self._requests_issued += 1

    def get_stats(self) -> dict:
        return {
            'requests_issued': self._requests_issued,
            'elapsed': round(self.elapsed, 3),
            'interval': self.interval,
            'max_requests': self.max_requests,
            'max_duration': self.max_duration,
        }
