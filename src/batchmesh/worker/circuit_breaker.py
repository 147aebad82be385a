"""Local sliding-window error-rate guard for one worker."""

from __future__ import annotations

import logging
from collections import deque

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Trips when the error ratio of a full window exceeds the threshold.

    Advisory only: callers sleep for the returned pause. Other workers and the
    queue are unaffected.
    """

    def __init__(
        self,
        *,
        window_size: int = 5,
        error_threshold: float = 0.6,
        pause_seconds: float = 3.0,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be > 0")
        self.window_size = window_size
        self.error_threshold = error_threshold
        self.pause_seconds = pause_seconds
        self._window: deque[bool] = deque(maxlen=window_size)
        self.trips = 0

    @property
    def error_ratio(self) -> float:
        if not self._window:
            return 0.0
        return sum(1 for ok in self._window if not ok) / len(self._window)

    def record(self, *, success: bool) -> float:
        """Record an outcome and return the pause to apply (0.0 when closed)."""

        self._window.append(success)
        if len(self._window) < self.window_size:
            return 0.0
        ratio = self.error_ratio
        if ratio <= self.error_threshold:
            return 0.0
        self.trips += 1
        self._window.clear()
        logger.warning(
            "Circuit breaker tripped (error ratio %.0f%%); pausing %.1fs",
            ratio * 100,
            self.pause_seconds,
        )
        return self.pause_seconds
