"""Bandwidth limiting for transfers.

This module provides:
- BandwidthThrottle: Rolling-window byte rate limiter

Before each chunk the caller asks the throttle for permission. If the bytes
already sent within the window plus the new chunk would exceed the configured
rate, the throttle sleeps until the effective rate is back at the limit.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 1.0  # seconds


class BandwidthThrottle:
    """Rolling-window bandwidth limiter.

    Usage:
        throttle = BandwidthThrottle(limit=512 * 1024)  # 512 KB/s
        for chunk in chunks:
            throttle.acquire(len(chunk))
            send(chunk)
    """

    def __init__(
        self,
        limit: int = 0,
        window: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the throttle.

        Args:
            limit: Bytes per second (0 = unthrottled).
            window: Length of the rolling window in seconds.
            clock: Monotonic time source.
            sleep: Sleep function (injectable for tests).
        """
        self._limit = limit
        self._window = window
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._samples: deque[tuple[float, int]] = deque()
        self._window_bytes = 0

    @property
    def limit(self) -> int:
        """Configured limit in bytes per second (0 = unthrottled)."""
        return self._limit

    def set_limit(self, limit: int) -> None:
        """Change the limit. Takes effect on the next chunk."""
        with self._lock:
            self._limit = max(0, limit)
            self._samples.clear()
            self._window_bytes = 0

    def acquire(self, nbytes: int) -> float:
        """Account for ``nbytes`` about to be transferred.

        Blocks when sending them now would exceed the limit.

        Args:
            nbytes: Size of the next chunk.

        Returns:
            Seconds slept (0.0 when no throttling was needed).
        """
        with self._lock:
            if self._limit <= 0 or nbytes <= 0:
                return 0.0

            now = self._clock()
            self._expire(now)

            total = self._window_bytes + nbytes
            delay = 0.0
            if total > self._limit * self._window and self._samples:
                # Wait until the bytes already in the window have drained
                # at the limit rate.
                elapsed = now - self._samples[0][0]
                delay = max(0.0, self._window_bytes / self._limit - elapsed)

            # Reserve the slot so concurrent callers queue behind it
            self._samples.append((now + delay, nbytes))
            self._window_bytes += nbytes

        if delay > 0:
            logger.debug("Throttling %d bytes for %.3fs", nbytes, delay)
            self._sleep(delay)
        return delay

    def _expire(self, now: float) -> None:
        while self._samples and now - self._samples[0][0] >= self._window:
            _, size = self._samples.popleft()
            self._window_bytes -= size
