"""Client-side call pacing.

A ``Pacer`` is a token-bucket rate limiter. The engine keeps separate pacers
for API calls, download URL lookups, and object-storage part traffic, so bulk
part uploads never starve metadata calls.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from driveupload import constants as c

logger = logging.getLogger(__name__)

__all__ = ["Pacer", "Pacers"]


class Pacer:
    """Token-bucket rate limiter.

    Thread-safe. ``min_sleep`` is the steady-state spacing between calls;
    ``burst`` lets that many calls through back to back.

    Example:
        pacer = Pacer(min_sleep=0.2)
        pacer.acquire()
        listing = client.list_page(dir_id, offset)
    """

    def __init__(
        self,
        min_sleep: float,
        *,
        burst: int = 1,
        name: str = "pacer",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.rate = 1.0 / min_sleep if min_sleep > 0 else float("inf")
        self.burst = max(1, burst)
        self.tokens = float(self.burst)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self._lock = threading.Lock()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take a token, blocking until one is available.

        Args:
            timeout: Maximum time to wait (None = wait forever)

        Returns:
            True if a token was taken, False if the timeout expired
        """
        start = self._clock()
        while True:
            with self._lock:
                self._refill()
                if self.tokens >= 1:
                    self.tokens -= 1
                    return True
                wait_time = (1 - self.tokens) / self.rate

            if timeout is not None and self._clock() - start + wait_time > timeout:
                return False
            self._sleep(min(wait_time, 0.1))

    def _refill(self) -> None:
        if self.rate == float("inf"):
            self.tokens = float(self.burst)
            return
        now = self._clock()
        self.tokens = min(self.burst, self.tokens + (now - self.last_update) * self.rate)
        self.last_update = now


@dataclass
class Pacers:
    """The pacers shared by one client."""

    api: Pacer
    download: Pacer
    upload: Pacer

    @classmethod
    def create(
        cls,
        *,
        api_min_sleep: float = c.DEFAULT_API_MIN_SLEEP,
        download_min_sleep: float = c.DEFAULT_DOWNLOAD_MIN_SLEEP,
        upload_min_sleep: float = c.DEFAULT_UPLOAD_MIN_SLEEP,
        upload_burst: int = c.DEFAULT_UPLOAD_CONCURRENCY,
    ) -> "Pacers":
        return cls(
            api=Pacer(api_min_sleep, name="api"),
            download=Pacer(download_min_sleep, name="download"),
            upload=Pacer(upload_min_sleep, burst=upload_burst, name="upload"),
        )
