# src/market_sync/connection/rate_limiter.py

import threading
import time
from typing import Callable


class RateLimiter:
    """
    Spaces calls so that at most ``calls_per_second`` go out, shared by every
    thread that issues REST requests.
    """
    def __init__(
        self,
        calls_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if calls_per_second <= 0:
            raise ValueError("Rate must be positive")
        self.rate = calls_per_second
        self.interval = 1.0 / self.rate
        self.last_call_time = float("-inf")
        self._clock = clock
        self._sleep = sleep
        self.lock = threading.Lock()

    def wait(self) -> float:
        """
        Blocks until it is safe to make the next call. Returns the time slept.
        """
        with self.lock:
            now = self._clock()
            elapsed = now - self.last_call_time

            if elapsed < self.interval:
                sleep_time = self.interval - elapsed
                self._sleep(sleep_time)
                # Anchor to the ideal schedule so short sleeps do not accumulate drift.
                self.last_call_time = max(self.last_call_time + self.interval, self._clock())
                return sleep_time

            self.last_call_time = now
            return 0.0
