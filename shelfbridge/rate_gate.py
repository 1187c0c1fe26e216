"""
Rate Gate - Concurrency and request-rate control for one remote service

Every call to a remote service goes through that service's gate. The gate
first takes a concurrency slot, then waits for room in the per-minute window.
"""

import logging
import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Callable, Deque, Dict, Iterator, Optional

WINDOW_SECONDS = 60.0
WARNING_UTILIZATION = 0.8


class ConcurrencyLimiter:
    """Counting limiter that hands freed slots to waiters in arrival order"""

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.max_concurrency = max_concurrency
        self.active = 0
        self._lock = threading.Lock()
        self._waiters: Deque[threading.Event] = deque()

    def acquire(self) -> None:
        with self._lock:
            if self.active < self.max_concurrency and not self._waiters:
                self.active += 1
                return
            waiter = threading.Event()
            self._waiters.append(waiter)

        # release() transfers its slot to us, so active is already counted
        waiter.wait()

    def release(self) -> None:
        with self._lock:
            if self._waiters:
                self._waiters.popleft().set()
                return

            if self.active <= 0:
                raise RuntimeError("release() called without a matching acquire()")
            self.active -= 1

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiters)


class RateLimiter:
    """Sliding-window limiter: at most N admissions in any 60 second window"""

    def __init__(
        self,
        max_requests_per_minute: int,
        name: str = "api",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be at least 1")

        self.max_requests = max_requests_per_minute
        self.name = name
        self.requests: Deque[float] = deque()
        self.logger = logging.getLogger(__name__)

        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._warn_at = max(1, math.ceil(max_requests_per_minute * WARNING_UTILIZATION))

        self.total_requests = 0
        self.total_waits = 0
        self.total_wait_time = 0.0

    def _prune(self, now: float) -> None:
        while self.requests and now - self.requests[0] >= WINDOW_SECONDS:
            self.requests.popleft()

    def wait_if_needed(self) -> float:
        """
        Block until the window has room, then record the request

        Returns:
            Seconds spent waiting
        """
        attempt = 0
        waited = 0.0

        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)

                if len(self.requests) < self.max_requests:
                    self.requests.append(now)
                    self.total_requests += 1
                    if waited:
                        self.total_waits += 1
                        self.total_wait_time += waited

                    if len(self.requests) == self._warn_at:
                        self.logger.warning(
                            f"⚠️ {self.name} rate limit at {len(self.requests)}/{self.max_requests} "
                            f"requests in the last minute"
                        )
                    return waited

                wait_time = max(WINDOW_SECONDS - (now - self.requests[0]), 0.01)
                in_window = len(self.requests)

            attempt += 1
            self.logger.info(
                f"⏳ {self.name} rate limit reached ({in_window}/{self.max_requests}), "
                f"waiting {wait_time:.1f}s (attempt {attempt})"
            )
            self._sleep(wait_time)
            waited += wait_time

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            in_window = len(self.requests)

        return {
            "name": self.name,
            "requests_last_minute": in_window,
            "max_requests_per_minute": self.max_requests,
            "utilization_percent": round(in_window / self.max_requests * 100, 1),
            "total_requests": self.total_requests,
            "total_waits": self.total_waits,
            "total_wait_seconds": round(self.total_wait_time, 2),
        }


class RateGate:
    """Concurrency limiter and rate limiter for one remote service"""

    def __init__(
        self,
        name: str,
        max_concurrency: int = 1,
        max_requests_per_minute: int = 60,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.concurrency = ConcurrencyLimiter(max_concurrency)
        self.rate_limiter = RateLimiter(
            max_requests_per_minute, name=name, clock=clock, sleep=sleep
        )

    @classmethod
    def from_config(cls, name: str, settings: Optional[Dict[str, Any]]) -> "RateGate":
        settings = settings or {}
        return cls(
            name,
            max_concurrency=int(settings.get("max_concurrency", 1)),
            max_requests_per_minute=int(settings.get("requests_per_minute", 60)),
        )

    @contextmanager
    def slot(self) -> Iterator["RateGate"]:
        self.concurrency.acquire()
        try:
            self.rate_limiter.wait_if_needed()
            yield self
        finally:
            self.concurrency.release()

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        with self.slot():
            return fn(*args, **kwargs)

    def stats(self) -> Dict[str, Any]:
        stats = self.rate_limiter.stats()
        stats["max_concurrency"] = self.concurrency.max_concurrency
        stats["active"] = self.concurrency.active
        return stats
