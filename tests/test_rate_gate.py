"""Tests for the rate gate: concurrency limiting and the sliding request window"""

import logging
import threading
import time

import pytest

from shelfbridge.rate_gate import ConcurrencyLimiter, RateGate, RateLimiter


class FakeClock:
    """Manually advanced clock; sleeping moves time forward"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.005)


class TestRateLimiter:
    """Sliding 60 second window"""

    def test_admits_up_to_limit_without_waiting(self):
        clock = FakeClock()
        limiter = RateLimiter(3, clock=clock, sleep=clock.sleep)

        assert [limiter.wait_if_needed() for _ in range(3)] == [0.0, 0.0, 0.0]
        assert clock.sleeps == []
        assert limiter.total_requests == 3

    def test_waits_for_oldest_request_to_leave_window(self):
        clock = FakeClock()
        limiter = RateLimiter(3, clock=clock, sleep=clock.sleep)

        for at in (0.0, 10.0, 20.0):
            clock.now = at
            limiter.wait_if_needed()

        clock.now = 30.0
        waited = limiter.wait_if_needed()

        assert waited == pytest.approx(30.0)
        assert clock.now == pytest.approx(60.0)
        assert limiter.total_waits == 1
        assert limiter.total_wait_time == pytest.approx(30.0)
        assert list(limiter.requests) == [10.0, 20.0, 60.0]

    def test_window_never_exceeds_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(5, clock=clock, sleep=clock.sleep)
        admitted = []

        for _ in range(23):
            limiter.wait_if_needed()
            admitted.append(clock.now)
            clock.now += 1.0

        for start in admitted:
            in_window = [t for t in admitted if start <= t < start + 60.0]
            assert len(in_window) <= 5

    def test_warns_at_eighty_percent(self, caplog):
        clock = FakeClock()
        limiter = RateLimiter(5, name="hardcover", clock=clock, sleep=clock.sleep)

        with caplog.at_level(logging.WARNING, logger="shelfbridge.rate_gate"):
            for _ in range(3):
                limiter.wait_if_needed()
            assert not caplog.records

            limiter.wait_if_needed()

        assert len(caplog.records) == 1
        assert "hardcover rate limit at 4/5" in caplog.records[0].getMessage()

    def test_stats(self):
        clock = FakeClock()
        limiter = RateLimiter(4, name="abs", clock=clock, sleep=clock.sleep)
        limiter.wait_if_needed()
        limiter.wait_if_needed()

        stats = limiter.stats()
        assert stats["name"] == "abs"
        assert stats["requests_last_minute"] == 2
        assert stats["utilization_percent"] == 50.0
        assert stats["total_requests"] == 2

        clock.now = 61.0
        assert limiter.stats()["requests_last_minute"] == 0

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(0)


class TestConcurrencyLimiter:
    """Counting limiter with FIFO hand-off"""

    def test_blocks_when_full(self):
        limiter = ConcurrencyLimiter(1)
        limiter.acquire()
        acquired = threading.Event()

        def worker():
            limiter.acquire()
            acquired.set()
            limiter.release()

        thread = threading.Thread(target=worker)
        thread.start()
        wait_until(lambda: limiter.waiting == 1)
        assert not acquired.is_set()

        limiter.release()
        thread.join(timeout=2)
        assert acquired.is_set()
        assert limiter.active == 0

    def test_waiters_served_in_arrival_order(self):
        limiter = ConcurrencyLimiter(1)
        limiter.acquire()
        order = []

        def worker(name):
            limiter.acquire()
            order.append(name)
            limiter.release()

        first = threading.Thread(target=worker, args=("first",))
        first.start()
        wait_until(lambda: limiter.waiting == 1)
        second = threading.Thread(target=worker, args=("second",))
        second.start()
        wait_until(lambda: limiter.waiting == 2)

        limiter.release()
        first.join(timeout=2)
        second.join(timeout=2)

        assert order == ["first", "second"]
        assert limiter.active == 0

    def test_release_without_acquire(self):
        limiter = ConcurrencyLimiter(2)
        with pytest.raises(RuntimeError):
            limiter.release()

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)


class TestRateGate:
    """Gate combining both limiters"""

    def test_slot_counts_active_and_releases(self):
        clock = FakeClock()
        gate = RateGate("abs", max_concurrency=2, max_requests_per_minute=10, clock=clock, sleep=clock.sleep)

        with gate.slot():
            assert gate.concurrency.active == 1
        assert gate.concurrency.active == 0

        stats = gate.stats()
        assert stats["max_concurrency"] == 2
        assert stats["active"] == 0
        assert stats["total_requests"] == 1

    def test_slot_released_on_error(self):
        gate = RateGate("abs", max_concurrency=1)

        with pytest.raises(ZeroDivisionError):
            with gate.slot():
                1 / 0

        assert gate.concurrency.active == 0

    def test_call_passes_arguments(self):
        gate = RateGate("abs", max_concurrency=1)
        assert gate.call(lambda a, b=0: a + b, 2, b=3) == 5

    def test_from_config(self):
        gate = RateGate.from_config(
            "hardcover", {"max_concurrency": 2, "requests_per_minute": 30}
        )
        assert gate.concurrency.max_concurrency == 2
        assert gate.rate_limiter.max_requests == 30

        defaults = RateGate.from_config("hardcover", None)
        assert defaults.concurrency.max_concurrency == 1
        assert defaults.rate_limiter.max_requests == 60

    def test_concurrency_bound_under_load(self):
        gate = RateGate("abs", max_concurrency=2, max_requests_per_minute=1000)
        lock = threading.Lock()
        current = [0]
        peak = [0]

        def work():
            with gate.slot():
                with lock:
                    current[0] += 1
                    peak[0] = max(peak[0], current[0])
                time.sleep(0.02)
                with lock:
                    current[0] -= 1

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert peak[0] <= 2
        assert gate.rate_limiter.total_requests == 8
