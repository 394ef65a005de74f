"""Tests for the bandwidth throttle."""

from __future__ import annotations

import threading

import pytest

from cloudsync.sync.throttle import BandwidthThrottle
from conftest import FakeClock, wait_for


def _throttle(limit: int, clock: FakeClock) -> tuple[BandwidthThrottle, list[float]]:
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.sleep(seconds)

    return BandwidthThrottle(limit, window=1.0, clock=clock, sleep=sleep), sleeps


def test_unlimited_never_sleeps(clock: FakeClock) -> None:
    throttle, sleeps = _throttle(0, clock)
    for _ in range(10):
        assert throttle.acquire(10_000_000) == 0.0
    assert sleeps == []


def test_limits_rate(clock: FakeClock) -> None:
    """Three 600 byte chunks at 1000 B/s take 1.2s in total."""
    throttle, sleeps = _throttle(1000, clock)
    start = clock.now

    delays = [throttle.acquire(600) for _ in range(3)]

    assert delays == pytest.approx([0.0, 0.6, 0.6])
    assert sleeps == pytest.approx([0.6, 0.6])
    assert clock.now - start == pytest.approx(1.2)


def test_within_limit_does_not_sleep(clock: FakeClock) -> None:
    throttle, sleeps = _throttle(1000, clock)
    throttle.acquire(400)
    throttle.acquire(400)
    assert sleeps == []


def test_window_expires(clock: FakeClock) -> None:
    throttle, sleeps = _throttle(1000, clock)
    throttle.acquire(900)
    clock.advance(1.5)
    assert throttle.acquire(900) == 0.0
    assert sleeps == []


def test_set_limit(clock: FakeClock) -> None:
    throttle, sleeps = _throttle(1000, clock)
    throttle.acquire(900)
    throttle.set_limit(0)
    assert throttle.limit == 0
    assert throttle.acquire(5000) == 0.0
    throttle.set_limit(-5)
    assert throttle.limit == 0
    assert sleeps == []


def test_sleep_does_not_block_other_callers(clock: FakeClock) -> None:
    """A second caller is admitted while the first sleeps and queues behind it."""
    release = threading.Event()
    sleeps: list[float] = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 1:
            release.wait(timeout=5.0)
        clock.sleep(seconds)

    throttle = BandwidthThrottle(1000, window=1.0, clock=clock, sleep=sleep)
    throttle.acquire(600)

    sleeper = threading.Thread(target=throttle.acquire, args=(600,))
    sleeper.start()
    try:
        assert wait_for(lambda: len(sleeps) == 1, timeout=2.0)
        assert throttle.acquire(600) == pytest.approx(1.2)
    finally:
        release.set()
        sleeper.join(timeout=5.0)

    assert sleeps == pytest.approx([0.6, 1.2])
