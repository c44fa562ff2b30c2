"""Tests for the request rate limiter."""
from __future__ import annotations

from unittest.mock import Mock

import redis

from salonbook.rate_limit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_limit_applies_per_key_and_window_slides() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    assert all(limiter.hit("a", 3, 60) for _ in range(3))
    assert not limiter.hit("a", 3, 60)
    assert limiter.hit("b", 3, 60)

    clock.now = 60
    assert limiter.hit("a", 3, 60)


def test_reset_forgets_everything() -> None:
    limiter = RateLimiter(clock=FakeClock())
    limiter.hit("a", 1, 60)

    limiter.reset()

    assert limiter.hit("a", 1, 60)


def test_idle_keys_are_evicted() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    for index in range(200):
        limiter.hit(f"client-{index}", 5, 60)
    assert limiter.tracked_keys() == 200

    clock.now = 600
    limiter.hit("late", 5, 60)

    assert limiter.tracked_keys() == 1


def test_redis_counter_is_shared_and_expires_with_the_window() -> None:
    client = Mock()
    limiter = RateLimiter(clock=FakeClock())
    limiter.use_redis(client)

    client.incr.return_value = 1
    assert limiter.hit("checkout:1.2.3.4:1", 2, 60)
    client.expire.assert_called_once_with("ratelimit:checkout:1.2.3.4:1", 60)

    client.incr.return_value = 3
    assert not limiter.hit("checkout:1.2.3.4:1", 2, 60)
    assert client.expire.call_count == 1


def test_redis_failure_lets_requests_through() -> None:
    client = Mock()
    client.incr.side_effect = redis.ConnectionError("down")
    limiter = RateLimiter(clock=FakeClock())
    limiter.use_redis(client)

    assert limiter.hit("pin:1:2", 1, 300)
