from __future__ import annotations

import pytest

from selfheal.errors import RateLimitError
from selfheal.generation.ratelimit import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_bucket_raises_immediately_once_empty() -> None:
    clock = FakeClock()
    bucket = TokenBucket(2, 10.0, clock=clock)

    bucket.try_acquire()
    bucket.try_acquire()
    clock.now += 4.0
    with pytest.raises(RateLimitError) as excinfo:
        bucket.try_acquire()

    assert excinfo.value.retry_after == pytest.approx(6.0)
    assert bucket.available() == 0


def test_bucket_refills_when_the_window_elapses() -> None:
    clock = FakeClock()
    bucket = TokenBucket(3, 5.0, clock=clock)
    for _ in range(3):
        bucket.try_acquire()

    clock.now += 5.0

    assert bucket.available() == 3
    bucket.try_acquire()
    assert bucket.available() == 2


def test_refill_skips_whole_idle_windows() -> None:
    clock = FakeClock()
    bucket = TokenBucket(1, 2.0, clock=clock)
    bucket.try_acquire()

    clock.now += 7.5
    bucket.try_acquire()
    clock.now += 0.4

    with pytest.raises(RateLimitError) as excinfo:
        bucket.try_acquire()
    assert excinfo.value.retry_after == pytest.approx(0.1)


def test_buckets_do_not_share_state() -> None:
    clock = FakeClock()
    first = TokenBucket(1, 60.0, clock=clock)
    second = TokenBucket(1, 60.0, clock=clock)

    first.try_acquire()

    assert second.available() == 1


@pytest.mark.parametrize("capacity,window", [(0, 1.0), (1, 0.0)])
def test_bucket_rejects_invalid_settings(capacity: int, window: float) -> None:
    with pytest.raises(ValueError):
        TokenBucket(capacity, window)
