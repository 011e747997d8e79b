import pytest

from iotca.errors import RateLimited
from iotca.rate_limit import RateLimiter


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit():
    limiter = RateLimiter(3, clock=Clock())
    assert [limiter.allow("c") for _ in range(4)] == [True, True, True, False]
    # other clients are unaffected
    assert limiter.allow("d")


def test_window_slides():
    clock = Clock()
    limiter = RateLimiter(2, window_seconds=60, clock=clock)
    limiter.check("c")
    clock.now += 30
    limiter.check("c")
    blocked = limiter.check("c")
    assert not blocked.allowed
    assert blocked.retry_after == pytest.approx(30)

    clock.now += 31
    result = limiter.check("c")
    assert result.allowed
    assert result.remaining == 0


def test_enforce_raises():
    limiter = RateLimiter(1, clock=Clock())
    limiter.enforce("c", "/connectionRequest")
    with pytest.raises(RateLimited) as exc:
        limiter.enforce("c", "/connectionRequest")
    assert exc.value.status == 429
    assert exc.value.to_dict()["retryAfter"] == pytest.approx(60)


def test_reset_and_cleanup():
    clock = Clock()
    limiter = RateLimiter(1, clock=clock)
    limiter.check("a")
    limiter.check("b")
    limiter.reset("a")
    assert limiter.allow("a")

    clock.now += 120
    assert limiter.cleanup_expired() == 2
    limiter.reset()
    assert limiter.allow("b")
