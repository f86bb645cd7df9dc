import pytest

from rate_limit import SlidingWindowRateLimiter, is_internal_address


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    "address, internal",
    [
        ("127.0.0.1", True),
        ("::1", True),
        ("::ffff:127.0.0.1", True),
        ("172.17.0.5", True),
        ("172.31.255.255", True),
        ("172.32.0.1", False),
        ("10.0.0.1", False),
        ("203.0.113.9", False),
        ("testclient", False),
        (None, False),
    ],
)
def test_internal_addresses(address, internal) -> None:
    assert is_internal_address(address) is internal


def test_budget_is_enforced_within_window() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=60, budget=2, internal_budget=5, clock=clock)

    first = limiter.hit("203.0.113.9")
    second = limiter.hit("203.0.113.9")
    third = limiter.hit("203.0.113.9")

    assert first.allowed and second.allowed
    assert (first.remaining, second.remaining) == (1, 0)
    assert not third.allowed
    assert third.limit == 2
    assert third.reset_seconds == 60

    assert limiter.hit("198.51.100.1").allowed


def test_window_slides() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(window_seconds=60, budget=1, clock=clock)
    assert limiter.hit("203.0.113.9").allowed
    clock.now += 30
    denied = limiter.hit("203.0.113.9")
    assert not denied.allowed
    assert denied.reset_seconds == 30
    clock.now += 31
    assert limiter.hit("203.0.113.9").allowed


def test_internal_callers_get_the_larger_budget() -> None:
    limiter = SlidingWindowRateLimiter(budget=1, internal_budget=3, clock=FakeClock())
    assert limiter.budget_for("127.0.0.1") == 3
    assert [limiter.hit("127.0.0.1").allowed for _ in range(4)] == [True, True, True, False]
