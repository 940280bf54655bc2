from wellcoach.utils.rate_limit import RateLimiter

from .conftest import FakeClock


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock(1000.0)
    limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)

    results = [limiter.check('caller-a') for _ in range(4)]

    assert [result.allowed for result in results] == [True, True, True, False]
    assert [result.remaining for result in results] == [2, 1, 0, 0]
    assert results[-1].headers() == {'X-RateLimit-Remaining': '0', 'X-RateLimit-Reset': '1060'}


def test_callers_have_separate_windows():
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
    assert limiter.check('caller-a').allowed
    assert limiter.check('caller-b').allowed
    assert not limiter.check('caller-a').allowed


def test_window_resets_after_expiry():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
    limiter.check('caller-a')
    assert not limiter.check('caller-a').allowed

    clock.advance(61)
    result = limiter.check('caller-a')
    assert result.allowed
    assert result.remaining == 0


def test_stale_windows_are_swept():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock)
    for index in range(10):
        limiter.check(f'caller-{index}')

    clock.advance(120)
    limiter.check('caller-new')
    assert list(limiter._windows) == ['caller-new']
