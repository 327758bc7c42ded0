import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from rate_limiter import SlidingWindowRateLimiter, rate_limit_headers  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_limit_is_enforced_per_identifier():
    async def scenario():
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(3, 60, clock=clock)
        results = [await limiter.check("webhook:doordash") for _ in range(4)]
        other = await limiter.check("webhook:instacart")
        return results, other

    results, other = asyncio.run(scenario())
    assert [r.success for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert other.success


def test_window_slides_and_rejections_do_not_consume():
    async def scenario():
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, 60, clock=clock)
        await limiter.check("u1")
        clock.now += 30
        await limiter.check("u1")
        for _ in range(5):
            assert not (await limiter.check("u1")).success
        clock.now += 31
        # the first hit has left the window; the rejected ones never entered it
        first = await limiter.check("u1")
        second = await limiter.check("u1")
        await limiter.reset("u1")
        after_reset = await limiter.check("u1")
        return first, second, after_reset

    first, second, after_reset = asyncio.run(scenario())
    assert first.success
    assert not second.success
    assert after_reset.success


def test_headers_include_retry_after_only_on_rejection():
    async def scenario():
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(1, 60, clock=clock)
        return await limiter.check("k"), await limiter.check("k")

    allowed, rejected = asyncio.run(scenario())
    headers = rate_limit_headers(allowed, now=1000.0)
    assert headers == {"X-RateLimit-Limit": "1", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "1060"}
    headers = rate_limit_headers(rejected, now=1015.5)
    assert headers["Retry-After"] == "45"
    assert rejected.retry_after(1060.0) == 1
