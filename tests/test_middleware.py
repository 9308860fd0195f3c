import pytest

from feedback_aggregator.middleware import FixedWindowLimiter


@pytest.mark.asyncio
async def test_limiter_counts_per_client_and_resets():
    limiter = FixedWindowLimiter(limit=2, window=60)

    assert (await limiter.hit("a", 0.0))[0] == 1
    assert (await limiter.hit("a", 10.0))[0] == 2
    count, reset_in = await limiter.hit("a", 20.0)
    assert count == 3
    assert reset_in == 40.0

    assert (await limiter.hit("b", 20.0))[0] == 1
    assert (await limiter.hit("a", 61.0))[0] == 1


@pytest.mark.asyncio
async def test_limiter_purges_idle_clients():
    limiter = FixedWindowLimiter(limit=5, window=60)
    await limiter.hit("idle", 0.0)
    await limiter.hit("busy", 400.0)
    assert "idle" not in limiter._windows
