"""
Tests for the fixed-window rate limiter.
"""
import httpx
import pytest

from clubsync.engine.api_client import ApiClient
from clubsync.engine.errors import RateLimited
from clubsync.engine.rate_limit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestRateLimiter:

    def test_allows_up_to_maximum(self):
        limiter = RateLimiter(max_actions=3, window_seconds=60, clock=FakeClock())

        assert [limiter.allow("room:R1:send") for _ in range(4)] == [True, True, True, False]

    def test_window_resets_after_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(max_actions=1, window_seconds=10, clock=clock)

        assert limiter.allow("k") is True
        assert limiter.allow("k") is False
        clock.now += 10
        assert limiter.allow("k") is True

    def test_keys_are_independent(self):
        limiter = RateLimiter(max_actions=1, window_seconds=60, clock=FakeClock())

        assert limiter.allow("room:R1:react") is True
        assert limiter.allow("room:R2:react") is True
        assert limiter.allow("room:R1:react") is False

    def test_remaining_and_reset(self):
        limiter = RateLimiter(max_actions=2, window_seconds=60, clock=FakeClock())
        limiter.allow("k")

        assert limiter.remaining("k") == 1
        limiter.reset("k")
        assert limiter.remaining("k") == 2

    def test_expired_windows_are_pruned(self):
        clock = FakeClock()
        limiter = RateLimiter(max_actions=5, window_seconds=10, clock=clock)
        for i in range(50):
            limiter.allow(f"key-{i}")
        assert len(limiter) == 50

        clock.now += 10
        limiter.allow("fresh")

        assert len(limiter) == 1


class TestApiLimitKeys:

    @pytest.mark.asyncio
    async def test_confirmations_share_one_window_per_room(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        limiter = RateLimiter(max_actions=2, window_seconds=60, clock=FakeClock())
        api = ApiClient("http://api.test", limiter=limiter, transport=httpx.MockTransport(handler))

        await api.confirm_edit("R1", "m1", "one", "op1")
        await api.confirm_edit("R1", "m2", "two", "op2")
        with pytest.raises(RateLimited):
            await api.confirm_edit("R1", "m3", "three", "op3")
        await api.confirm_edit("R2", "m4", "four", "op4")

        assert len(limiter) == 2
