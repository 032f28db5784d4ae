"""
Tests for sliding-window admission control and its degraded mode.
"""

from unittest.mock import Mock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from acceptance_api.config import Settings
from acceptance_api.rate_limiter import (
    SUBMISSION,
    MemoryRateLimitStore,
    RateLimitProfile,
    RateLimiter,
    RedisRateLimitStore,
    build_profiles,
    build_rate_limiter,
)


class MutableClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return MutableClock()


def limiter_with(store, clock, max_requests=3, window=60, fallback_max=2):
    return RateLimiter(
        store,
        {"test": RateLimitProfile("test", max_requests, window)},
        fallback_store=MemoryRateLimitStore(),
        fallback_max_requests=fallback_max,
        clock=clock,
    )


class TestSlidingWindow:
    def test_rejects_request_over_limit(self, clock):
        limiter = limiter_with(MemoryRateLimitStore(), clock)

        results = []
        for _ in range(4):
            results.append(limiter.allow("test", "client-a"))
            clock.now += 5

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]
        rejected = results[3]
        # Oldest at 1000, now 1015
        assert rejected.retry_after == 45
        assert rejected.headers()["Retry-After"] == "45"
        assert rejected.headers()["X-RateLimit-Limit"] == "3"

    def test_allows_again_once_oldest_leaves_window(self, clock):
        limiter = limiter_with(MemoryRateLimitStore(), clock)
        for _ in range(3):
            limiter.allow("test", "client-a")
        assert limiter.allow("test", "client-a").allowed is False

        clock.now += 60

        assert limiter.allow("test", "client-a").allowed is True

    def test_clients_are_independent(self, clock):
        limiter = limiter_with(MemoryRateLimitStore(), clock, max_requests=1)

        assert limiter.allow("test", "client-a").allowed is True
        assert limiter.allow("test", "client-b").allowed is True
        assert limiter.allow("test", "client-a").allowed is False

    def test_unknown_limiter_name(self, clock):
        limiter = limiter_with(MemoryRateLimitStore(), clock)

        with pytest.raises(ValueError):
            limiter.allow("nope", "client-a")

    def test_allowed_result_has_no_retry_after(self, clock):
        result = limiter_with(MemoryRateLimitStore(), clock).allow("test", "client-a")

        assert "Retry-After" not in result.headers()
        assert result.headers()["X-RateLimit-Reset"] == "1060"


class TestMemoryStore:
    def test_sweep_drops_stale_keys(self):
        store = MemoryRateLimitStore()
        store.hit("old", 5, 10, now=100.0)
        store.hit("fresh", 5, 10, now=105.0)

        removed = store.sweep(now=111.0)

        assert removed == 1
        assert len(store) == 1

    def test_sweep_thread_starts_and_stops(self):
        store = MemoryRateLimitStore(sweep_interval_seconds=0.01)
        store.start()
        store.stop()

        assert store._thread is None


class TestDegradedMode:
    def test_store_failure_falls_back_to_stricter_budget(self, clock):
        store = Mock()
        store.hit.side_effect = RedisConnectionError("connection refused")
        limiter = limiter_with(store, clock, max_requests=10, fallback_max=2)

        results = [limiter.allow("test", "client-a") for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert all(r.degraded for r in results)
        assert results[0].limit == 2
        assert results[0].headers()["X-RateLimit-Degraded"] == "true"

    def test_redis_timeout_is_degraded(self, clock):
        redis_client = Mock()
        redis_client.register_script.return_value = Mock(side_effect=RedisTimeoutError("timed out"))
        limiter = limiter_with(RedisRateLimitStore(redis_client), clock)

        result = limiter.allow("test", "client-a")

        assert result.allowed is True
        assert result.degraded is True

    def test_fallback_limit_never_exceeds_profile(self, clock):
        store = Mock()
        store.hit.side_effect = RedisConnectionError("down")
        limiter = limiter_with(store, clock, max_requests=1, fallback_max=3)

        assert limiter.allow("test", "client-a").limit == 1


class TestRedisStore:
    def test_single_script_call_per_check(self, clock):
        script = Mock(return_value=[1, 1, b"1000000"])
        redis_client = Mock()
        redis_client.register_script.return_value = script
        limiter = limiter_with(RedisRateLimitStore(redis_client, expiry_grace_seconds=60), clock)

        result = limiter.allow("test", "client-a")

        assert result.allowed is True
        assert result.remaining == 2
        assert result.reset_at == 1060.0
        script.assert_called_once()
        kwargs = script.call_args.kwargs
        assert kwargs["keys"] == ["ratelimit:test:client-a"]
        now_ms, window_ms, max_requests, _member, expire_ms = kwargs["args"]
        assert (now_ms, window_ms, max_requests, expire_ms) == (1_000_000, 60_000, 3, 120_000)

    def test_rejection_from_script(self, clock):
        script = Mock(return_value=[0, 3, b"990000"])
        redis_client = Mock()
        redis_client.register_script.return_value = script
        limiter = limiter_with(RedisRateLimitStore(redis_client), clock)

        result = limiter.allow("test", "client-a")

        assert result.allowed is False
        assert result.retry_after == 50

    def test_sliding_window_script_against_redis(self, clock):
        redis_client = fakeredis.FakeRedis()
        limiter = limiter_with(RedisRateLimitStore(redis_client, expiry_grace_seconds=60), clock)

        results = []
        for _ in range(4):
            results.append(limiter.allow("test", "client-a"))
            clock.now += 5

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert not any(r.degraded for r in results)
        # Oldest at 1000, now 1015
        assert results[3].retry_after == 45
        assert redis_client.zcard("ratelimit:test:client-a") == 3
        assert 0 < redis_client.pttl("ratelimit:test:client-a") <= 120_000

        clock.now = 1_061.0
        recovered = limiter.allow("test", "client-a")

        assert recovered.allowed is True
        # 1000 trimmed, 1005 and 1010 remain alongside the new entry
        assert recovered.remaining == 0
        assert recovered.reset_at == 1_065.0

    def test_script_keys_are_per_client(self, clock):
        limiter = limiter_with(RedisRateLimitStore(fakeredis.FakeRedis()), clock, max_requests=1)

        assert limiter.allow("test", "client-a").allowed is True
        assert limiter.allow("test", "client-b").allowed is True
        assert limiter.allow("test", "client-a").allowed is False


class TestConfiguration:
    def test_profiles_from_settings(self):
        profiles = build_profiles(Settings(rate_limit_submission_max=7))

        assert profiles[SUBMISSION].max_requests == 7
        assert profiles[SUBMISSION].window_seconds == 3600

    def test_memory_backend_by_default(self):
        assert build_rate_limiter(Settings()).backend == "memory"

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValueError):
            build_rate_limiter(Settings(rate_limit_backend="redis", redis_url=None))

    def test_redis_backend_with_client(self):
        redis_client = Mock()
        limiter = build_rate_limiter(Settings(rate_limit_backend="redis"), redis_client=redis_client)

        assert limiter.backend == "redis"
        redis_client.register_script.assert_called_once()
