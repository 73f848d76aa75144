# tests/services/test_rate_limit.py
"""Tests for the fixed-window write limiter."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from celofx_gate.core.exceptions import RateStoreUnavailableError
from celofx_gate.services.rate_limit import (
    FallbackRateBucketStore,
    LocalRateBucketStore,
    RateLimiter,
    RedisRateBucketStore,
    build_rate_limiter,
)
from tests.conftest import make_settings


@pytest.fixture()
def store() -> LocalRateBucketStore:
    return LocalRateBucketStore()


@pytest.fixture()
def limiter(store, clock) -> RateLimiter:
    return RateLimiter(store, clock=clock.seconds)


def _redis_client(writes: int) -> MagicMock:
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[writes, True])
    client = MagicMock()
    client.pipeline.return_value = pipe
    client.get = AsyncMock(return_value=str(writes).encode())
    client.aclose = AsyncMock()
    return client


class TestWriteBudget:
    """Two writes per caller per window; the third is refused."""

    @pytest.mark.asyncio
    async def test_third_write_in_window_refused(self, limiter, clock):
        first = await limiter.check("POST", "1.2.3.4")
        second = await limiter.check("POST", "1.2.3.4")
        third = await limiter.check("POST", "1.2.3.4")

        assert first.allowed and second.allowed
        assert first.remaining == 1
        assert second.remaining == 0
        assert third.allowed is False
        assert 0 < third.retry_after <= 30

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, clock):
        for _ in range(3):
            await limiter.check("POST", "1.2.3.4")
        clock.advance(30_000)
        decision = await limiter.check("POST", "1.2.3.4")
        assert decision.allowed is True
        assert decision.remaining == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    async def test_reads_never_counted_or_refused(self, limiter, store, method):
        for _ in range(5):
            decision = await limiter.check(method, "1.2.3.4")
            assert decision.allowed is True
            assert decision.remaining == 2
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_reads_allowed_after_budget_spent(self, limiter):
        for _ in range(3):
            await limiter.check("DELETE", "1.2.3.4")
        decision = await limiter.check("GET", "1.2.3.4")
        assert decision.allowed is True
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_callers_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("POST", "1.1.1.1")
        decision = await limiter.check("POST", "2.2.2.2")
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_headers_reflect_decision(self, limiter, clock):
        allowed = await limiter.check("POST", "1.2.3.4")
        headers = allowed.headers()
        assert headers["X-RateLimit-Limit"] == "2"
        assert headers["X-RateLimit-Remaining"] == "1"
        assert headers["X-RateLimit-Reset"] == str(clock.seconds() + 30)
        assert headers["X-RateLimit-Window"] == "30s"
        assert "Retry-After" not in headers
        assert "X-RateLimit-Remaining" in headers["Access-Control-Expose-Headers"]

        await limiter.check("POST", "1.2.3.4")
        refused = (await limiter.check("POST", "1.2.3.4")).headers()
        assert refused["Retry-After"] == "30"
        assert "Retry-After" in refused["Access-Control-Expose-Headers"]


class TestCallerKey:
    """Caller identity comes from the first forwarded address."""

    @pytest.mark.parametrize(
        "headers, expected",
        [
            ({"X-Forwarded-For": "9.9.9.9, 10.0.0.1"}, "9.9.9.9"),
            ({"x-forwarded-for": " 8.8.8.8 "}, "8.8.8.8"),
            ({"X-Forwarded-For": ""}, "unknown"),
            ({"X-Forwarded-For": " , 1.1.1.1"}, "unknown"),
            ({}, "unknown"),
        ],
    )
    def test_caller_key_for(self, headers, expected):
        assert RateLimiter.caller_key_for(headers) == expected


class TestLocalStore:
    """The in-process table prunes expired buckets."""

    @pytest.mark.asyncio
    async def test_expired_buckets_pruned_past_threshold(self, clock):
        store = LocalRateBucketStore(cleanup_threshold=3)
        limiter = RateLimiter(store, clock=clock.seconds)
        for caller in ("a", "b", "c"):
            await limiter.check("POST", caller)
        clock.advance(31_000)
        await limiter.check("POST", "d")
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_returned_bucket_is_a_copy(self, store, clock):
        bucket = await store.hit("a", clock.seconds(), 30, count=True)
        bucket.write_count = 99
        again = await store.hit("a", clock.seconds(), 30, count=False)
        assert again.write_count == 1


class TestRemoteStores:
    """Redis buckets and the fallback chain."""

    @pytest.mark.asyncio
    async def test_redis_write_uses_aligned_window_key(self):
        client = _redis_client(writes=3)
        store = RedisRateBucketStore(client)

        bucket = await store.hit("1.2.3.4", 1_000_015, 30, count=True)

        pipe = client.pipeline.return_value
        pipe.incr.assert_called_once_with("ratelimit:1.2.3.4:999990")
        pipe.expire.assert_called_once_with("ratelimit:1.2.3.4:999990", 30)
        assert bucket.write_count == 3
        assert bucket.window_start_epoch_sec == 999_990

    @pytest.mark.asyncio
    async def test_redis_peek_does_not_increment(self):
        client = _redis_client(writes=1)
        store = RedisRateBucketStore(client)

        bucket = await store.hit("1.2.3.4", 1_000_015, 30, count=False)

        client.pipeline.assert_not_called()
        client.get.assert_awaited_once_with("ratelimit:1.2.3.4:999990")
        assert bucket.write_count == 1

    @pytest.mark.asyncio
    async def test_redis_errors_wrapped(self):
        client = _redis_client(writes=0)
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        with pytest.raises(RateStoreUnavailableError):
            await RedisRateBucketStore(client).hit("k", 100, 30, count=True)

    @pytest.mark.asyncio
    async def test_fallback_to_local_when_redis_down(self, clock):
        client = _redis_client(writes=0)
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        local = LocalRateBucketStore()
        limiter = RateLimiter(
            FallbackRateBucketStore([RedisRateBucketStore(client), local]),
            clock=clock.seconds,
        )

        decisions = [await limiter.check("POST", "1.2.3.4") for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert len(local) == 1

    @pytest.mark.asyncio
    async def test_fallback_raises_when_nothing_answers(self):
        client = _redis_client(writes=0)
        client.pipeline.return_value.execute.side_effect = RedisConnectionError("down")
        store = FallbackRateBucketStore([RedisRateBucketStore(client)])
        with pytest.raises(RateStoreUnavailableError):
            await store.hit("k", 100, 30, count=True)

    def test_fallback_requires_a_store(self):
        with pytest.raises(ValueError):
            FallbackRateBucketStore([])


def test_build_rate_limiter_from_settings(clock):
    limiter = build_rate_limiter(
        make_settings(RATE_LIMIT_MAX_WRITES=5, RATE_LIMIT_WINDOW_SECONDS=60),
        clock=clock.seconds,
    )
    assert limiter.max_writes == 5
    assert limiter.window_seconds == 60
    assert isinstance(limiter.store, LocalRateBucketStore)

    chained = build_rate_limiter(make_settings(RATE_LIMIT_REDIS_URL="redis://localhost:6379/1"))
    assert isinstance(chained.store, FallbackRateBucketStore)
    assert [store.name for store in chained.store.stores] == ["redis", "local"]
