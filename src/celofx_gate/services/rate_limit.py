"""Fixed-window rate limiting for mutating API requests."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from threading import Lock
from typing import Final

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from celofx_gate.core.clock import SecondsClock, now_seconds
from celofx_gate.core.exceptions import RateStoreUnavailableError
from celofx_gate.core.settings import Settings

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW_SECONDS: Final[int] = 30
RATE_LIMIT_MAX_WRITES: Final[int] = 2
CLEANUP_THRESHOLD: Final[int] = 200
UNKNOWN_CALLER: Final[str] = "unknown"
SAFE_METHODS: Final[frozenset[str]] = frozenset({"GET", "HEAD", "OPTIONS"})

RATE_LIMIT_HEADERS: Final[tuple[str, ...]] = (
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
    "X-RateLimit-Window",
)


def is_mutating(method: str) -> bool:
    return method.upper() not in SAFE_METHODS


@dataclass
class RateBucket:
    """Write counter for one caller within one window."""

    caller_key: str
    window_start_epoch_sec: int
    write_count: int = 0

    def reset_at(self, window_seconds: int) -> int:
        return self.window_start_epoch_sec + window_seconds

    def expired(self, now: int, window_seconds: int) -> bool:
        return now >= self.reset_at(window_seconds)


@dataclass(frozen=True)
class RateDecision:
    """Result of a rate-limit check, including response metadata."""

    allowed: bool
    limit: int
    remaining: int
    reset_epoch_sec: int
    window_seconds: int
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        """Return the metadata headers attached to every API response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch_sec),
            "X-RateLimit-Window": f"{self.window_seconds}s",
        }
        exposed = list(RATE_LIMIT_HEADERS)
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
            exposed.append("Retry-After")
        headers["Access-Control-Expose-Headers"] = ", ".join(exposed)
        return headers


class RateBucketStore(ABC):
    """Storage for per-caller fixed-window buckets."""

    name: str = "store"

    @abstractmethod
    async def hit(
        self,
        caller_key: str,
        now: int,
        window_seconds: int,
        *,
        count: bool,
    ) -> RateBucket:
        """Return the caller's current bucket, incrementing it when ``count``.

        A peek (``count=False``) never creates a bucket.

        Raises:
            RateStoreUnavailableError: If the backend cannot answer.
        """

    async def aclose(self) -> None:  # noqa: B027 - optional hook
        """Release any network resources held by the store."""


class LocalRateBucketStore(RateBucketStore):
    """In-process bucket table with opportunistic cleanup."""

    name = "local"

    def __init__(self, *, cleanup_threshold: int = CLEANUP_THRESHOLD) -> None:
        self.cleanup_threshold = cleanup_threshold
        self._buckets: dict[str, RateBucket] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    async def hit(
        self,
        caller_key: str,
        now: int,
        window_seconds: int,
        *,
        count: bool,
    ) -> RateBucket:
        with self._lock:
            bucket = self._buckets.get(caller_key)
            if bucket is None or bucket.expired(now, window_seconds):
                bucket = RateBucket(caller_key, now)
                if count:
                    self._buckets[caller_key] = bucket
            if count:
                bucket.write_count += 1
            if len(self._buckets) > self.cleanup_threshold:
                self._cleanup(now, window_seconds)
            return replace(bucket)

    def _cleanup(self, now: int, window_seconds: int) -> None:
        stale = [k for k, b in self._buckets.items() if b.expired(now, window_seconds)]
        for key in stale:
            del self._buckets[key]


class RedisRateBucketStore(RateBucketStore):
    """Redis-backed buckets using window-aligned ``INCR`` keys.

    Windows start on multiples of the window length so every instance agrees
    on the key without coordination.
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float) -> RedisRateBucketStore:
        client = aioredis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    async def hit(
        self,
        caller_key: str,
        now: int,
        window_seconds: int,
        *,
        count: bool,
    ) -> RateBucket:
        window_start = now - (now % window_seconds)
        key = f"ratelimit:{caller_key}:{window_start}"
        try:
            if count:
                pipe = self._client.pipeline()
                pipe.incr(key)
                pipe.expire(key, window_seconds)
                writes, _ = await pipe.execute()
            else:
                raw = await self._client.get(key)
                writes = int(raw) if raw is not None else 0
        except (RedisError, OSError, ValueError) as err:
            raise RateStoreUnavailableError(f"redis: {err}") from err
        return RateBucket(caller_key, window_start, int(writes))

    async def aclose(self) -> None:
        await self._client.aclose()


class FallbackRateBucketStore(RateBucketStore):
    """Ordered chain of bucket stores; the first that answers wins."""

    name = "fallback"

    def __init__(
        self,
        stores: Sequence[RateBucketStore],
        *,
        timeout_seconds: float = 2.0,
    ) -> None:
        if not stores:
            raise ValueError("FallbackRateBucketStore requires at least one store")
        self.stores = list(stores)
        self.timeout_seconds = timeout_seconds

    async def hit(
        self,
        caller_key: str,
        now: int,
        window_seconds: int,
        *,
        count: bool,
    ) -> RateBucket:
        last_error: Exception | None = None
        for store in self.stores:
            try:
                return await asyncio.wait_for(
                    store.hit(caller_key, now, window_seconds, count=count),
                    timeout=self.timeout_seconds,
                )
            except (RateStoreUnavailableError, TimeoutError) as err:
                logger.warning("Rate bucket store %s unavailable: %s", store.name, err)
                last_error = err
        raise RateStoreUnavailableError(f"no rate bucket store answered: {last_error}")

    async def aclose(self) -> None:
        for store in self.stores:
            await store.aclose()


class RateLimiter:
    """Shared fixed-window write budget per caller key."""

    def __init__(
        self,
        store: RateBucketStore,
        *,
        max_writes: int = RATE_LIMIT_MAX_WRITES,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: SecondsClock = now_seconds,
    ) -> None:
        self.store = store
        self.max_writes = max_writes
        self.window_seconds = window_seconds
        self._clock = clock

    @staticmethod
    def caller_key_for(headers: Mapping[str, str]) -> str:
        """Return the first forwarded client address, or the shared fallback key."""
        forwarded = None
        for name, value in headers.items():
            if name.lower() == "x-forwarded-for":
                forwarded = value
                break
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return UNKNOWN_CALLER

    async def check(self, method: str, caller_key: str) -> RateDecision:
        """Count a mutating request against ``caller_key`` and decide.

        Read-only methods are never counted or refused; they only report the
        caller's current state.
        """
        now = self._clock()
        write = is_mutating(method)
        bucket = await self.store.hit(caller_key, now, self.window_seconds, count=write)
        reset_at = bucket.reset_at(self.window_seconds)
        allowed = not (write and bucket.write_count > self.max_writes)
        return RateDecision(
            allowed=allowed,
            limit=self.max_writes,
            remaining=max(0, self.max_writes - bucket.write_count),
            reset_epoch_sec=reset_at,
            window_seconds=self.window_seconds,
            retry_after=0 if allowed else max(0, reset_at - now),
        )

    async def aclose(self) -> None:
        await self.store.aclose()


def build_rate_limiter(
    config: Settings,
    *,
    clock: SecondsClock = now_seconds,
) -> RateLimiter:
    """Assemble the bucket store chain described by ``config``."""
    local = LocalRateBucketStore(cleanup_threshold=config.rate_limit_cleanup_threshold)
    store: RateBucketStore = local
    if config.rate_limit_redis_url:
        remote = RedisRateBucketStore.from_url(
            config.rate_limit_redis_url,
            timeout_seconds=config.nonce_remote_timeout_seconds,
        )
        store = FallbackRateBucketStore(
            [remote, local],
            timeout_seconds=config.nonce_remote_timeout_seconds,
        )
    return RateLimiter(
        store,
        max_writes=config.rate_limit_max_writes,
        window_seconds=config.rate_limit_window_seconds,
        clock=clock,
    )
