"""Single-use nonce ledger with a remote-first fallback chain.

The ledger asks each configured :class:`NonceStore` in order. Remote stores
(Redis or an Upstash-compatible REST endpoint) give replay protection that
holds across every server instance sharing the backend. The local store is
always last: it keeps the service available and correct for a single
instance when no remote tier is configured or reachable, but a nonce consumed
on one instance is unknown to the others while in that mode. Every fallback
is logged at WARNING so the degradation is visible to operators.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Final
from urllib.parse import quote

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from celofx_gate.core.clock import MillisClock, now_ms
from celofx_gate.core.exceptions import NonceStoreUnavailableError
from celofx_gate.core.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_NONCE_TTL_MS: Final[int] = 10 * 60 * 1000
MAX_LOCAL_NONCES: Final[int] = 5000
LOCAL_CLEANUP_INTERVAL_MS: Final[int] = 30_000
DEFAULT_REMOTE_TIMEOUT_SECONDS: Final[float] = 2.0


class NonceTier(Enum):
    """Which tier produced an authoritative nonce decision."""

    REMOTE = "remote"
    LOCAL_FALLBACK = "local_fallback"


@dataclass(frozen=True)
class NonceDecision:
    """Outcome of a consume attempt.

    ``tier`` is None when the attempt was rejected before any store was
    consulted (stale timestamp) or when no store could answer.
    """

    accepted: bool
    tier: NonceTier | None
    store: str | None = None


@dataclass
class NonceRecord:
    """First sighting of a scoped nonce in the local store."""

    scoped_key: str
    first_seen_at_ms: int
    ttl_ms: int

    def expired(self, now: int) -> bool:
        return now - self.first_seen_at_ms >= self.ttl_ms


def scoped_nonce_key(scope: str, key: str) -> str:
    """Return the namespaced key under which a nonce is recorded."""
    return f"nonce:{scope}:{key}"


class NonceStore(ABC):
    """A backend able to atomically claim a key for a bounded time."""

    name: str = "store"
    tier: NonceTier = NonceTier.REMOTE

    @abstractmethod
    async def claim(self, scoped_key: str, now: int, ttl_ms: int) -> bool:
        """Record ``scoped_key`` if unseen within ``ttl_ms``.

        Returns:
            True when the key was newly claimed, False when it was already held.

        Raises:
            NonceStoreUnavailableError: If the backend cannot answer.
        """

    async def aclose(self) -> None:  # noqa: B027 - optional hook
        """Release any network resources held by the store."""


class LocalNonceStore(NonceStore):
    """In-process nonce map bounded by TTL cleanup and oldest-first eviction."""

    name = "local"
    tier = NonceTier.LOCAL_FALLBACK

    def __init__(
        self,
        *,
        max_entries: int = MAX_LOCAL_NONCES,
        cleanup_interval_ms: int = LOCAL_CLEANUP_INTERVAL_MS,
    ) -> None:
        self.max_entries = max_entries
        self.cleanup_interval_ms = cleanup_interval_ms
        self._records: dict[str, NonceRecord] = {}
        self._last_cleanup_ms = 0
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def claim_sync(self, scoped_key: str, now: int, ttl_ms: int) -> bool:
        """Thread-safe check-and-set used by :meth:`claim`."""
        with self._lock:
            record = self._records.get(scoped_key)
            if record is not None and not record.expired(now):
                return False
            self._cleanup(now)
            self._records[scoped_key] = NonceRecord(scoped_key, now, ttl_ms)
            return True

    async def claim(self, scoped_key: str, now: int, ttl_ms: int) -> bool:
        return self.claim_sync(scoped_key, now, ttl_ms)

    def _cleanup(self, now: int) -> None:
        # Caller holds the lock.
        if (
            now - self._last_cleanup_ms < self.cleanup_interval_ms
            and len(self._records) < self.max_entries
        ):
            return
        self._last_cleanup_ms = now

        expired = [key for key, record in self._records.items() if record.expired(now)]
        for key in expired:
            del self._records[key]

        overflow = len(self._records) - self.max_entries
        if overflow >= 0:
            # Leave room for the record about to be inserted.
            oldest = sorted(self._records.values(), key=lambda r: r.first_seen_at_ms)
            for record in oldest[: overflow + 1]:
                del self._records[record.scoped_key]


class RedisNonceStore(NonceStore):
    """Nonce store backed by Redis ``SET key 1 NX PX ttl``."""

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float) -> RedisNonceStore:
        client = aioredis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    async def claim(self, scoped_key: str, now: int, ttl_ms: int) -> bool:
        try:
            result = await self._client.set(scoped_key, "1", nx=True, px=ttl_ms)
        except (RedisError, OSError) as err:
            raise NonceStoreUnavailableError(f"redis: {err}") from err
        return bool(result)

    async def aclose(self) -> None:
        await self._client.aclose()


class RestNonceStore(NonceStore):
    """Nonce store backed by an Upstash-compatible Redis REST endpoint."""

    name = "rest"

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def claim(self, scoped_key: str, now: int, ttl_ms: int) -> bool:
        endpoint = f"/set/{quote(scoped_key, safe='')}/1"
        try:
            response = await self._client.post(
                endpoint,
                params={"NX": "true", "PX": str(ttl_ms)},
            )
        except httpx.HTTPError as err:
            raise NonceStoreUnavailableError(f"rest: {err}") from err

        if not response.is_success:
            raise NonceStoreUnavailableError(f"rest: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as err:
            raise NonceStoreUnavailableError("rest: invalid JSON reply") from err
        if not isinstance(payload, dict):
            raise NonceStoreUnavailableError("rest: unexpected reply shape")
        return payload.get("result") == "OK"

    async def aclose(self) -> None:
        await self._client.aclose()


class NonceLedger:
    """Consume-once ledger over an ordered chain of nonce stores.

    The first store that answers is authoritative, whether it accepts or
    rejects. Remote calls are bounded by ``remote_timeout_seconds``; a timeout
    or transport error moves on to the next store instead of failing the
    request.
    """

    def __init__(
        self,
        stores: Sequence[NonceStore],
        *,
        default_ttl_ms: int = DEFAULT_NONCE_TTL_MS,
        remote_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
        clock: MillisClock = now_ms,
    ) -> None:
        if not stores:
            raise ValueError("NonceLedger requires at least one store")
        self.stores = list(stores)
        self.default_ttl_ms = default_ttl_ms
        self.remote_timeout_seconds = remote_timeout_seconds
        self._clock = clock

    @property
    def has_remote_tier(self) -> bool:
        return any(store.tier is NonceTier.REMOTE for store in self.stores)

    async def consume_detailed(
        self,
        scope: str,
        key: str,
        timestamp_ms: float,
        ttl_ms: int | None = None,
    ) -> NonceDecision:
        """Consume ``(scope, key)`` and report which tier decided."""
        now = self._clock()
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if not _is_fresh(timestamp_ms, now, ttl):
            return NonceDecision(accepted=False, tier=None)

        scoped_key = scoped_nonce_key(scope, key)
        hold = _hold_ms(timestamp_ms, now, ttl)
        for store in self.stores:
            try:
                if store.tier is NonceTier.REMOTE:
                    accepted = await asyncio.wait_for(
                        store.claim(scoped_key, now, hold),
                        timeout=self.remote_timeout_seconds,
                    )
                else:
                    accepted = await store.claim(scoped_key, now, hold)
            except (NonceStoreUnavailableError, TimeoutError) as err:
                logger.warning(
                    "Nonce store %s unavailable (%s); falling back, "
                    "cross-instance replay protection degraded",
                    store.name,
                    str(err) or "timeout",
                )
                continue
            return NonceDecision(accepted=accepted, tier=store.tier, store=store.name)

        logger.error("No nonce store answered for scope %s; rejecting", scope)
        return NonceDecision(accepted=False, tier=None)

    async def consume(
        self,
        scope: str,
        key: str,
        timestamp_ms: float,
        ttl_ms: int | None = None,
    ) -> bool:
        """Return True exactly once per ``(scope, key)`` within the TTL."""
        decision = await self.consume_detailed(scope, key, timestamp_ms, ttl_ms)
        return decision.accepted

    async def aclose(self) -> None:
        for store in self.stores:
            await store.aclose()


def _is_fresh(timestamp_ms: float, now: int, ttl_ms: int) -> bool:
    try:
        ts = float(timestamp_ms)
    except (TypeError, ValueError):
        return False
    return math.isfinite(ts) and abs(now - ts) <= ttl_ms


def _hold_ms(timestamp_ms: float, now: int, ttl_ms: int) -> int:
    """Return how long a claim must be held so it outlives the timestamp's freshness.

    A timestamp stays fresh until ``timestamp_ms + ttl_ms`` inclusive, which is
    later than ``now + ttl_ms`` when the caller's clock runs ahead.
    """
    ahead = max(0, math.ceil(float(timestamp_ms) - now))
    return ttl_ms + ahead + 1


def build_nonce_ledger(
    config: Settings,
    *,
    clock: MillisClock = now_ms,
) -> NonceLedger:
    """Assemble the store chain described by ``config``.

    Order: Redis, REST, then the local in-process store.
    """
    timeout = config.nonce_remote_timeout_seconds
    stores: list[NonceStore] = []
    if config.nonce_redis_url:
        stores.append(RedisNonceStore.from_url(config.nonce_redis_url, timeout_seconds=timeout))
    if config.upstash_configured:
        stores.append(
            RestNonceStore(
                config.upstash_rest_url or "",
                config.upstash_rest_token or "",
                timeout_seconds=timeout,
            )
        )
    if not stores:
        logger.warning(
            "No remote nonce store configured; replay protection is limited to this process"
        )
    stores.append(LocalNonceStore(max_entries=config.nonce_local_max_entries))
    return NonceLedger(
        stores,
        default_ttl_ms=config.nonce_ttl_ms,
        remote_timeout_seconds=timeout,
        clock=clock,
    )
