"""Shared-secret authentication for machine-to-machine requests."""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Literal

from celofx_gate.core.clock import MillisClock, now_ms
from celofx_gate.core.exceptions import (
    AuthError,
    AuthNotConfiguredError,
    InvalidSignatureError,
    MalformedRequestError,
    ReplayedNonceError,
    StaleTimestampError,
)
from celofx_gate.core.security import (
    AUTH_HEADER,
    NONCE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    canonical_request_payload,
    compute_request_mac,
    macs_match,
    secret_key_id,
)
from celofx_gate.services.nonce_store import DEFAULT_NONCE_TTL_MS, NonceLedger, NonceTier

logger = logging.getLogger(__name__)

AGENT_REQUEST_SCOPE: Final[str] = "agent-request"
MAX_SKEW_MS: Final[int] = 5 * 60 * 1000


@dataclass(frozen=True)
class SignedRequestContext:
    """Everything the authenticator needs from one inbound request."""

    method: str
    path: str
    body: bytes
    signature: str | None
    timestamp: str | None
    nonce: str | None
    bearer: str | None = None

    @classmethod
    def from_headers(
        cls,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> SignedRequestContext:
        """Build a context from case-insensitive request headers."""
        lowered = {key.lower(): value for key, value in headers.items()}
        bearer = None
        auth = lowered.get(AUTH_HEADER)
        if auth and auth.startswith("Bearer "):
            bearer = auth[len("Bearer "):]
        return cls(
            method=method,
            path=path,
            body=body,
            signature=lowered.get(SIGNATURE_HEADER) or None,
            timestamp=lowered.get(TIMESTAMP_HEADER) or None,
            nonce=lowered.get(NONCE_HEADER) or None,
            bearer=bearer,
        )


@dataclass(frozen=True)
class AgentGrant:
    """Proof that a request was admitted by the shared-secret scheme.

    ``replay_protected`` is False for bearer admissions: a captured bearer
    request can be replayed for as long as the secret stays valid.
    """

    via: Literal["hmac", "bearer"]
    replay_protected: bool
    nonce: str | None = None
    nonce_tier: NonceTier | None = None


class RequestAuthenticator:
    """Verify HMAC-signed agent requests and enforce single-use nonces."""

    def __init__(
        self,
        secret: str | None,
        ledger: NonceLedger,
        *,
        allow_bearer: bool = False,
        max_skew_ms: int = MAX_SKEW_MS,
        nonce_ttl_ms: int = DEFAULT_NONCE_TTL_MS,
        clock: MillisClock = now_ms,
    ) -> None:
        self._secret = secret or None
        self._key_id = secret_key_id(secret) if secret else None
        self.ledger = ledger
        self.allow_bearer = allow_bearer
        self.max_skew_ms = max_skew_ms
        self.nonce_ttl_ms = nonce_ttl_ms
        self._clock = clock
        if allow_bearer:
            logger.warning(
                "Bearer fallback enabled for agent requests; bearer admissions "
                "carry no replay protection"
            )

    @property
    def configured(self) -> bool:
        return self._secret is not None

    async def authenticate(self, ctx: SignedRequestContext) -> AgentGrant:
        """Admit ``ctx`` or raise the reason it was refused.

        Raises:
            AuthNotConfiguredError: If no shared secret is configured.
            AuthError: If the request is malformed, stale, wrongly signed or
                replayed, and bearer fallback did not admit it.
        """
        if self._secret is None:
            raise AuthNotConfiguredError("AGENT_API_SECRET is not set")

        try:
            return await self._authenticate_signed(ctx, self._secret)
        except AuthError as err:
            if self.allow_bearer and self._bearer_matches(ctx, self._secret):
                logger.warning(
                    "Agent request %s %s admitted via bearer fallback (signed check: %s)",
                    ctx.method.upper(),
                    ctx.path,
                    err.reason,
                )
                return AgentGrant(via="bearer", replay_protected=False)
            raise

    async def verify(self, ctx: SignedRequestContext) -> bool:
        """Return True if ``ctx`` is authentic and fresh."""
        try:
            await self.authenticate(ctx)
        except (AuthError, AuthNotConfiguredError) as err:
            logger.info("Agent request rejected: %s", err.reason)
            return False
        return True

    async def _authenticate_signed(
        self,
        ctx: SignedRequestContext,
        secret: str,
    ) -> AgentGrant:
        if not ctx.signature or not ctx.timestamp or not ctx.nonce:
            raise MalformedRequestError("missing signature, timestamp or nonce header")

        try:
            timestamp = int(ctx.timestamp.strip())
        except ValueError as err:
            raise MalformedRequestError("timestamp header is not an integer") from err

        if abs(self._clock() - timestamp) > self.max_skew_ms:
            raise StaleTimestampError("timestamp outside allowed skew")

        payload = canonical_request_payload(timestamp, ctx.nonce, ctx.method, ctx.path, ctx.body)
        expected = compute_request_mac(secret, payload)
        if not macs_match(ctx.signature, expected):
            raise InvalidSignatureError("MAC mismatch")

        decision = await self.ledger.consume_detailed(
            AGENT_REQUEST_SCOPE,
            f"{self._key_id}:{ctx.nonce}",
            timestamp,
            self.nonce_ttl_ms,
        )
        if not decision.accepted:
            raise ReplayedNonceError("nonce already consumed")

        return AgentGrant(
            via="hmac",
            replay_protected=True,
            nonce=ctx.nonce,
            nonce_tier=decision.tier,
        )

    @staticmethod
    def _bearer_matches(ctx: SignedRequestContext, secret: str) -> bool:
        if not ctx.bearer:
            return False
        return hmac.compare_digest(ctx.bearer.encode("utf-8"), secret.encode("utf-8"))
