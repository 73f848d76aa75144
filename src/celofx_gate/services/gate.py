"""Process-wide admission services assembled once at startup."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from celofx_gate.core.clock import MillisClock, SecondsClock, now_ms, now_seconds
from celofx_gate.core.settings import Settings
from celofx_gate.services.eoa import EOASignatureVerifier
from celofx_gate.services.nonce_store import NonceLedger, build_nonce_ledger
from celofx_gate.services.rate_limit import RateLimiter, build_rate_limiter
from celofx_gate.services.request_auth import RequestAuthenticator

logger = logging.getLogger(__name__)


@dataclass
class GateServices:
    """The ledger, both authenticators and the rate limiter for one process."""

    ledger: NonceLedger
    authenticator: RequestAuthenticator
    verifier: EOASignatureVerifier
    limiter: RateLimiter

    async def aclose(self) -> None:
        await self.ledger.aclose()
        await self.limiter.aclose()


def build_gate_services(
    config: Settings,
    *,
    clock_ms: MillisClock = now_ms,
    clock_seconds: SecondsClock = now_seconds,
) -> GateServices:
    """Wire every admission component from ``config``.

    Clocks are injectable so tests can drive TTLs and windows deterministically.
    """
    ledger = build_nonce_ledger(config, clock=clock_ms)
    authenticator = RequestAuthenticator(
        config.agent_api_secret,
        ledger,
        allow_bearer=config.agent_api_allow_bearer,
        nonce_ttl_ms=config.nonce_ttl_ms,
        clock=clock_ms,
    )
    verifier = EOASignatureVerifier(
        ledger,
        label=config.eoa_message_label,
        recovery_timeout_seconds=config.eoa_recovery_timeout_seconds,
        nonce_ttl_ms=config.nonce_ttl_ms,
        clock=clock_ms,
    )
    limiter = build_rate_limiter(config, clock=clock_seconds)
    if not authenticator.configured:
        logger.warning("AGENT_API_SECRET not set; agent endpoints will answer 503")
    return GateServices(
        ledger=ledger,
        authenticator=authenticator,
        verifier=verifier,
        limiter=limiter,
    )
