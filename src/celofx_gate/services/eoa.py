"""Wallet-signature (EOA) verification for human-initiated requests."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final

from celofx_gate.core.clock import MillisClock, now_ms
from celofx_gate.core.exceptions import (
    InvalidSignatureError,
    MalformedRequestError,
    ReplayedNonceError,
    StaleTimestampError,
)
from celofx_gate.core.security import (
    MAX_NONCE_LENGTH,
    build_wallet_message,
    normalize_address,
    recover_message_signer,
)
from celofx_gate.services.nonce_store import DEFAULT_NONCE_TTL_MS, NonceLedger

logger = logging.getLogger(__name__)

EOA_ACCESS_SCOPE: Final[str] = "eoa-access"
DEFAULT_MESSAGE_LABEL: Final[str] = "CeloFX Agent Access"
MAX_CLOCK_SKEW_MS: Final[int] = 5 * 60 * 1000
DEFAULT_RECOVERY_TIMEOUT_SECONDS: Final[float] = 2.0

SignatureRecoverer = Callable[[str, str], str]


@dataclass(frozen=True)
class EOAAccessClaim:
    """A wallet-signed access claim as submitted in a request body.

    ``fields`` are action parameters (pair, amount, ...) that the wallet signed
    alongside the requester, nonce and timestamp, in signing order.
    """

    requester_address: str
    signature: str
    timestamp_ms: float
    nonce: str
    fields: tuple[tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class WalletIdentity:
    """A verified wallet. ``address`` is always lowercase."""

    address: str
    nonce: str
    timestamp_ms: float


class EOASignatureVerifier:
    """Verify ``personal_sign`` access claims against a single-use nonce."""

    def __init__(
        self,
        ledger: NonceLedger,
        *,
        label: str = DEFAULT_MESSAGE_LABEL,
        recover: SignatureRecoverer = recover_message_signer,
        recovery_timeout_seconds: float = DEFAULT_RECOVERY_TIMEOUT_SECONDS,
        max_skew_ms: int = MAX_CLOCK_SKEW_MS,
        nonce_ttl_ms: int = DEFAULT_NONCE_TTL_MS,
        clock: MillisClock = now_ms,
    ) -> None:
        self.ledger = ledger
        self.label = label
        self._recover = recover
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.max_skew_ms = max_skew_ms
        self.nonce_ttl_ms = nonce_ttl_ms
        self._clock = clock

    def canonical_message(self, claim: EOAAccessClaim) -> str:
        """Return the exact message the wallet is expected to have signed."""
        address = normalize_address(claim.requester_address) or claim.requester_address
        return build_wallet_message(
            self.label,
            address,
            claim.nonce.strip(),
            claim.timestamp_ms,
            claim.fields,
        )

    async def verify(
        self,
        claim: EOAAccessClaim,
        *,
        scope: str = EOA_ACCESS_SCOPE,
    ) -> WalletIdentity:
        """Verify ``claim`` and return the wallet that signed it.

        Structural checks run before the nonce is consumed, and the nonce is
        consumed before any signature recovery, so a replayed claim is refused
        even when its signature is perfect.

        Raises:
            MalformedRequestError: Invalid address, missing signature or bad nonce.
            StaleTimestampError: Timestamp missing, non-finite or outside skew.
            ReplayedNonceError: Nonce already consumed for this wallet and scope.
            InvalidSignatureError: Recovery failed, timed out or named another signer.
        """
        address = normalize_address(claim.requester_address)
        if address is None:
            raise MalformedRequestError("requester is not a 0x-prefixed address")
        if not claim.signature or not claim.signature.strip():
            raise MalformedRequestError("signature missing")

        timestamp = claim.timestamp_ms
        if not math.isfinite(timestamp) or abs(self._clock() - timestamp) > self.max_skew_ms:
            raise StaleTimestampError("timestamp outside allowed skew")

        nonce = claim.nonce.strip()
        if not nonce or len(nonce) > MAX_NONCE_LENGTH:
            raise MalformedRequestError("nonce empty or longer than 128 characters")

        if not await self.ledger.consume(scope, f"{address}:{nonce}", timestamp, self.nonce_ttl_ms):
            raise ReplayedNonceError("wallet nonce already consumed")

        message = build_wallet_message(self.label, address, nonce, timestamp, claim.fields)
        try:
            recovered = await asyncio.wait_for(
                asyncio.to_thread(self._recover, message, claim.signature.strip()),
                timeout=self.recovery_timeout_seconds,
            )
        except TimeoutError as err:
            raise InvalidSignatureError("signature recovery timed out") from err
        except ValueError as err:
            raise InvalidSignatureError(str(err)) from err

        if not isinstance(recovered, str) or recovered.lower() != address:
            raise InvalidSignatureError("recovered signer does not match requester")

        logger.debug("Wallet %s verified for scope %s", address, scope)
        return WalletIdentity(address=address, nonce=nonce, timestamp_ms=timestamp)
