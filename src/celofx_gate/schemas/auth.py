"""Pydantic schemas for wallet claims and authentication responses."""
from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from celofx_gate.core.exceptions import MalformedRequestError
from celofx_gate.services.eoa import EOAAccessClaim


class WalletAuthRequest(BaseModel):
    """Body fields consumed by the wallet-signature scheme.

    Unknown fields are kept so action parameters covered by the signature can
    be read back out of ``model_extra``.
    """

    model_config = ConfigDict(extra="allow")

    requester: str | None = Field(default=None, description="0x-prefixed wallet address.")
    signature: str | None = Field(default=None, description="Hex-encoded personal_sign signature.")
    timestamp: float | None = Field(default=None, description="Epoch milliseconds.")
    nonce: str | None = Field(default=None, description="One-time token, at most 128 chars.")

    def to_claim(self, signed_fields: Sequence[str] = ()) -> EOAAccessClaim:
        """Convert the body into an access claim.

        Raises:
            MalformedRequestError: If a required or signed field is missing, or a
                signed field is not a JSON string.
        """
        if self.requester is None or self.signature is None or self.nonce is None:
            raise MalformedRequestError("requester, signature and nonce are required")
        if self.timestamp is None:
            raise MalformedRequestError("timestamp is required")

        extra = self.model_extra or {}
        fields: list[tuple[str, str]] = []
        for name in signed_fields:
            value = extra.get(name)
            if value is None:
                raise MalformedRequestError(f"signed field {name!r} missing")
            # Wallets sign the literal text; other JSON types have no single rendering.
            if not isinstance(value, str):
                raise MalformedRequestError(f"signed field {name!r} must be a string")
            fields.append((name, value))

        return EOAAccessClaim(
            requester_address=self.requester,
            signature=self.signature,
            timestamp_ms=self.timestamp,
            nonce=self.nonce,
            fields=tuple(fields),
        )


class AuthGrantResponse(BaseModel):
    """Echo of the credential that admitted a request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    auth_mode: Literal["agent_api", "eoa_signed"]
    via: Literal["hmac", "bearer", "wallet"]
    replay_protected: bool
    requester: str | None = None
    nonce_tier: str | None = None
    warning: str | None = None
