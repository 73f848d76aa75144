"""Signature utilities for agent HMAC requests and wallet messages."""
from __future__ import annotations

import hashlib
import hmac
import math
import re
import secrets
import time
from collections.abc import Iterable

from eth_account import Account
from eth_account.messages import encode_defunct

AUTH_HEADER = "authorization"
SIGNATURE_HEADER = "x-agent-signature"
TIMESTAMP_HEADER = "x-agent-timestamp"
NONCE_HEADER = "x-agent-nonce"

CANONICAL_DELIMITER = "."
MAX_NONCE_LENGTH = 128

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def canonical_request_payload(
    timestamp_ms: int,
    nonce: str,
    method: str,
    path: str,
    body: bytes,
) -> bytes:
    """Return the exact bytes covered by an agent request MAC.

    The body is appended last and verbatim so a delimiter inside it cannot
    shift the other fields.
    """
    head = CANONICAL_DELIMITER.join(
        [str(timestamp_ms), nonce, method.upper(), path, ""]
    )
    return head.encode("utf-8") + body


def compute_request_mac(secret: str, payload: bytes) -> str:
    """Return the hex HMAC-SHA256 of ``payload`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def macs_match(supplied_hex: str, expected_hex: str) -> bool:
    """Compare two hex MACs in constant time.

    Undecodable input and length mismatches are rejected before the
    constant-time comparison runs.
    """
    try:
        supplied = bytes.fromhex(supplied_hex.strip())
        expected = bytes.fromhex(expected_hex)
    except ValueError:
        return False
    if len(supplied) != len(expected):
        return False
    return hmac.compare_digest(supplied, expected)


def secret_key_id(secret: str) -> str:
    """Return a short, non-reversible identifier for a shared secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


def sign_agent_request(
    secret: str,
    method: str,
    path: str,
    body: bytes = b"",
    *,
    timestamp_ms: int | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Build the signature, timestamp and nonce headers for an agent request.

    Args:
        secret: Shared secret configured as ``AGENT_API_SECRET`` on the server.
        method: HTTP method of the request.
        path: URL path, without query string.
        body: Raw request body bytes exactly as they will be sent.
        timestamp_ms: Epoch milliseconds; defaults to the current time.
        nonce: One-time token; a random one is generated when omitted.

    Returns:
        Mapping of header names to values.
    """
    ts = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    token = nonce if nonce is not None else secrets.token_hex(16)
    payload = canonical_request_payload(ts, token, method, path, body)
    return {
        SIGNATURE_HEADER: compute_request_mac(secret, payload),
        TIMESTAMP_HEADER: str(ts),
        NONCE_HEADER: token,
    }


def normalize_address(raw: object) -> str | None:
    """Return the lowercased address if ``raw`` is a 0x-prefixed 20-byte hex string."""
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not _ADDRESS_RE.match(candidate):
        return None
    return candidate.lower()


def format_timestamp(timestamp_ms: float) -> str:
    """Render a timestamp the way wallet clients embed it in signed messages."""
    if math.isfinite(timestamp_ms) and float(timestamp_ms).is_integer():
        return str(int(timestamp_ms))
    return repr(float(timestamp_ms))


def build_wallet_message(
    label: str,
    address: str,
    nonce: str,
    timestamp_ms: float,
    fields: Iterable[tuple[str, str]] = (),
) -> str:
    """Build the human-readable message a wallet signs for an access claim."""
    lines = [label, f"requester:{address}"]
    lines.extend(f"{name}:{value}" for name, value in fields)
    lines.append(f"nonce:{nonce}")
    lines.append(f"timestamp:{format_timestamp(timestamp_ms)}")
    return "\n".join(lines)


def recover_message_signer(message: str, signature_hex: str) -> str:
    """Recover the address that produced an EIP-191 ``personal_sign`` signature.

    Raises:
        ValueError: If the signature cannot be decoded or recovered.
    """
    signable = encode_defunct(text=message)
    try:
        return Account.recover_message(signable, signature=signature_hex)
    except Exception as err:
        raise ValueError(f"Signature recovery failed: {err}") from err
