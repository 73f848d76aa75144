# tests/test_security.py
"""Tests for the signing primitives shared by both schemes."""

from __future__ import annotations

import hashlib
import hmac

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from celofx_gate.core.security import (
    build_wallet_message,
    canonical_request_payload,
    compute_request_mac,
    format_timestamp,
    macs_match,
    normalize_address,
    recover_message_signer,
    secret_key_id,
    sign_agent_request,
)
from tests.conftest import WALLET_KEY


def test_canonical_payload_layout():
    payload = canonical_request_payload(1700000000000, "n1", "post", "/api/recurring", b'{"a":1}')
    assert payload == b'1700000000000.n1.POST./api/recurring.{"a":1}'


def test_mac_is_hmac_sha256_hex():
    payload = b"1.n.POST./x."
    expected = hmac.new(b"s3cret", payload, hashlib.sha256).hexdigest()
    assert compute_request_mac("s3cret", payload) == expected


@pytest.mark.parametrize(
    "supplied, ok",
    [
        ("ab" * 32, True),
        ("AB" * 32, True),
        ("ab" * 31, False),
        ("xyz", False),
        ("", False),
    ],
)
def test_macs_match(supplied, ok):
    assert macs_match(supplied, "ab" * 32) is ok


def test_secret_key_id_is_short_and_stable():
    assert secret_key_id("s3cret") == secret_key_id("s3cret")
    assert len(secret_key_id("s3cret")) == 16
    assert secret_key_id("s3cret") != secret_key_id("other")
    assert "s3cret" not in secret_key_id("s3cret")


def test_sign_agent_request_headers():
    headers = sign_agent_request("s3cret", "POST", "/x", b"{}", timestamp_ms=42, nonce="n")
    assert headers["x-agent-timestamp"] == "42"
    assert headers["x-agent-nonce"] == "n"
    assert headers["x-agent-signature"] == compute_request_mac(
        "s3cret", canonical_request_payload(42, "n", "POST", "/x", b"{}")
    )


def test_sign_agent_request_generates_fresh_nonces():
    first = sign_agent_request("s3cret", "POST", "/x")
    second = sign_agent_request("s3cret", "POST", "/x")
    assert first["x-agent-nonce"] != second["x-agent-nonce"]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0x" + "AB" * 20, "0x" + "ab" * 20),
        ("  0x" + "ab" * 20 + " ", "0x" + "ab" * 20),
        ("ab" * 20, None),
        ("0x" + "ab" * 19, None),
        (None, None),
        (1234, None),
    ],
)
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected


def test_format_timestamp():
    assert format_timestamp(1700000000000.0) == "1700000000000"
    assert format_timestamp(1700000000000.5) == "1700000000000.5"


def test_wallet_message_lines():
    message = build_wallet_message("Label", "0xabc", "n1", 5, [("pair", "cUSD/cEUR")])
    assert message.split("\n") == ["Label", "requester:0xabc", "pair:cUSD/cEUR", "nonce:n1", "timestamp:5"]


def test_recover_message_signer_round_trip():
    account = Account.from_key(WALLET_KEY)
    signed = Account.sign_message(encode_defunct(text="hello"), private_key=WALLET_KEY)
    assert recover_message_signer("hello", "0x" + bytes(signed.signature).hex()) == account.address


def test_recover_message_signer_wraps_errors():
    with pytest.raises(ValueError):
        recover_message_signer("hello", "0x1234")
