# tests/conftest.py
from __future__ import annotations

from collections.abc import Iterator
from itertools import count
from typing import Any

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi import FastAPI
from fastapi.testclient import TestClient

from celofx_gate.core.security import build_wallet_message
from celofx_gate.core.settings import Settings
from celofx_gate.main import create_app
from celofx_gate.services.gate import GateServices, build_gate_services
from celofx_gate.services.nonce_store import LocalNonceStore, NonceLedger

TEST_SECRET = "s3cret"
WALLET_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_WALLET_KEY = "0x" + "11" * 32

_IP_COUNTER = count(1)


class FakeClock:
    """Deterministic clock shared by the ledger, authenticators and limiter."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.current_ms = start_ms

    def ms(self) -> int:
        return self.current_ms

    def seconds(self) -> int:
        return self.current_ms // 1000

    def advance(self, ms: int) -> None:
        self.current_ms += ms


def make_settings(**overrides: Any) -> Settings:
    """Return settings isolated from the developer's .env file."""
    values: dict[str, Any] = {"AGENT_API_SECRET": TEST_SECRET}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def unique_ip() -> str:
    """Return a forwarded client address no other request has used."""
    n = next(_IP_COUNTER)
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


def sign_wallet_claim(
    private_key: str,
    *,
    nonce: str,
    timestamp_ms: int,
    label: str = "CeloFX Agent Access",
    fields: tuple[tuple[str, str], ...] = (),
    requester: str | None = None,
) -> dict[str, Any]:
    """Build a wallet-signed request body the way a browser wallet would."""
    account = Account.from_key(private_key)
    address = (requester or account.address).lower()
    message = build_wallet_message(label, address, nonce, timestamp_ms, fields)
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return {
        "requester": requester or account.address,
        "signature": "0x" + bytes(signed.signature).hex(),
        "timestamp": timestamp_ms,
        "nonce": nonce,
    }


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def local_store() -> LocalNonceStore:
    return LocalNonceStore()


@pytest.fixture()
def ledger(clock: FakeClock, local_store: LocalNonceStore) -> NonceLedger:
    return NonceLedger([local_store], clock=clock.ms)


@pytest.fixture()
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture()
def gate(test_settings: Settings, clock: FakeClock) -> GateServices:
    return build_gate_services(test_settings, clock_ms=clock.ms, clock_seconds=clock.seconds)


@pytest.fixture()
def app(test_settings: Settings, gate: GateServices) -> FastAPI:
    return create_app(test_settings, gate=gate)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def wallet_key() -> str:
    return WALLET_KEY


@pytest.fixture()
def wallet_address() -> str:
    return Account.from_key(WALLET_KEY).address
