"""Admission services: nonce ledger, authenticators and rate limiter."""

from .eoa import EOASignatureVerifier
from .gate import GateServices, build_gate_services
from .nonce_store import NonceLedger
from .rate_limit import RateLimiter
from .request_auth import RequestAuthenticator

__all__ = [
    "EOASignatureVerifier",
    "GateServices",
    "NonceLedger",
    "RateLimiter",
    "RequestAuthenticator",
    "build_gate_services",
]
