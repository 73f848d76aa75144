"""Structured error bodies for API responses.

External agents can handle failures programmatically through the ``code``
field; ``error`` is a human-readable message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from celofx_gate.core.exceptions import GateError, RateLimitExceededError


class ApiErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHORIZED = "UNAUTHORIZED"
    AUTH_NOT_CONFIGURED = "AUTH_NOT_CONFIGURED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def api_error(
    code: ApiErrorCode | str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Return the ``{error, code, details?}`` envelope."""
    body: dict[str, Any] = {"error": message, "code": ApiErrorCode(code).value}
    if details:
        body["details"] = details
    return body


def error_response(
    exc: GateError,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render ``exc`` with its public message only; the internal reason is never sent."""
    details = None
    if isinstance(exc, RateLimitExceededError):
        details = {"retryAfter": exc.retry_after}
    return JSONResponse(
        status_code=exc.status_code,
        content=api_error(exc.code, exc.public_message, details),
        headers=headers,
    )


async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
    """Exception handler for :class:`GateError` raised outside the guard pipeline."""
    return error_response(exc)
