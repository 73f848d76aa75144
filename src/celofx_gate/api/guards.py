"""Ordered admission guards: rate limit, then authenticate, then handle.

A guard inspects the request and either returns ``None`` to continue or a
terminal :class:`Response` that ends the pipeline before any handler runs.
Guards never raise for expected rejections.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from fastapi import Request, Response
from pydantic import ValidationError

from celofx_gate.api.errors import error_response
from celofx_gate.core.exceptions import (
    GateError,
    MalformedRequestError,
    RateLimitExceededError,
    StoreUnavailableError,
)
from celofx_gate.core.security import AUTH_HEADER, SIGNATURE_HEADER
from celofx_gate.schemas.auth import WalletAuthRequest
from celofx_gate.services.eoa import EOA_ACCESS_SCOPE, WalletIdentity
from celofx_gate.services.gate import GateServices
from celofx_gate.services.rate_limit import RateDecision
from celofx_gate.services.request_auth import AgentGrant, SignedRequestContext

logger = logging.getLogger(__name__)


@dataclass
class GuardContext:
    """State accumulated while a request moves through its guards."""

    response_headers: dict[str, str] = field(default_factory=dict)
    rate: RateDecision | None = None
    agent: AgentGrant | None = None
    wallet: WalletIdentity | None = None


Guard = Callable[[Request, GuardContext], Awaitable[Response | None]]


class GuardRejection(Exception):
    """Carries the terminal response produced by a guard."""

    def __init__(self, response: Response) -> None:
        super().__init__(response.status_code)
        self.response = response


class GuardPipeline:
    """Run guards in order until one returns a terminal response."""

    def __init__(self, *guards: Guard) -> None:
        self.guards: tuple[Guard, ...] = guards

    async def run(self, request: Request) -> tuple[Response | None, GuardContext]:
        ctx = GuardContext()
        for guard in self.guards:
            outcome = await guard(request, ctx)
            if outcome is not None:
                for name, value in ctx.response_headers.items():
                    outcome.headers.setdefault(name, value)
                return outcome, ctx
        return None, ctx


def get_gate(request: Request) -> GateServices:
    """Return the admission services installed on the application."""
    return request.app.state.gate


def _reject(request: Request, err: GateError) -> Response:
    logger.info(
        "Rejected %s %s: %s (%s)",
        request.method,
        request.url.path,
        type(err).__name__,
        err.reason,
    )
    return error_response(err)


def rate_limit_guard() -> Guard:
    """Count mutating requests against the caller's window and attach metadata."""

    async def guard(request: Request, ctx: GuardContext) -> Response | None:
        limiter = get_gate(request).limiter
        caller = limiter.caller_key_for(request.headers)
        try:
            decision = await limiter.check(request.method, caller)
        except StoreUnavailableError as err:
            logger.error("Rate limiter unavailable: %s", err.reason)
            return error_response(err)

        ctx.rate = decision
        ctx.response_headers.update(decision.headers())
        if not decision.allowed:
            return _reject(
                request,
                RateLimitExceededError(decision.retry_after, reason=f"caller {caller}"),
            )
        return None

    return guard


def agent_auth_guard() -> Guard:
    """Admit requests signed with the shared secret."""

    async def guard(request: Request, ctx: GuardContext) -> Response | None:
        authenticator = get_gate(request).authenticator
        signed = SignedRequestContext.from_headers(
            request.method,
            request.url.path,
            request.headers,
            await request.body(),
        )
        try:
            ctx.agent = await authenticator.authenticate(signed)
        except GateError as err:
            return _reject(request, err)
        return None

    return guard


def wallet_auth_guard(
    scope: str = EOA_ACCESS_SCOPE,
    signed_fields: Sequence[str] = (),
) -> Guard:
    """Admit requests whose JSON body carries a valid wallet signature.

    Args:
        scope: Nonce scope; distinct actions may use distinct scopes.
        signed_fields: Body fields embedded in the signed message, in order.
    """

    async def guard(request: Request, ctx: GuardContext) -> Response | None:
        verifier = get_gate(request).verifier
        try:
            payload = WalletAuthRequest.model_validate_json(await request.body())
            claim = payload.to_claim(signed_fields)
        except ValidationError as err:
            return _reject(request, MalformedRequestError(f"invalid body: {err.error_count()} errors"))
        except MalformedRequestError as err:
            return _reject(request, err)

        try:
            ctx.wallet = await verifier.verify(claim, scope=scope)
        except GateError as err:
            return _reject(request, err)
        return None

    return guard


def agent_or_wallet_guard(
    scope: str = EOA_ACCESS_SCOPE,
    signed_fields: Sequence[str] = (),
) -> Guard:
    """Use the shared-secret scheme when agent headers are present, else the wallet scheme."""
    agent = agent_auth_guard()
    wallet = wallet_auth_guard(scope, signed_fields)

    async def guard(request: Request, ctx: GuardContext) -> Response | None:
        if request.headers.get(SIGNATURE_HEADER) or request.headers.get(AUTH_HEADER):
            return await agent(request, ctx)
        return await wallet(request, ctx)

    return guard
