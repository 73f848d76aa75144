"""Authentication probe endpoints.

Each route runs one guard pipeline and echoes the credential that admitted
the request, so integrators can test their signing code against the live
service without triggering any side effect.
"""

from __future__ import annotations

from fastapi import APIRouter

from celofx_gate.api.guards import GuardContext
from celofx_gate.api.v1.dependencies import AgentGuardDep, ExecuteGuardDep, WalletGuardDep
from celofx_gate.schemas.auth import AuthGrantResponse

BEARER_WARNING = "Bearer authentication has no replay protection; sign requests instead."

router = APIRouter(prefix="/auth", tags=["authentication"])


def _grant_response(ctx: GuardContext) -> AuthGrantResponse:
    if ctx.wallet is not None:
        return AuthGrantResponse(
            auth_mode="eoa_signed",
            via="wallet",
            replay_protected=True,
            requester=ctx.wallet.address,
        )
    grant = ctx.agent
    if grant is None:  # pragma: no cover - pipelines always set one
        raise RuntimeError("guard pipeline admitted a request without a credential")
    return AuthGrantResponse(
        auth_mode="agent_api",
        via=grant.via,
        replay_protected=grant.replay_protected,
        nonce_tier=grant.nonce_tier.value if grant.nonce_tier else None,
        warning=None if grant.replay_protected else BEARER_WARNING,
    )


@router.post("/agent", response_model=AuthGrantResponse, response_model_exclude_none=True)
async def verify_agent_request(guard: AgentGuardDep) -> AuthGrantResponse:
    """Verify a shared-secret signed request."""
    return _grant_response(guard)


@router.post("/wallet", response_model=AuthGrantResponse, response_model_exclude_none=True)
async def verify_wallet_claim(guard: WalletGuardDep) -> AuthGrantResponse:
    """Verify a wallet-signed access claim and return the verified address."""
    return _grant_response(guard)


@router.post("/execute", response_model=AuthGrantResponse, response_model_exclude_none=True)
async def verify_execute_request(guard: ExecuteGuardDep) -> AuthGrantResponse:
    """Admit either credential, choosing the scheme from the headers present.

    Wallet callers must sign the body's ``action`` field in addition to the
    requester, nonce and timestamp.
    """
    return _grant_response(guard)
