"""System and transparency endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request

from celofx_gate.api.guards import get_gate
from celofx_gate.api.v1.dependencies import ReadGuardDep
from celofx_gate.services.rate_limit import RateDecision

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/status")
async def get_auth_status(request: Request, guard: ReadGuardDep) -> dict[str, object]:
    """Return a sanitized snapshot of the admission configuration.

    Excludes secrets and connection strings; suitable for integrators checking
    which guarantees the deployment provides.
    """
    gate = get_gate(request)
    config = request.app.state.settings
    ledger = gate.ledger
    authenticator = gate.authenticator
    return {
        "app": {
            "name": config.app_name,
            "version": config.app_version,
        },
        "agentAuth": {
            "configured": authenticator.configured,
            "bearerFallback": authenticator.allow_bearer,
            "bearerReplayProtected": False,
            "maxSkewMs": authenticator.max_skew_ms,
        },
        "nonceLedger": {
            "stores": [store.name for store in ledger.stores],
            "crossInstance": ledger.has_remote_tier,
            "ttlMs": ledger.default_ttl_ms,
        },
        "rateLimit": {
            "maxWrites": gate.limiter.max_writes,
            "windowSeconds": gate.limiter.window_seconds,
            "caller": _caller_budget(guard.rate),
        },
    }


def _caller_budget(rate: RateDecision | None) -> dict[str, int] | None:
    if rate is None:
        return None
    return {"remaining": rate.remaining, "resetEpochSec": rate.reset_epoch_sec}
