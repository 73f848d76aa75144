# src/celofx_gate/main.py
"""Main entry point for the CeloFX gate application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from celofx_gate.api.errors import gate_error_handler
from celofx_gate.api.guards import GuardRejection
from celofx_gate.api.v1 import auth_router, system_router
from celofx_gate.core.exceptions import GateError
from celofx_gate.core.settings import Settings, settings
from celofx_gate.services.gate import GateServices, build_gate_services

logger = logging.getLogger(__name__)


async def _guard_rejection_handler(request: Request, exc: GuardRejection) -> Response:
    return exc.response


def create_app(
    config: Settings | None = None,
    *,
    gate: GateServices | None = None,
) -> FastAPI:
    """Build the application with its admission services installed.

    Args:
        config: Settings to use; defaults to the process-wide settings.
        gate: Pre-built services, letting tests inject fakes and clocks.
    """
    config = config or settings
    logging.basicConfig(level=config.log_level.upper())

    app = FastAPI(
        title="CeloFX Gate API",
        description="Request authentication and replay protection for agent write endpoints",
        version=config.app_version,
    )
    app.state.settings = config
    app.state.gate = gate or build_gate_services(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=config.cors_allow_methods,
        allow_headers=config.cors_allow_headers,
    )

    app.add_exception_handler(GuardRejection, _guard_rejection_handler)
    app.add_exception_handler(GateError, gate_error_handler)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(system_router, prefix="/api/v1")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.gate.aclose()

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    logger.info("%s %s ready", config.app_name, config.app_version)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("celofx_gate.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
