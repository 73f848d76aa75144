"""Guard pipelines exposed as FastAPI dependencies."""

from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, Request, Response

from celofx_gate.api.guards import (
    GuardContext,
    GuardPipeline,
    GuardRejection,
    agent_auth_guard,
    agent_or_wallet_guard,
    rate_limit_guard,
    wallet_auth_guard,
)

EXECUTE_SCOPE = "agent-execute"


def guarded(pipeline: GuardPipeline) -> Callable[[Request, Response], Awaitable[GuardContext]]:
    """Wrap ``pipeline`` as a dependency.

    Continue: the collected metadata headers are copied onto the response.
    Terminal: :class:`GuardRejection` is raised and rendered by its handler.
    """

    async def dependency(request: Request, response: Response) -> GuardContext:
        rejection, ctx = await pipeline.run(request)
        if rejection is not None:
            raise GuardRejection(rejection)
        for name, value in ctx.response_headers.items():
            response.headers[name] = value
        return ctx

    return dependency


read_pipeline = GuardPipeline(rate_limit_guard())
agent_pipeline = GuardPipeline(rate_limit_guard(), agent_auth_guard())
wallet_pipeline = GuardPipeline(rate_limit_guard(), wallet_auth_guard())
execute_pipeline = GuardPipeline(
    rate_limit_guard(),
    agent_or_wallet_guard(scope=EXECUTE_SCOPE, signed_fields=("action",)),
)

# Type aliases for guarded endpoint dependencies
ReadGuardDep = Annotated[GuardContext, Depends(guarded(read_pipeline))]
AgentGuardDep = Annotated[GuardContext, Depends(guarded(agent_pipeline))]
WalletGuardDep = Annotated[GuardContext, Depends(guarded(wallet_pipeline))]
ExecuteGuardDep = Annotated[GuardContext, Depends(guarded(execute_pipeline))]
