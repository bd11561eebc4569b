from __future__ import annotations

from typing import AsyncIterator, Callable, Optional

from fastapi import Request
from starlette.concurrency import run_in_threadpool

from tinyauth.logging import set_correlation_id
from tinyauth.service.context import RequestContext, request_scope
from tinyauth.service.guard import AuthGuard, AuthRequest, EntitlementSource, RouteSpec
from tinyauth.service.policy import Requirement
from tinyauth.service.runtime import get_runtime


def _guard_for(entitlements: Optional[EntitlementSource]) -> AuthGuard:
    runtime = get_runtime()
    if entitlements is None:
        return runtime.guard
    return AuthGuard(runtime.authority, entitlements, runtime.settings, runtime.evaluator)


def require_session(
    requirement: Optional[Requirement] = None,
    *,
    entitlements: Optional[EntitlementSource] = None,
) -> Callable[[Request], AsyncIterator[Optional[RequestContext]]]:
    """Build a FastAPI dependency that authenticates the request.

    Usage::

        @app.get("/orders", dependencies=[Depends(require_session())])
        async def list_orders(ctx: RequestContext = Depends(require_session(...))):
            ...

    The yielded context is also bound for the handler's duration, so
    :func:`~tinyauth.service.context.current_login_id` works anywhere below
    it. ``OPTIONS`` pre-flight requests yield ``None`` without a lookup.
    """
    route = RouteSpec(requirement=requirement)

    async def dependency(request: Request) -> AsyncIterator[Optional[RequestContext]]:
        set_correlation_id(request.headers.get("X-Request-ID"))
        if request.method.upper() == "OPTIONS":
            yield None
            return
        guard = _guard_for(entitlements)
        auth_request = AuthRequest(request.method, request.headers, request.cookies)
        # store lookups block, keep them off the event loop
        ctx = await run_in_threadpool(guard.authenticate, auth_request)
        await run_in_threadpool(guard.authorize, ctx, route)
        with request_scope(ctx):
            yield ctx

    return dependency
