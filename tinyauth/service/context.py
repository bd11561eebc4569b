"""Per-request login context.

The authenticated login id is bound to a :class:`~contextvars.ContextVar`,
so concurrent requests on different threads or asyncio tasks never observe
each other's identity. :func:`request_scope` always restores the previous
value, including when the handler raises.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from tinyauth.service.errors import AuthenticationError
from tinyauth.storage.models import LoginId


@dataclass(frozen=True)
class RequestContext:
    login_id: LoginId
    token: str
    expire_at: Optional[datetime] = None


_request_context: ContextVar[Optional[RequestContext]] = ContextVar(
    "tinyauth_request_context", default=None
)


@contextmanager
def request_scope(ctx: RequestContext) -> Iterator[RequestContext]:
    reset_token = _request_context.set(ctx)
    try:
        yield ctx
    finally:
        _request_context.reset(reset_token)


def current_context() -> Optional[RequestContext]:
    return _request_context.get()


def current_login_id() -> LoginId:
    """Login id of the request being served; raises outside a scope."""
    ctx = _request_context.get()
    if ctx is None:
        raise AuthenticationError("no authenticated request in scope")
    return ctx.login_id
