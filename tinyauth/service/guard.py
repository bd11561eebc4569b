from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Protocol, TypeVar

from tinyauth.config import Settings
from tinyauth.logging import get_logger, mask_token, set_correlation_id
from tinyauth.service.authority import SessionAuthority
from tinyauth.service.context import RequestContext, request_scope
from tinyauth.service.errors import AuthenticationError
from tinyauth.service.policy import PolicyEvaluator, Requirement, RequirementKind
from tinyauth.storage.errors import StoreUnavailable
from tinyauth.storage.models import LoginId

logger = get_logger(__name__)

T = TypeVar("T")


class EntitlementSource(Protocol):
    """Application hook returning what a login id is allowed to do."""

    def get_permissions(self, login_id: LoginId) -> Iterable[str]: ...

    def get_roles(self, login_id: LoginId) -> Iterable[str]: ...


@dataclass(frozen=True)
class RouteSpec:
    """Per-route auth metadata attached when the route is registered."""

    requirement: Optional[Requirement] = None
    skip_auth: bool = False


@dataclass(frozen=True)
class AuthRequest:
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def extract_token(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    token_name: str,
    token_prefix: str = "",
) -> Optional[str]:
    """Read the session token from the named header, falling back to the cookie.

    A configured prefix (``Bearer`` for example) is stripped from the header
    value. Blank values count as absent.
    """
    token = _header_value(headers, token_name)
    if token and token_prefix and token[: len(token_prefix)].lower() == token_prefix.lower():
        token = token[len(token_prefix):]
    token = token.strip() if token else None
    if not token:
        cookie = cookies.get(token_name)
        token = cookie.strip() if cookie else None
    return token or None


class AuthGuard:
    """Framework-agnostic request guard.

    Extracts and validates the token, evaluates the route requirement, then
    runs the handler inside a :func:`request_scope` so the login id is
    visible to it and cleared afterwards.
    """

    def __init__(
        self,
        authority: SessionAuthority,
        entitlements: Optional[EntitlementSource] = None,
        settings: Optional[Settings] = None,
        evaluator: Optional[PolicyEvaluator] = None,
    ) -> None:
        self.authority = authority
        self.entitlements = entitlements
        self.settings = settings or Settings()
        self.evaluator = evaluator or PolicyEvaluator()

    def authenticate(self, request: AuthRequest) -> RequestContext:
        token = extract_token(
            request.headers,
            request.cookies,
            self.settings.token_name,
            self.settings.token_prefix,
        )
        if not token:
            raise AuthenticationError("missing session token")
        try:
            status = self.authority.authenticate(token)
        except StoreUnavailable as exc:
            # fail closed
            logger.error(
                "session_validation_unavailable",
                token=mask_token(token),
                backend=exc.backend,
                operation=exc.operation,
            )
            raise AuthenticationError(
                "session could not be validated", detail={"reason": "store_unavailable"}
            ) from exc
        return RequestContext(status.login_id, status.token, status.expire_at)

    def entitlements_for(self, kind: RequirementKind, login_id: LoginId) -> Iterable[str]:
        if self.entitlements is None:
            return ()
        if kind is RequirementKind.ROLES:
            return self.entitlements.get_roles(login_id) or ()
        return self.entitlements.get_permissions(login_id) or ()

    def authorize(self, ctx: RequestContext, route: RouteSpec) -> None:
        requirement = route.requirement
        if requirement is None:
            return
        held = self.entitlements_for(requirement.kind, ctx.login_id)
        self.evaluator.enforce(requirement, held)

    def __call__(
        self,
        request: AuthRequest,
        route: Optional[RouteSpec],
        call_next: Callable[[Optional[RequestContext]], T],
    ) -> T:
        route = route or RouteSpec()
        set_correlation_id(_header_value(request.headers, "X-Request-ID"))
        if request.method.upper() == "OPTIONS" or route.skip_auth:
            return call_next(None)
        ctx = self.authenticate(request)
        self.authorize(ctx, route)
        with request_scope(ctx):
            return call_next(ctx)


__all__ = [
    "AuthGuard",
    "AuthRequest",
    "EntitlementSource",
    "RouteSpec",
    "extract_token",
]
