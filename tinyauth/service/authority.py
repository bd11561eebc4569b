from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from tinyauth.idgen.tokens import TokenGenerator
from tinyauth.logging import get_logger, mask_token
from tinyauth.service.errors import AuthenticationError
from tinyauth.storage.common import Clock, SessionStore, utcnow
from tinyauth.storage.errors import ConstraintViolation, StoreUnavailable
from tinyauth.storage.models import LoginId

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 1800
DEFAULT_REFRESH_RATIO = 0.4
_ISSUE_ATTEMPTS = 3


@dataclass(frozen=True)
class SessionStatus:
    """Outcome of a successful validation.

    ``refresh_error`` is set when the sliding refresh was attempted and the
    store failed; the session is still valid until ``expire_at``.
    """

    token: str
    login_id: LoginId
    expire_at: datetime
    refreshed: bool = False
    refresh_error: Optional[StoreUnavailable] = None


class SessionAuthority:
    """Issue, validate, refresh and revoke opaque session tokens.

    Sliding expiration: a validation that finds the remaining lifetime at or
    below ``timeout * refresh_ratio`` pushes the expiry to ``now + timeout``.
    Requests arriving early in the window skip the write entirely.
    """

    def __init__(
        self,
        store: SessionStore,
        generator: Optional[TokenGenerator] = None,
        *,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        refresh_ratio: float = DEFAULT_REFRESH_RATIO,
        clock: Optional[Clock] = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not 0 < refresh_ratio <= 1:
            raise ValueError("refresh_ratio must be within (0, 1]")
        self.store = store
        self.generator = generator or TokenGenerator()
        self.timeout = timedelta(seconds=timeout_seconds)
        self.refresh_threshold = self.timeout * refresh_ratio
        self._clock = clock or utcnow

    def issue(self, login_id: LoginId) -> str:
        """Create a session for ``login_id`` and return its token.

        Raises:
            StoreUnavailable: the session could not be persisted; no token
                is returned in that case.
        """
        if login_id is None:
            raise ValueError("login_id is required")
        for attempt in range(1, _ISSUE_ATTEMPTS + 1):
            token = self.generator.generate()
            expire_at = self._clock() + self.timeout
            try:
                self.store.issue(token, login_id, expire_at)
            except ConstraintViolation:
                logger.warning(
                    "session_token_collision",
                    attempt=attempt,
                    token_style=self.generator.style.value,
                )
                continue
            logger.info(
                "session_issued",
                login_id=login_id,
                token=mask_token(token),
                expire_at=expire_at.isoformat(),
                backend=self.store.backend_name,
            )
            return token
        raise ConstraintViolation(
            "could not allocate a unique token",
            {"attempts": _ISSUE_ATTEMPTS, "token_style": self.generator.style.value},
        )

    def authenticate(self, token: Optional[str]) -> SessionStatus:
        """Validate ``token`` and apply the sliding refresh.

        Raises:
            AuthenticationError: token blank, unknown, revoked or expired.
            StoreUnavailable: the lookup itself failed. Callers must treat
                this as a failed validation.
        """
        if not token or not token.strip():
            raise AuthenticationError("missing session token")
        record = self.store.fetch(token)
        if record is None:
            logger.debug("session_not_found", token=mask_token(token))
            raise AuthenticationError("invalid or expired session")

        now = self._clock()
        if record.remaining(now) > self.refresh_threshold:
            return SessionStatus(token, record.login_id, record.expire_at)

        new_expire_at = now + self.timeout
        try:
            refreshed = self.store.refresh(token, new_expire_at)
        except StoreUnavailable as exc:
            logger.warning(
                "session_refresh_failed",
                token=mask_token(token),
                login_id=record.login_id,
                backend=exc.backend,
            )
            return SessionStatus(token, record.login_id, record.expire_at, refresh_error=exc)
        if not refreshed:
            # revoked or expired between fetch and refresh
            raise AuthenticationError("invalid or expired session")
        logger.debug(
            "session_refreshed",
            token=mask_token(token),
            login_id=record.login_id,
            expire_at=new_expire_at.isoformat(),
        )
        return SessionStatus(
            token, record.login_id, max(record.expire_at, new_expire_at), refreshed=True
        )

    def validate(self, token: Optional[str]) -> LoginId:
        """Return the login id owning ``token``; see :meth:`authenticate`."""
        return self.authenticate(token).login_id

    def revoke(self, token: str) -> None:
        if not token:
            return
        self.store.revoke(token)
        logger.info("session_revoked", token=mask_token(token))

    def revoke_all(self, login_id: LoginId) -> int:
        removed = self.store.revoke_all(login_id)
        logger.info("sessions_revoked_for_login", login_id=login_id, count=removed)
        return removed
