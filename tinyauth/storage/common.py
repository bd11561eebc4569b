"""Contract and helpers shared by the session store backends."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tinyauth.storage.models import LoginId, SessionRecord

Clock = Callable[[], datetime]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SessionStore(Protocol):
    """Persistence contract every backend implements.

    ``fetch`` returns ``None`` for tokens that were never issued, were
    revoked, or whose expiry has passed. All transport failures surface as
    :class:`~tinyauth.storage.errors.StoreUnavailable`.
    """

    backend_name: str

    def issue(self, token: str, login_id: LoginId, expire_at: datetime) -> None: ...

    def fetch(self, token: str) -> Optional[SessionRecord]: ...

    def refresh(self, token: str, new_expire_at: datetime) -> bool: ...

    def revoke(self, token: str) -> None: ...

    def revoke_all(self, login_id: LoginId) -> int: ...

    def purge_expired(self) -> int: ...

    def close(self) -> None: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    return (ensure_utc(value) - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_millis(value: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=value)


def login_key(login_id: LoginId) -> str:
    """Index key for a login id; ``5`` and ``"5"`` address the same group."""
    return str(login_id)
