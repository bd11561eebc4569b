from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

LoginId = Union[str, int]


@dataclass(frozen=True)
class SessionRecord:
    token: str
    login_id: LoginId
    expire_at: datetime

    def remaining(self, now: datetime) -> timedelta:
        return self.expire_at - now

    def is_expired(self, now: datetime) -> bool:
        return self.expire_at <= now

    def with_expiry(self, expire_at: datetime) -> "SessionRecord":
        # expiry never moves backwards
        return SessionRecord(self.token, self.login_id, max(self.expire_at, expire_at))
