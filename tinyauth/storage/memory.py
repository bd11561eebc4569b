from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional, Set

from tinyauth.logging import get_logger, mask_token
from tinyauth.storage.common import Clock, ensure_utc, login_key, utcnow
from tinyauth.storage.errors import ConstraintViolation
from tinyauth.storage.models import LoginId, SessionRecord


class MemorySessionStore:
    """Single-process session store.

    Sessions live in a dict guarded by an RLock, with a secondary
    ``login_id -> tokens`` index so ``revoke_all`` touches only the user's
    own tokens. Nothing is persisted: a restart logs every user out, and
    separate processes never see each other's sessions. Use the cache or
    relational backend when more than one instance serves traffic.
    """

    backend_name = "memory"

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self.sessions: Dict[str, SessionRecord] = {}
        self.login_index: Dict[str, Set[str]] = {}
        self._data_lock = threading.RLock()

    def _drop(self, token: str) -> Optional[SessionRecord]:
        record = self.sessions.pop(token, None)
        if record is None:
            return None
        key = login_key(record.login_id)
        tokens = self.login_index.get(key)
        if tokens is not None:
            tokens.discard(token)
            if not tokens:
                self.login_index.pop(key, None)
        return record

    def issue(self, token: str, login_id: LoginId, expire_at: datetime) -> None:
        with self._data_lock:
            existing = self.sessions.get(token)
            if existing is not None and not existing.is_expired(self._clock()):
                raise ConstraintViolation("token already issued", {"token": mask_token(token)})
            if existing is not None:
                self._drop(token)
            self.sessions[token] = SessionRecord(token, login_id, ensure_utc(expire_at))
            self.login_index.setdefault(login_key(login_id), set()).add(token)

    def fetch(self, token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(token)
            if record is None:
                return None
            if record.is_expired(self._clock()):
                self._drop(token)
                return None
            return record

    def refresh(self, token: str, new_expire_at: datetime) -> bool:
        with self._data_lock:
            record = self.fetch(token)
            if record is None:
                return False
            self.sessions[token] = record.with_expiry(ensure_utc(new_expire_at))
            return True

    def revoke(self, token: str) -> None:
        with self._data_lock:
            self._drop(token)

    def revoke_all(self, login_id: LoginId) -> int:
        with self._data_lock:
            now = self._clock()
            removed = 0
            for token in list(self.login_index.get(login_key(login_id), ())):
                record = self._drop(token)
                if record is not None and not record.is_expired(now):
                    removed += 1
            return removed

    def purge_expired(self) -> int:
        with self._data_lock:
            now = self._clock()
            stale = [token for token, record in self.sessions.items() if record.is_expired(now)]
            for token in stale:
                self._drop(token)
            if stale:
                self.logger.debug("memory_sessions_purged", count=len(stale))
            return len(stale)

    def close(self) -> None:
        with self._data_lock:
            self.sessions.clear()
            self.login_index.clear()
