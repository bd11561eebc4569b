from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError

from tinyauth.logging import get_logger, mask_token
from tinyauth.storage.common import (
    Clock,
    from_epoch_millis,
    login_key,
    to_epoch_millis,
    utcnow,
)
from tinyauth.storage.errors import ConstraintViolation, StoreUnavailable
from tinyauth.storage.models import LoginId, SessionRecord


class RedisSessionStore:
    """Session store backed by Redis with native key expiry.

    Layout per token: a hash ``{prefix}:token:{token}`` holding ``login_id``
    (JSON, so string and integer ids round-trip), ``login_key`` (the index
    set suffix) and ``expire_at`` (epoch milliseconds), expired by Redis
    itself through ``PEXPIREAT``. An evicted
    key reads exactly like a token that was never issued.

    ``revoke_all`` uses a secondary index set ``{prefix}:login:{login_id}``
    holding the user's tokens, so its cost is linear in that user's token
    count rather than a keyspace scan. The index may briefly list tokens
    Redis already evicted; those are skipped when counting.
    """

    backend_name = "redis"

    # Lua: create-if-absent plus index maintenance in one atomic step
    _ISSUE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'login_id', ARGV[1], 'expire_at', ARGV[2], 'login_key', ARGV[5])
redis.call('PEXPIREAT', KEYS[1], ARGV[2])
redis.call('SADD', KEYS[2], ARGV[3])
local index_ttl = redis.call('PTTL', KEYS[2])
if index_ttl < 0 or index_ttl < tonumber(ARGV[2]) - tonumber(ARGV[4]) then
  redis.call('PEXPIREAT', KEYS[2], ARGV[2])
end
return 1
"""

    # Lua: extend expiry only forward; the index follows the longest-lived token
    _REFRESH_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'expire_at')
if not current then
  return 0
end
local new_expire = tonumber(ARGV[1])
if new_expire > tonumber(current) then
  redis.call('HSET', KEYS[1], 'expire_at', ARGV[1])
  redis.call('PEXPIREAT', KEYS[1], ARGV[1])
  local owner = redis.call('HGET', KEYS[1], 'login_key')
  if owner then
    local index_key = ARGV[3] .. owner
    local index_ttl = redis.call('PTTL', index_key)
    if index_ttl >= 0 and index_ttl < new_expire - tonumber(ARGV[2]) then
      redis.call('PEXPIREAT', index_key, ARGV[1])
    end
  end
end
return 1
"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        key_prefix: str = "tinyauth",
        clock: Optional[Clock] = None,
        socket_timeout: float = 5.0,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("either redis_url or client is required")
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._issue = self.client.register_script(self._ISSUE_SCRIPT)
        self._refresh = self.client.register_script(self._REFRESH_SCRIPT)

    def _token_key(self, token: str) -> str:
        return f"{self.key_prefix}:token:{token}"

    def _index_prefix(self) -> str:
        return f"{self.key_prefix}:login:"

    def _index_key(self, login_id: LoginId) -> str:
        return self._index_prefix() + login_key(login_id)

    def _unavailable(self, operation: str, exc: Exception) -> StoreUnavailable:
        self.logger.warning(
            "redis_session_store_error",
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return StoreUnavailable(operation, self.backend_name)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        try:
            self.client.ping()
        except RedisError as exc:
            raise self._unavailable("ping", exc) from exc

    def issue(self, token: str, login_id: LoginId, expire_at: datetime) -> None:
        expire_ms = to_epoch_millis(expire_at)
        now_ms = to_epoch_millis(self._clock())
        try:
            created = self._issue(
                keys=[self._token_key(token), self._index_key(login_id)],
                args=[json.dumps(login_id), expire_ms, token, now_ms, login_key(login_id)],
            )
        except RedisError as exc:
            raise self._unavailable("issue", exc) from exc
        if not int(created):
            raise ConstraintViolation("token already issued", {"token": mask_token(token)})

    def fetch(self, token: str) -> Optional[SessionRecord]:
        try:
            raw_login, raw_expire = self.client.hmget(
                self._token_key(token), ["login_id", "expire_at"]
            )
        except RedisError as exc:
            raise self._unavailable("fetch", exc) from exc
        if raw_login is None or raw_expire is None:
            return None
        record = SessionRecord(
            token=token,
            login_id=self._decode_login(raw_login),
            expire_at=from_epoch_millis(int(raw_expire)),
        )
        # eviction granularity can lag the stored expiry slightly
        if record.is_expired(self._clock()):
            return None
        return record

    def refresh(self, token: str, new_expire_at: datetime) -> bool:
        try:
            updated = self._refresh(
                keys=[self._token_key(token)],
                args=[
                    to_epoch_millis(new_expire_at),
                    to_epoch_millis(self._clock()),
                    self._index_prefix(),
                ],
            )
        except RedisError as exc:
            raise self._unavailable("refresh", exc) from exc
        return bool(int(updated))

    def revoke(self, token: str) -> None:
        key = self._token_key(token)
        try:
            owner = self.client.hget(key, "login_key")
            pipe = self.client.pipeline()
            pipe.delete(key)
            if owner is not None:
                pipe.srem(self._index_prefix() + owner, token)
            pipe.execute()
        except RedisError as exc:
            raise self._unavailable("revoke", exc) from exc

    def revoke_all(self, login_id: LoginId) -> int:
        index_key = self._index_key(login_id)
        try:
            tokens = self.client.smembers(index_key)
            if not tokens:
                return 0
            pipe = self.client.pipeline()
            for token in tokens:
                pipe.delete(self._token_key(token))
            # only the members read above; tokens issued meanwhile stay indexed
            pipe.srem(index_key, *tokens)
            results = pipe.execute()
        except RedisError as exc:
            raise self._unavailable("revoke_all", exc) from exc
        # last result is the SREM count
        return sum(int(deleted) for deleted in results[:-1])

    def purge_expired(self) -> int:
        # Redis evicts expired keys natively
        return 0

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _decode_login(raw: Any) -> LoginId:
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            return str(raw)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            return value
        return str(raw)
