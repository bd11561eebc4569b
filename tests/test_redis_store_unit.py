from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tinyauth.storage.common import to_epoch_millis
from tinyauth.storage.errors import ConstraintViolation, StoreUnavailable
from tinyauth.storage.redis_cache import RedisSessionStore


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def delete(self, key):
        self.ops.append(("delete", key))
        return self

    def srem(self, key, *members):
        self.ops.append(("srem", key, *members))
        return self

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "delete":
                results.append(self.client.delete(op[1]))
            else:
                results.append(self.client.srem(op[1], *op[2:]))
        return results


class FakeRedis:
    """Just enough of redis-py for the session store, with PEXPIREAT eviction.

    The two Lua scripts are emulated in Python; which one is meant is
    recognised from the script body.
    """

    def __init__(self, clock):
        self.clock = clock
        self.hashes = {}
        self.sets = {}
        self.expiry = {}
        self.closed = False
        self.after_smembers = None

    def _now_ms(self):
        return to_epoch_millis(self.clock())

    def _evict(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self._now_ms():
            self.hashes.pop(key, None)
            self.sets.pop(key, None)
            self.expiry.pop(key, None)

    def _pttl(self, key):
        self._evict(key)
        if key not in self.hashes and key not in self.sets:
            return -2
        if key not in self.expiry:
            return -1
        return self.expiry[key] - self._now_ms()

    def register_script(self, script):
        if "SADD" in script:
            return self._issue_script
        return self._refresh_script

    def _issue_script(self, keys, args):
        token_key, index_key = keys
        login_json, expire_ms, token, now_ms, owner = args
        expire_ms, now_ms = int(expire_ms), int(now_ms)
        self._evict(token_key)
        if token_key in self.hashes:
            return 0
        self.hashes[token_key] = {
            "login_id": login_json,
            "expire_at": str(expire_ms),
            "login_key": owner,
        }
        self.expiry[token_key] = expire_ms
        self.sets.setdefault(index_key, set()).add(token)
        index_ttl = self._pttl(index_key)
        if index_ttl < 0 or index_ttl < expire_ms - now_ms:
            self.expiry[index_key] = expire_ms
        return 1

    def _refresh_script(self, keys, args):
        (token_key,) = keys
        new_ms, now_ms, index_prefix = int(args[0]), int(args[1]), args[2]
        self._evict(token_key)
        current = self.hashes.get(token_key, {}).get("expire_at")
        if current is None:
            return 0
        if new_ms > int(current):
            self.hashes[token_key]["expire_at"] = str(new_ms)
            self.expiry[token_key] = new_ms
            index_key = index_prefix + self.hashes[token_key]["login_key"]
            index_ttl = self._pttl(index_key)
            if 0 <= index_ttl < new_ms - now_ms:
                self.expiry[index_key] = new_ms
        return 1

    def hmget(self, key, fields):
        self._evict(key)
        data = self.hashes.get(key, {})
        return [data.get(field) for field in fields]

    def hget(self, key, field):
        self._evict(key)
        return self.hashes.get(key, {}).get(field)

    def smembers(self, key):
        self._evict(key)
        members = set(self.sets.get(key, set()))
        if self.after_smembers is not None:
            hook, self.after_smembers = self.after_smembers, None
            hook()
        return members

    def delete(self, key):
        self._evict(key)
        existed = key in self.hashes or key in self.sets
        self.hashes.pop(key, None)
        self.sets.pop(key, None)
        self.expiry.pop(key, None)
        return int(existed)

    def srem(self, key, *members):
        current = self.sets.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        if key in self.sets and not current:
            self.sets.pop(key)
            self.expiry.pop(key, None)
        return removed

    def pipeline(self):
        return FakePipeline(self)

    def ping(self):
        return True

    def close(self):
        self.closed = True


class UnreachableRedis(FakeRedis):
    def hmget(self, key, fields):
        raise RedisConnectionError("connection refused")

    def ping(self):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def client(clock):
    return FakeRedis(clock)


@pytest.fixture
def store(client, clock):
    return RedisSessionStore(client=client, clock=clock, key_prefix="test")


class TestRedisSessionStore:
    def test_issue_and_fetch_preserve_login_type(self, store, client, clock):
        expire_at = clock() + timedelta(minutes=30)
        store.issue("tok-1", 42, expire_at)
        store.issue("tok-2", "alice", expire_at)
        assert store.fetch("tok-1").login_id == 42
        assert store.fetch("tok-2").login_id == "alice"
        assert client.expiry["test:token:tok-1"] == to_epoch_millis(expire_at)
        assert "tok-1" in client.sets["test:login:42"]

    def test_duplicate_token_raises(self, store, clock):
        store.issue("tok-1", "alice", clock() + timedelta(minutes=1))
        with pytest.raises(ConstraintViolation):
            store.issue("tok-1", "bob", clock() + timedelta(minutes=1))

    def test_evicted_token_reads_as_absent(self, store, clock):
        store.issue("tok-1", "alice", clock() + timedelta(seconds=3))
        clock.advance(3)
        assert store.fetch("tok-1") is None
        assert store.refresh("tok-1", clock() + timedelta(minutes=1)) is False

    def test_refresh_extends_key_and_index(self, store, client, clock):
        store.issue("tok-1", "alice", clock() + timedelta(seconds=100))
        clock.advance(70)
        new_expire = clock() + timedelta(seconds=100)
        assert store.refresh("tok-1", new_expire) is True
        assert store.fetch("tok-1").expire_at == new_expire
        assert client.expiry["test:login:alice"] == to_epoch_millis(new_expire)

    def test_refresh_never_shortens(self, store, clock):
        expire_at = clock() + timedelta(minutes=30)
        store.issue("tok-1", "alice", expire_at)
        assert store.refresh("tok-1", clock() + timedelta(minutes=1)) is True
        assert store.fetch("tok-1").expire_at == expire_at

    def test_revoke_removes_token_and_index_entry(self, store, client, clock):
        store.issue("tok-1", "alice", clock() + timedelta(minutes=1))
        store.revoke("tok-1")
        store.revoke("tok-1")
        assert store.fetch("tok-1") is None
        assert "tok-1" not in client.sets.get("test:login:alice", set())

    def test_revoke_all_skips_already_evicted_tokens(self, store, clock):
        store.issue("a1", "alice", clock() + timedelta(seconds=1))
        store.issue("a2", "alice", clock() + timedelta(minutes=1))
        store.issue("b1", "bob", clock() + timedelta(minutes=1))
        clock.advance(2)
        assert store.revoke_all("alice") == 1
        assert store.fetch("a2") is None
        assert store.fetch("b1") is not None
        assert store.revoke_all("alice") == 0

    def test_token_issued_during_revoke_all_stays_revocable(self, store, client, clock):
        store.issue("a1", "alice", clock() + timedelta(minutes=1))
        client.after_smembers = lambda: store.issue(
            "late", "alice", clock() + timedelta(minutes=1)
        )
        assert store.revoke_all("alice") == 1
        assert client.sets["test:login:alice"] == {"late"}
        assert store.revoke_all("alice") == 1
        assert store.fetch("late") is None

    def test_purge_is_a_noop(self, store):
        assert store.purge_expired() == 0

    def test_connection_errors_become_store_unavailable(self, clock):
        store = RedisSessionStore(client=UnreachableRedis(clock), clock=clock)
        with pytest.raises(StoreUnavailable) as excinfo:
            store.fetch("tok-1")
        assert excinfo.value.backend == "redis"
        with pytest.raises(StoreUnavailable):
            store.verify_connection()

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisSessionStore()

    def test_close_closes_client(self, store, client):
        store.close()
        assert client.closed
