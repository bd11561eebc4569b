import pytest

from tinyauth.config import Settings, StoreType, TokenStyle
from tinyauth.service import runtime as runtime_module
from tinyauth.service.runtime import (
    Runtime,
    _mask_url_password,
    build_store,
    get_runtime,
    reset_runtime_for_tests,
)
from tinyauth.storage.errors import StoreUnavailable
from tinyauth.storage.memory import MemorySessionStore


class RecordingRedisStore:
    instances = []

    def __init__(self, url, *, key_prefix, clock=None):
        self.url = url
        self.key_prefix = key_prefix
        self.closed = False
        self.fail = "down" in url
        RecordingRedisStore.instances.append(self)

    def verify_connection(self):
        if self.fail:
            raise StoreUnavailable("ping", "redis")

    def close(self):
        self.closed = True


def test_in_memory_store_selected_by_default():
    assert isinstance(build_store(Settings()), MemorySessionStore)


def test_cache_store_selected_and_verified(monkeypatch):
    monkeypatch.setattr(runtime_module, "RedisSessionStore", RecordingRedisStore)
    store = build_store(Settings(store_type="redis", redis_url="redis://cache:6379/2"))
    assert store.url == "redis://cache:6379/2"
    assert store.key_prefix == "tinyauth"


def test_unreachable_cache_store_is_closed(monkeypatch):
    monkeypatch.setattr(runtime_module, "RedisSessionStore", RecordingRedisStore)
    with pytest.raises(StoreUnavailable):
        build_store(Settings(store_type=StoreType.CACHE, redis_url="redis://down:6379/0"))
    assert RecordingRedisStore.instances[-1].closed


def test_runtime_wires_settings_through():
    settings = Settings(timeout_seconds=120, token_style="ulid", snowflake_node_id=5)
    runtime = Runtime(settings)
    assert runtime.generator.style is TokenStyle.ULID
    assert runtime.authority.timeout.total_seconds() == 120
    assert runtime.guard.authority is runtime.authority
    token = runtime.authority.issue("alice")
    assert runtime.authority.validate(token) == "alice"


def test_get_runtime_is_a_singleton_until_reset():
    first = get_runtime()
    assert get_runtime() is first
    token = first.authority.issue("alice")
    assert reset_runtime_for_tests() is first
    second = get_runtime()
    assert second is not first
    assert second.store.fetch(token) is None


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("postgresql://app:pw@db/auth") == "postgresql://app:***@db/auth"
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
    assert _mask_url_password(None) is None
