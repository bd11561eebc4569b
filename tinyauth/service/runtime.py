from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tinyauth.config import Settings, StoreType, get_settings, reset_settings_cache
from tinyauth.idgen.snowflake import Snowflake
from tinyauth.idgen.tokens import TokenGenerator
from tinyauth.logging import get_logger
from tinyauth.service.authority import SessionAuthority
from tinyauth.service.guard import AuthGuard, EntitlementSource
from tinyauth.service.policy import PolicyEvaluator
from tinyauth.storage.common import Clock, SessionStore
from tinyauth.storage.errors import StoreUnavailable
from tinyauth.storage.memory import MemorySessionStore
from tinyauth.storage.postgres import PostgresSessionStore
from tinyauth.storage.redis_cache import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings, clock: Optional[Clock] = None) -> SessionStore:
    """Construct the single backend selected by ``settings.store_type``."""
    if settings.store_type is StoreType.CACHE:
        logger.info(
            "session_store_selected",
            store_type="cache",
            url=_mask_url_password(settings.redis_url),
        )
        store = RedisSessionStore(
            settings.redis_url, key_prefix=settings.redis_key_prefix, clock=clock
        )
        try:
            store.verify_connection()
        except StoreUnavailable:
            store.close()
            raise
        return store
    if settings.store_type is StoreType.RELATIONAL:
        logger.info(
            "session_store_selected",
            store_type="relational",
            url=_mask_url_password(settings.database_url),
            table=settings.table_name,
        )
        return PostgresSessionStore(
            settings.database_url,
            table_name=settings.table_name,
            clock=clock,
            create_schema=settings.create_schema,
        )
    logger.info("session_store_selected", store_type="inMemory")
    return MemorySessionStore(clock=clock)


class Runtime:
    """Holds the process-wide session services."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[SessionStore] = None,
        entitlements: Optional[EntitlementSource] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_type=self.settings.store_type.value,
            token_style=self.settings.token_style.value,
        )
        try:
            self.store = store or build_store(self.settings, clock=clock)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_type.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.generator = TokenGenerator(
            self.settings.token_style,
            snowflake=Snowflake(self.settings.snowflake_node_id),
        )
        self.authority = SessionAuthority(
            self.store,
            self.generator,
            timeout_seconds=self.settings.timeout_seconds,
            refresh_ratio=self.settings.refresh_ratio,
            clock=clock,
        )
        self.evaluator = PolicyEvaluator()
        self.guard = AuthGuard(self.authority, entitlements, self.settings, self.evaluator)
        logger.info("runtime_init_completed", backend=self.store.backend_name)

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Optional[Runtime]:
    """Drop the runtime singleton and cached settings.

    The next :func:`get_runtime` call rebuilds both from the environment.
    """
    global runtime
    with _runtime_lock:
        previous = runtime
        runtime = None
        reset_settings_cache()
    if previous is not None:
        previous.close()
    return previous
