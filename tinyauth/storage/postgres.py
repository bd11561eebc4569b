from __future__ import annotations

import re
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tinyauth.logging import get_logger, mask_token
from tinyauth.storage.common import Clock, ensure_utc, login_key, utcnow
from tinyauth.storage.errors import ConstraintViolation, StoreUnavailable
from tinyauth.storage.models import LoginId, SessionRecord

DEFAULT_TABLE_NAME = "auth_token"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class PostgresSessionStore:
    """Relational session store.

    One row per token (``token_str`` primary key, ``login_id``,
    ``token_expire_time``). No sweeper is assumed: every read and update
    compares ``token_expire_time`` against the current time, so an expired
    row that still physically exists behaves as absent. ``purge_expired``
    removes such rows on demand.

    ``fetch`` followed by ``refresh`` is not transactional. Two instances
    refreshing the same token race, and the later write wins; ``GREATEST``
    keeps the stored expiry from moving backwards.
    """

    backend_name = "postgres"

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        table_name: str = DEFAULT_TABLE_NAME,
        pool: Optional[ConnectionPool] = None,
        clock: Optional[Clock] = None,
        create_schema: bool = False,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        if not _IDENTIFIER.match(table_name):
            raise ValueError(f"invalid table name: {table_name!r}")
        if pool is None and not dsn:
            raise ValueError("either dsn or pool is required")
        self.dsn = dsn
        self.table_name = table_name
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self.pool = pool or ConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if create_schema:
            self.ensure_schema()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.Error as exc:
            self.logger.warning(
                "postgres_session_store_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, self.backend_name) from exc

    def ensure_schema(self) -> None:
        """Create the session table and its ``login_id`` index if missing."""
        index_name = f"{self.table_name.split('.')[-1]}_login_id_idx"
        with self._connect("ensure_schema") as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table_name} (
                    token_str TEXT PRIMARY KEY,
                    login_id TEXT NOT NULL,
                    token_expire_time TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {index_name} ON {self.table_name} (login_id)"
            )

    def issue(self, token: str, login_id: LoginId, expire_at: datetime) -> None:
        # An expired row with the same token may still exist; it is replaced.
        with self._connect("issue") as conn:
            result = conn.execute(
                f"""
                INSERT INTO {self.table_name} (token_str, login_id, token_expire_time)
                VALUES (%s, %s, %s)
                ON CONFLICT (token_str) DO UPDATE
                SET login_id = EXCLUDED.login_id, token_expire_time = EXCLUDED.token_expire_time
                WHERE {self.table_name}.token_expire_time <= %s
                """,
                (token, login_key(login_id), ensure_utc(expire_at), self._clock()),
            )
            inserted = result.rowcount
        if inserted == 0:
            raise ConstraintViolation("token already issued", {"token": mask_token(token)})

    def fetch(self, token: str) -> Optional[SessionRecord]:
        with self._connect("fetch") as conn:
            row = conn.execute(
                f"""
                SELECT token_str, login_id, token_expire_time FROM {self.table_name}
                WHERE token_str = %s AND token_expire_time > %s
                """,
                (token, self._clock()),
            ).fetchone()
        if not row:
            return None
        return SessionRecord(
            token=str(row["token_str"]),
            login_id=str(row["login_id"]),
            expire_at=ensure_utc(row["token_expire_time"]),
        )

    def refresh(self, token: str, new_expire_at: datetime) -> bool:
        with self._connect("refresh") as conn:
            result = conn.execute(
                f"""
                UPDATE {self.table_name}
                SET token_expire_time = GREATEST(token_expire_time, %s)
                WHERE token_str = %s AND token_expire_time > %s
                """,
                (ensure_utc(new_expire_at), token, self._clock()),
            )
            return result.rowcount > 0

    def revoke(self, token: str) -> None:
        with self._connect("revoke") as conn:
            conn.execute(f"DELETE FROM {self.table_name} WHERE token_str = %s", (token,))

    def revoke_all(self, login_id: LoginId) -> int:
        with self._connect("revoke_all") as conn:
            row = conn.execute(
                f"""
                WITH removed AS (
                    DELETE FROM {self.table_name} WHERE login_id = %s
                    RETURNING token_expire_time
                )
                SELECT count(*) FILTER (WHERE token_expire_time > %s) AS live FROM removed
                """,
                (login_key(login_id), self._clock()),
            ).fetchone()
        return int(row["live"]) if row else 0

    def purge_expired(self) -> int:
        with self._connect("purge_expired") as conn:
            result = conn.execute(
                f"DELETE FROM {self.table_name} WHERE token_expire_time <= %s",
                (self._clock(),),
            )
            removed = result.rowcount
        if removed:
            self.logger.info("postgres_sessions_purged", count=removed, table=self.table_name)
        return removed

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresSessionStore", "DEFAULT_TABLE_NAME"]
