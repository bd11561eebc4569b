from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tinyauth.logging import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class StoreType(str, Enum):
    """Storage backends a deployment can select."""

    CACHE = "cache"
    RELATIONAL = "relational"
    IN_MEMORY = "inMemory"

    @classmethod
    def _missing_(cls, value: object) -> "StoreType | None":
        if not isinstance(value, str):
            return None
        return _STORE_TYPE_ALIASES.get(value.strip().lower())


_STORE_TYPE_ALIASES = {
    "cache": StoreType.CACHE,
    "redis": StoreType.CACHE,
    "relational": StoreType.RELATIONAL,
    "jdbc": StoreType.RELATIONAL,
    "postgres": StoreType.RELATIONAL,
    "postgresql": StoreType.RELATIONAL,
    "inmemory": StoreType.IN_MEMORY,
    "in_memory": StoreType.IN_MEMORY,
    "memory": StoreType.IN_MEMORY,
    "single": StoreType.IN_MEMORY,
}


class TokenStyle(str, Enum):
    """Token string formats produced by the identifier generators.

    Unknown names resolve to UUID through :meth:`parse` rather than failing,
    so a typo in configuration still yields unguessable tokens.
    """

    UUID = "uuid"
    ULID = "ulid"
    SNOWFLAKE = "snowflake"
    OBJECT_ID = "objectid"
    RANDOM128 = "random128"
    NANOID = "nanoid"

    @classmethod
    def parse(cls, value: "str | TokenStyle | None") -> "TokenStyle":
        if isinstance(value, TokenStyle):
            return value
        if not value:
            return cls.UUID
        normalized = str(value).strip().lower().replace("_", "")
        for style in cls:
            if style.value == normalized:
                return style
        logger.warning("token_style_unrecognized", token_style=value, fallback=cls.UUID.value)
        return cls.UUID


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session authority."""

    store_type: StoreType = env_field(
        StoreType.IN_MEMORY,
        "TINYAUTH_STORE_TYPE",
        description="Session backend: cache (redis), relational (postgres) or inMemory",
    )
    token_name: str = env_field(
        "token",
        "TINYAUTH_TOKEN_NAME",
        description="Header and cookie name carrying the session token",
    )
    token_prefix: str = env_field(
        "",
        "TINYAUTH_TOKEN_PREFIX",
        description="Optional prefix stripped from the header value, e.g. 'Bearer'",
    )
    timeout_seconds: int = env_field(1800, "TINYAUTH_TIMEOUT_SECONDS")
    refresh_ratio: float = env_field(
        0.4,
        "TINYAUTH_REFRESH_RATIO",
        description="Refresh once the remaining lifetime drops to this share of the timeout",
    )
    token_style: TokenStyle = env_field(TokenStyle.UUID, "TINYAUTH_TOKEN_STYLE")
    table_name: str = env_field("auth_token", "TINYAUTH_TABLE_NAME")
    create_schema: bool = env_field(False, "TINYAUTH_CREATE_SCHEMA")
    database_url: str = env_field(
        "postgresql://localhost:5432/tinyauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("tinyauth", "TINYAUTH_REDIS_KEY_PREFIX")
    snowflake_node_id: int = env_field(
        0,
        "SNOWFLAKE_NODE_ID",
        description="Must be distinct for every running instance using snowflake tokens",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_type", mode="before")
    @classmethod
    def _validate_store_type(cls, value: Any) -> StoreType:
        return StoreType(value)

    @field_validator("token_style", mode="before")
    @classmethod
    def _validate_token_style(cls, value: Any) -> TokenStyle:
        return TokenStyle.parse(value)

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeout_seconds must be positive")
        return value

    @field_validator("refresh_ratio")
    @classmethod
    def _validate_refresh_ratio(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("refresh_ratio must be within (0, 1]")
        return value

    @field_validator("table_name")
    @classmethod
    def _validate_table_name(cls, value: str) -> str:
        # interpolated into SQL, so only plain (optionally schema-qualified) identifiers
        if not _IDENTIFIER.match(value):
            raise ValueError(f"invalid table name: {value!r}")
        return value

    @field_validator("token_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        return value.strip()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
