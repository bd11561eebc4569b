import pytest
from pydantic import ValidationError

from tinyauth.config import Settings, StoreType, TokenStyle, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.store_type is StoreType.IN_MEMORY
        assert settings.token_name == "token"
        assert settings.timeout_seconds == 1800
        assert settings.refresh_ratio == 0.4
        assert settings.token_style is TokenStyle.UUID
        assert settings.table_name == "auth_token"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("redis", StoreType.CACHE),
            ("cache", StoreType.CACHE),
            ("jdbc", StoreType.RELATIONAL),
            ("PostgreSQL", StoreType.RELATIONAL),
            ("inMemory", StoreType.IN_MEMORY),
            ("single", StoreType.IN_MEMORY),
        ],
    )
    def test_store_type_aliases(self, raw, expected):
        assert Settings(store_type=raw).store_type is expected

    def test_unknown_store_type_rejected(self):
        with pytest.raises(ValidationError):
            Settings(store_type="mongo")

    def test_unknown_token_style_falls_back(self):
        assert Settings(token_style="sha256").token_style is TokenStyle.UUID

    @pytest.mark.parametrize("field, value", [
        ("timeout_seconds", 0),
        ("refresh_ratio", 0),
        ("refresh_ratio", 1.5),
        ("table_name", "auth_token; drop table x"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TINYAUTH_STORE_TYPE", "redis")
        monkeypatch.setenv("TINYAUTH_TIMEOUT_SECONDS", "60")
        monkeypatch.setenv("TINYAUTH_TOKEN_STYLE", "ulid")
        monkeypatch.setenv("TINYAUTH_TOKEN_PREFIX", " Bearer ")
        monkeypatch.setenv("SNOWFLAKE_NODE_ID", "7")
        settings = Settings.from_env()
        assert settings.store_type is StoreType.CACHE
        assert settings.timeout_seconds == 60
        assert settings.token_style is TokenStyle.ULID
        assert settings.token_prefix == "Bearer"
        assert settings.snowflake_node_id == 7

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("TINYAUTH_TOKEN_NAME", "first")
        reset_settings_cache()
        assert get_settings().token_name == "first"
        monkeypatch.setenv("TINYAUTH_TOKEN_NAME", "second")
        assert get_settings().token_name == "first"
        reset_settings_cache()
        assert get_settings().token_name == "second"
