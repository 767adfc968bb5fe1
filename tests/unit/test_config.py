"""Unit tests for environment-driven configuration."""

from pathlib import Path

import pytest

from webmail_proxy.lib.config import AppConfig, AuthConfig, MailConfig, StorageConfig
from webmail_proxy.lib.config.auth_config import _parse_retired_keys


class TestAppConfig:
    """Test AppConfig."""

    def test_defaults_validate(self):
        AppConfig().validate()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "10")
        monkeypatch.setenv("LOGIN_RATE_LIMIT_WINDOW_MINUTES", "30")

        config = AppConfig.from_env()

        assert config.is_production
        assert config.port == 8080
        assert config.rate_limit_max_requests == 10
        assert config.login_rate_limit_window_minutes == 30

    @pytest.mark.parametrize(
        "overrides",
        [
            {"log_level": "VERBOSE"},
            {"port": 0},
            {"rate_limit_window_seconds": 0},
            {"rate_limit_max_requests": 0},
            {"login_rate_limit_max": 0},
            {"batch_max_workers": 0},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            AppConfig(**overrides).validate()


class TestAuthConfig:
    """Test AuthConfig."""

    def test_retired_keys_parsed(self):
        assert _parse_retired_keys("k0=old, k00 = older ,broken") == {"k0": "old", "k00": "older"}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "jwt")
        monkeypatch.setenv("ENCRYPTION_KEY_ID", "k2")
        monkeypatch.setenv("ENCRYPTION_KEYS_RETIRED", "k1=previous")

        config = AuthConfig.from_env()

        assert config.jwt_secret == "jwt"
        assert config.encryption_key_id == "k2"
        assert config.retired_keys == {"k1": "previous"}
        config.validate()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"token_ttl_days": 0},
            {"jwt_algorithm": "none"},
            {"encryption_key_id": "a$b"},
            {"encryption_key_id": "k1", "retired_keys": {"k1": "x"}},
            {"kdf_iterations": 1000},
        ],
    )
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            AuthConfig(**overrides).validate()


class TestMailConfig:
    """Test MailConfig."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_IMAP_HOST", "imap.fallback.test")
        monkeypatch.setenv("MAIL_VERIFY_TLS", "false")

        config = MailConfig.from_env()

        assert config.default_imap_host == "imap.fallback.test"
        assert config.default_smtp_host is None
        assert config.verify_tls is False

    def test_invalid_port(self):
        with pytest.raises(ValueError):
            MailConfig(default_smtp_port=70000).validate()


class TestStorageConfig:
    """Test StorageConfig."""

    def test_database_path_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("WEBMAIL_PROXY_HOME", str(tmp_path))
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "custom.sqlite"))

        config = StorageConfig.from_env()

        assert config.log_dir == tmp_path / "logs"
        assert config.database_path == tmp_path / "custom.sqlite"
        config.validate()

    def test_bad_database_suffix(self, tmp_path):
        config = StorageConfig(home_dir=tmp_path, log_dir=tmp_path, database_path=Path("data.txt"))
        with pytest.raises(ValueError):
            config.validate()

    def test_ensure_directories(self, tmp_path):
        config = StorageConfig(home_dir=tmp_path / "home", log_dir=tmp_path / "home" / "logs",
                               database_path=tmp_path / "home" / "webmail.db")
        config.ensure_directories()
        assert config.log_dir.is_dir()
