"""Tests for configuration loading and logging setup."""
import os
import tempfile
import textwrap

import pytest

from config.settings import (
    DatabaseConfig, DispatchConfig, Settings, _substitute_env_vars,
    get_settings, load_settings, reset_settings,
)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


def write_yaml(content: str) -> str:
    fd, path = tempfile.mkstemp(suffix=".yaml", prefix="notify_cfg_")
    with os.fdopen(fd, "w") as f:
        f.write(textwrap.dedent(content))
    return path


class TestDefaults:
    def test_database_defaults(self):
        cfg = DatabaseConfig()
        assert cfg.store_backend == "memory"
        assert "sqlite" in cfg.url
        assert cfg.store_file_dir == "./data"

    def test_dispatch_defaults(self):
        cfg = DispatchConfig()
        assert cfg.poll_interval_s == 5.0
        assert cfg.batch_size == 10
        assert cfg.max_attempts == 3
        assert cfg.base_delay_s == 1.0
        assert cfg.max_delay_s == 60.0
        assert cfg.stale_after_s > cfg.delivery_timeout_s

    def test_missing_file_gives_defaults(self):
        settings = load_settings("/nonexistent/settings.yaml")
        assert settings == Settings()


class TestEnvSubstitution:
    def test_set_variable(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_TEST_HOST", "smtp.internal")
        assert _substitute_env_vars("${NOTIFY_TEST_HOST}") == "smtp.internal"

    def test_unset_variable_is_empty(self, monkeypatch):
        monkeypatch.delenv("NOTIFY_TEST_MISSING", raising=False)
        assert _substitute_env_vars("token=${NOTIFY_TEST_MISSING}") == "token="

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("NOTIFY_TEST_MISSING", raising=False)
        assert _substitute_env_vars("${NOTIFY_TEST_MISSING:-sqlite:///x.db}") == "sqlite:///x.db"

    def test_variable_overrides_default(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_TEST_URL", "postgresql://db/notify")
        assert _substitute_env_vars("${NOTIFY_TEST_URL:-sqlite:///x.db}") == "postgresql://db/notify"


class TestLoadSettings:
    def test_loads_sections(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_TEST_TOKEN", "s3cret")
        path = write_yaml("""
            app_name: TestNotify
            database:
              store_backend: file
              store_file_dir: /tmp/notify
            dispatch:
              batch_size: 25
              max_attempts: 5
              unknown_key: ignored
            transport:
              backend: smtp
              smtp_host: mail.example.com
            api:
              admin_token: "${NOTIFY_TEST_TOKEN}"
            logging:
              level: DEBUG
              json: true
        """)
        try:
            settings = load_settings(path)
        finally:
            os.remove(path)

        assert settings.app_name == "TestNotify"
        assert settings.database.store_backend == "file"
        assert settings.dispatch.batch_size == 25
        assert settings.dispatch.max_attempts == 5
        assert settings.dispatch.poll_interval_s == 5.0
        assert settings.transport.smtp_host == "mail.example.com"
        assert settings.api.admin_token == "s3cret"
        assert settings.logging.json is True

    def test_path_from_environment(self, monkeypatch):
        path = write_yaml("""
            dispatch:
              batch_size: 3
        """)
        monkeypatch.setenv("NOTIFY_CONFIG", path)
        try:
            assert get_settings().dispatch.batch_size == 3
        finally:
            os.remove(path)

    def test_get_settings_cached(self, monkeypatch):
        monkeypatch.setenv("NOTIFY_CONFIG", "/nonexistent/settings.yaml")
        assert get_settings() is get_settings()

    def test_bundled_config_loads(self, monkeypatch):
        for var in ("DATABASE_URL", "ADMIN_TOKEN", "SMTP_HOST"):
            monkeypatch.delenv(var, raising=False)
        path = os.path.join(os.path.dirname(__file__), "..", "config", "settings.yaml")
        settings = load_settings(path)
        assert settings.database.url == "sqlite:///./notifications.db"
        assert settings.transport.smtp_host == "localhost"
        assert settings.api.admin_token == ""


class TestLogging:
    def test_configure_json(self):
        import logging
        import structlog
        from config.logging import configure_logging

        configure_logging("DEBUG", json=True)
        try:
            assert logging.getLogger().level == logging.DEBUG
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        finally:
            structlog.reset_defaults()
            logging.getLogger().setLevel(logging.WARNING)
