"""
Configuration loader for the notification dispatcher.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./notifications.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    create_tables: bool = True                         # run create_all at startup (sql only)


@dataclass
class DispatchConfig:
    poll_interval_s: float = 5.0        # seconds between dispatcher cycles
    batch_size: int = 10                # max records claimed per cycle
    concurrency: int = 5                # max concurrent deliveries per worker
    max_attempts: int = 3               # attempts before a record is terminally failed
    base_delay_s: float = 1.0           # backoff base: 1s, 2s, 4s, ...
    max_delay_s: float = 60.0           # backoff ceiling
    delivery_timeout_s: float = 10.0    # per-attempt transport timeout
    stale_after_s: float = 60.0         # in_flight older than this is recovered at startup
    shutdown_grace_s: Optional[float] = None  # default: delivery_timeout_s + 5
    worker_name: str = ""               # defaults to host-pid


@dataclass
class TransportConfig:
    backend: str = "noop"               # "noop" | "smtp" | "http"
    from_email: str = "no-reply@example.com"
    from_name: str = "Notifications"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_start_tls: bool = True
    http_url: str = ""
    http_token: str = ""


@dataclass
class ApiConfig:
    admin_token: str = ""               # empty disables the X-Admin-Token check
    run_dispatcher: bool = True         # host the dispatcher inside the API process


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "NotificationDispatcher"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values.

    Unset variables without a default become an empty string.
    """
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name) or (default or "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a raw dict, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "NOTIFY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "dispatch" in raw:
            settings.dispatch = _section(DispatchConfig, raw["dispatch"])
        if "transport" in raw:
            settings.transport = _section(TransportConfig, raw["transport"])
        if "api" in raw:
            settings.api = _section(ApiConfig, raw["api"])
        if "logging" in raw:
            settings.logging = _section(LoggingConfig, raw["logging"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
