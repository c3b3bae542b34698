"""
Configuration loader for the conversation router.
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
class RoutingConfig:
    lease_ttl_seconds: float = 30.0
    inactivity_timeout_seconds: float = 1800.0
    response_timeout_seconds: float = 300.0


@dataclass
class MaintenanceConfig:
    stale_chat_sweep_interval_seconds: float = 43200.0   # every 12h
    stale_chat_max_age_seconds: float = 86400.0          # ACTIVE for more than 24h


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./converse_router.db"        # postgresql:// | sqlite://
    repository_backend: str = "memory"                 # "sql" | "memory"


@dataclass
class StoreConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = ""


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""
    api_version: str = "v19.0"
    base_url: str = "https://graph.facebook.com"
    typing_enabled: bool = True


@dataclass
class Settings:
    app_name: str = "ConverseRouter"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True
    timezone: str = "America/Guayaquil"
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _as_float(raw: dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Setting '{key}' must be numeric, got {value!r}")


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in {"0", "false", "no", "off", ""}


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_ROUTER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.log_level = str(raw.get("log_level", settings.log_level)).upper()
        settings.log_json = _as_bool(raw.get("log_json"), settings.log_json)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "routing" in raw:
            r = raw["routing"] or {}
            defaults = RoutingConfig()
            settings.routing = RoutingConfig(
                lease_ttl_seconds=_as_float(r, "lease_ttl_seconds", defaults.lease_ttl_seconds),
                inactivity_timeout_seconds=_as_float(
                    r, "inactivity_timeout_seconds", defaults.inactivity_timeout_seconds),
                response_timeout_seconds=_as_float(
                    r, "response_timeout_seconds", defaults.response_timeout_seconds),
            )

        if "maintenance" in raw:
            m = raw["maintenance"] or {}
            defaults = MaintenanceConfig()
            settings.maintenance = MaintenanceConfig(
                stale_chat_sweep_interval_seconds=_as_float(
                    m, "stale_chat_sweep_interval_seconds",
                    defaults.stale_chat_sweep_interval_seconds),
                stale_chat_max_age_seconds=_as_float(
                    m, "stale_chat_max_age_seconds", defaults.stale_chat_max_age_seconds),
            )

        if "database" in raw:
            db = raw["database"] or {}
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                repository_backend=db.get("repository_backend", settings.database.repository_backend),
            )

        if "store" in raw:
            s = raw["store"] or {}
            settings.store = StoreConfig(
                backend=s.get("backend", "memory"),
                redis_url=s.get("redis_url", "redis://localhost:6379"),
                key_prefix=s.get("key_prefix", ""),
            )

        if "whatsapp" in raw:
            wa = raw["whatsapp"] or {}
            defaults = WhatsAppConfig()
            settings.whatsapp = WhatsAppConfig(
                phone_number_id=str(wa.get("phone_number_id", "")),
                access_token=wa.get("access_token", ""),
                verify_token=wa.get("verify_token", ""),
                app_secret=wa.get("app_secret", ""),
                api_version=wa.get("api_version", defaults.api_version),
                base_url=wa.get("base_url", defaults.base_url),
                typing_enabled=_as_bool(wa.get("typing_enabled"), defaults.typing_enabled),
            )

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
