"""
Configuration loader for the flow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "flow-workers"
    worker_concurrency: int = 10        # max concurrent sends per worker
    rate_per_second: float = 100.0      # gateway rate ceiling
    rate_burst: int = 100
    max_attempts: int = 3               # total delivery attempts before DLQ
    retry_backoff_base: int = 2         # base seconds for exponential retry backoff
    delayed_promote_interval: float = 1.0


@dataclass
class EngineConfig:
    max_steps_per_advance: int = 200
    lock_retry_attempts: int = 3
    default_http_timeout: float = 30.0
    default_ai_timeout: float = 60.0


@dataclass
class GatewayConfig:
    type: str = "memory"                # "evolution" | "memory"
    api_url: str = "http://localhost:8080"
    api_key: str = ""
    instance_name: str = "default"
    timeout: float = 30.0


@dataclass
class AIConfig:
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    gemini_api_key: str = ""
    default_temperature: float = 0.7
    default_max_tokens: int = 1000
    classifier_temperature: float = 0.3
    classifier_max_tokens: int = 50


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    public_base_url: str = "http://localhost:3000"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    ai: AIConfig = field(default_factory=AIConfig)


_settings: Optional[Settings] = None


_ENV_REF = re.compile(r"\$\{(\w+)(?::([^}]*))?\}")
_TRUE = {"1", "true", "yes", "on"}


def _expand_env(value: Any) -> Any:
    """
    Expand ${VAR} / ${VAR:default} in every string of a parsed YAML tree.
    An unset variable without a default is left as written.
    """
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if not isinstance(value, str):
        return value
    return _ENV_REF.sub(
        lambda m: os.environ.get(m.group(1), m.group(0) if m.group(2) is None else m.group(2)),
        value,
    )


def _coerce(value: Any, default: Any) -> Any:
    """Env-substituted values arrive as strings; match the type of the field default."""
    if not isinstance(value, str) or isinstance(default, str):
        return value
    if isinstance(default, bool):
        return value.strip().lower() in _TRUE
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _merge(current, raw: Optional[dict[str, Any]]):
    """Copy of dataclass `current` with the keys present in `raw` overridden."""
    if not raw:
        return current
    overrides = {
        name: _coerce(raw[name], getattr(current, name))
        for name in current.__dataclass_fields__
        if name in raw
    }
    return replace(current, **overrides)


_SECTIONS = ("database", "queue", "engine", "gateway", "ai")
_TOP_LEVEL = ("app_name", "debug", "public_base_url")


def load_settings(config_path: str = None) -> Settings:
    """
    Read the YAML file at `config_path` (default: $FLOW_ENGINE_CONFIG, then
    the bundled settings.yaml). Missing file or keys fall back to defaults.
    """
    global _settings

    path = Path(config_path or os.environ.get("FLOW_ENGINE_CONFIG")
                or Path(__file__).parent / "settings.yaml")
    raw: dict[str, Any] = {}
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})

    settings = _merge(Settings(), {k: raw[k] for k in _TOP_LEVEL if k in raw})
    for section in _SECTIONS:
        setattr(settings, section, _merge(getattr(settings, section), raw.get(section)))

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
