"""
Configuration loader for the inbox delivery pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class AuthConfig:
    jwt_secret: str = ""                # empty rejects every bearer credential
    jwt_algorithm: str = "HS256"
    audience: str = ""
    issuer: str = ""
    # token roles allowed into every conversation room (inbox agents)
    agent_roles: list[str] = field(default_factory=lambda: ["agent", "admin"])


@dataclass
class LLMConfig:
    provider: str = "anthropic"         # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.3
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./inbox_pipeline.db"        # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "ai-analysis"
    concurrency: int = 4                # worker tasks per process
    max_attempts: int = 3
    backoff_base: float = 2.0           # seconds, doubled per attempt
    backoff_max: float = 60.0
    promote_interval: float = 1.0       # seconds between delayed-job scans
    poll_interval: float = 0.5          # idle worker sleep
    retention_hours: int = 24


@dataclass
class DeliveryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass
class SchedulerConfig:
    interval: float = 60.0              # seconds between ticks
    batch_size: int = 100
    max_retries: int = 3
    backoff_base: float = 60.0
    backoff_max: float = 3600.0
    tick_timeout: float = 300.0
    retention_days: int = 30
    cleanup_interval: float = 3600.0
    default_channel: str = "whatsapp"


@dataclass
class OutboxConfig:
    max_retries: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    quota_bytes: int = 100 * 1024 * 1024
    max_entries: int = 10000
    batch_size: int = 50
    storage_dir: str = "./data/outbox"


@dataclass
class Settings:
    app_name: str = "InboxPipeline"
    debug: bool = False
    auth: AuthConfig = field(default_factory=AuthConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (unset → empty)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), "")
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


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    raw = raw or {}
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in names})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PIPELINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.auth = _section(AuthConfig, raw.get("auth"))
        settings.llm = _section(LLMConfig, raw.get("llm"))
        settings.database = _section(DatabaseConfig, raw.get("database"))
        settings.queue = _section(QueueConfig, raw.get("queue"))
        settings.delivery = _section(DeliveryConfig, raw.get("delivery"))
        settings.scheduler = _section(SchedulerConfig, raw.get("scheduler"))
        settings.outbox = _section(OutboxConfig, raw.get("outbox"))

        for ch_name, ch_data in (raw.get("channels") or {}).items():
            settings.channels[ch_name] = ChannelConfig(
                enabled=ch_data.get("enabled", False),
                credentials=ch_data.get("credentials", {}),
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
    global _settings
    _settings = None
