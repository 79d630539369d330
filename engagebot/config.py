"""Configuration management for the engagement bot."""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator


class BlueskyConfig(BaseModel):
    """Bluesky/ATproto connection settings."""

    handle: str = Field(..., description="Monitored account's Bluesky handle")
    app_password: SecretStr = Field(..., description="App password for authentication")


class EngineConfig(BaseModel):
    """Mention processing behavior."""

    poll_interval: int = Field(default=60, ge=5, description="Seconds between mention polls")
    max_workers: int = Field(default=4, ge=1, le=64, description="Mentions processed concurrently")
    send_timeout: float = Field(default=30.0, gt=0, description="Seconds allowed for one send")
    max_reply_length: int = Field(default=300, ge=1, le=10000)
    dry_run: bool = Field(default=False, description="Log replies instead of sending them")
    skip_auto_reply_when_flagged: bool = False
    batch_size: int = Field(default=500, ge=1, description="Mentions read per polling or sweep pass")
    max_send_attempts: int = Field(
        default=3, ge=1, description="Failed sends before a mention is given up on"
    )


class PriorityConfig(BaseModel):
    """Priority scoring weights and level cut-offs."""

    positive_weight: float = 10.0
    neutral_weight: float = 30.0
    negative_weight: float = 50.0
    influence_weight: float = Field(default=1.0, ge=0.0, description="Points per 1000 followers")
    influence_cap: float = Field(default=10.0, ge=0.0)
    audience_threshold: int = Field(default=1000, ge=0)
    medium_cutoff: float = 40.0
    high_cutoff: float = 60.0
    critical_cutoff: float = 80.0

    @model_validator(mode="after")
    def _check_ordering(self) -> "PriorityConfig":
        if not self.positive_weight <= self.neutral_weight <= self.negative_weight:
            raise ValueError("sentiment weights must satisfy positive <= neutral <= negative")
        if not self.medium_cutoff <= self.high_cutoff <= self.critical_cutoff:
            raise ValueError("level cut-offs must be ascending")
        return self


class FlaggingConfig(BaseModel):
    """Human-review flagging settings."""

    sla_minutes: int = Field(default=60, ge=1, description="Unreplied minutes before a mention is flagged")
    escalation_keywords: list[str] = Field(
        default_factory=lambda: [
            "urgent",
            "emergency",
            "refund",
            "lawsuit",
            "cancel my account",
            "data breach",
        ]
    )


class DatabaseConfig(BaseModel):
    """Database settings."""

    path: str = Field(default="~/.engagebot/engagebot.db", description="Path to SQLite database file")


class ApiConfig(BaseModel):
    """HTTP API settings."""

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    default_granularity: Literal["hour", "day"] = "day"


class Config(BaseModel):
    """Root configuration model."""

    bluesky: Optional[BlueskyConfig] = None
    engine: EngineConfig = EngineConfig()
    priority: PriorityConfig = PriorityConfig()
    flagging: FlaggingConfig = FlaggingConfig()
    database: DatabaseConfig = DatabaseConfig()
    api: ApiConfig = ApiConfig()


def expand_env_vars(obj):
    """Replace ``${VAR_NAME}`` strings with environment values, recursively."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        env_var = obj[2:-1]
        value = os.getenv(env_var)
        if value is None:
            raise ValueError(f"Environment variable '{env_var}' is not set")
        return value
    return obj


def load_config(config_path: str | Path = "config.yaml") -> Config:
    """Load and validate configuration from YAML file.

    Supports ${VAR_NAME} syntax for environment variable expansion.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Validated Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValidationError: If config is invalid.
        ValueError: If referenced environment variable is not set.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            "Copy config.example.yaml to config.yaml and fill in your values."
        )

    with path.open() as f:
        raw_config = yaml.safe_load(f) or {}

    raw_config = expand_env_vars(raw_config)

    return Config(**raw_config)
