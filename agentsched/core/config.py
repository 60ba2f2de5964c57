"""
agentsched Configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (AGENTSCHED_*)
3. Project config (./agentsched.toml)
4. User config (~/.agentsched/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    AGENTSCHED_STORAGE_BACKEND → storage.backend
    AGENTSCHED_STORAGE_PATH → storage.path
    AGENTSCHED_NAMESPACE → storage.namespace
    AGENTSCHED_CHECK_INTERVAL → worker.check_interval
    AGENTSCHED_LEASE_NAME → leader.lease_name
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from agentsched.core.errors import ConfigError

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StorageConfig(BaseModel):
    """Record backend configuration."""

    backend: str = "sqlite"  # "sqlite" | "memory"
    path: str = "~/.agentsched/records.db"
    namespace: str = "default"


class StoreConfig(BaseModel):
    """Schedule store layout. Label keys and record names live here."""

    label_prefix: str = "agentapi.proxy/"
    record_prefix: str = "agentapi-schedule-"
    legacy_key: str = "agentapi-schedules"
    migrate_on_start: bool = True


class WorkerConfigModel(BaseModel):
    """Schedule worker configuration."""

    enabled: bool = True
    check_interval: float = 30.0  # seconds
    default_timezone: str = "UTC"


class LeaderConfig(BaseModel):
    """Leader election configuration."""

    enabled: bool = True
    lease_duration: float = 15.0
    renew_deadline: float = 10.0
    retry_period: float = 2.0
    lease_name: str = "agentapi-schedule-worker"

    @model_validator(mode="after")
    def _check_timings(self) -> LeaderConfig:
        if not (self.lease_duration > self.renew_deadline > self.retry_period > 0):
            raise ValueError(
                "leader timings must satisfy "
                "lease_duration > renew_deadline > retry_period > 0"
            )
        return self


class LoggingConfig(BaseModel):
    """Log output configuration."""

    dir: str = "~/.agentsched/logs"
    level: str = "INFO"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SchedConfig(BaseModel):
    """Root configuration for agentsched."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    worker: WorkerConfigModel = Field(default_factory=WorkerConfigModel)
    leader: LeaderConfig = Field(default_factory=LeaderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> SchedConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        user_config_path = user_path or Path.home() / ".agentsched" / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        project_config_path = project_path or Path.cwd() / "agentsched.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        _deep_merge(merged, _load_from_env())

        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return SchedConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_storage_path(self) -> Path:
        """Resolved SQLite file path."""
        return Path(self.storage.path).expanduser()

    def get_log_dir(self) -> Path:
        return Path(self.logging.dir).expanduser()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    import tomllib

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def _load_from_env() -> dict[str, Any]:
    """Load configuration from AGENTSCHED_* environment variables."""
    result: dict[str, Any] = {}

    env_mapping = {
        "AGENTSCHED_STORAGE_BACKEND": ("storage", "backend"),
        "AGENTSCHED_STORAGE_PATH": ("storage", "path"),
        "AGENTSCHED_NAMESPACE": ("storage", "namespace"),
        "AGENTSCHED_CHECK_INTERVAL": ("worker", "check_interval"),
        "AGENTSCHED_WORKER_ENABLED": ("worker", "enabled"),
        "AGENTSCHED_DEFAULT_TIMEZONE": ("worker", "default_timezone"),
        "AGENTSCHED_LEADER_ENABLED": ("leader", "enabled"),
        "AGENTSCHED_LEASE_NAME": ("leader", "lease_name"),
        "AGENTSCHED_LEASE_DURATION": ("leader", "lease_duration"),
        "AGENTSCHED_RENEW_DEADLINE": ("leader", "renew_deadline"),
        "AGENTSCHED_RETRY_PERIOD": ("leader", "retry_period"),
        "AGENTSCHED_LOG_LEVEL": ("logging", "level"),
    }

    for env_var, (section, key) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            result.setdefault(section, {})[key] = _convert_value(value)

    return result


def _convert_value(value: str) -> Any:
    """Convert string value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _substitute_env_vars(data: dict) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    pattern = re.compile(r"\$\{([^}]+)\}")

    def _sub(text: str) -> str:
        return pattern.sub(lambda m: os.environ.get(m.group(1), ""), text)

    for key, value in data.items():
        if isinstance(value, dict):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            data[key] = _sub(value)
        elif isinstance(value, list):
            data[key] = [_sub(v) if isinstance(v, str) else v for v in value]
