"""
notifybot configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (NOTIFYBOT_*)
3. Project config (./notifybot.toml)
4. User config (~/.notifybot/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    NOTIFYBOT_STORAGE_BACKEND → storage.backend
    NOTIFYBOT_STORAGE_PATH → storage.path
    NOTIFYBOT_POLL_INTERVAL → poll.interval
    NOTIFYBOT_PUSH_BACKEND → push.backend
    NOTIFYBOT_PUSH_ACCESS_TOKEN → push.access_token
    NOTIFYBOT_PUSH_CREDENTIALS_FILE → push.credentials_file
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from notifybot.core.errors import ConfigError

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class StorageConfig(BaseModel):
    """Where registrations and ephemeral bindings live."""

    backend: str = "sqlite"  # sqlite | memory
    path: str = "~/.notifybot/notifybot.db"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError(f"unknown storage backend {value!r}")
        return value


class PollConfig(BaseModel):
    """Hit-list polling loop."""

    interval: float = 5.0  # seconds between poll cycles
    max_consecutive_failures: int = Field(default=10, ge=1)
    gateway_id: str | None = None  # None = first gateway in topology


class RotationConfig(BaseModel):
    """Ephemeral ID rotation and epoch bucketing."""

    interval: float = 10.0  # seconds between rotation ticks
    period: float = 65536.0  # seconds an ephemeral ID stays valid
    num_offsets: int = Field(default=1024, ge=1)
    address_space_size: int = Field(default=16, ge=1, le=64)
    retained_epochs: int = Field(default=1, ge=0)
    purge_interval: float = 600.0
    derivation_key: str = ""

    @field_validator("derivation_key")
    @classmethod
    def _key_fits_blake2b(cls, value: str) -> str:
        if len(value.encode()) > 64:
            raise ValueError("derivation_key must be at most 64 bytes")
        return value


class DispatchConfig(BaseModel):
    """Push fan-out limits."""

    max_concurrency: int = Field(default=16, ge=1)


class PushConfig(BaseModel):
    """Push backend configuration."""

    backend: str = "fcm"  # fcm | file
    project_id: str = ""
    access_token: str = ""  # static OAuth token, expires in about an hour
    credentials_file: str = ""  # service-account JSON, preferred
    endpoint: str = "https://fcm.googleapis.com"
    timeout: float = 10.0
    log_path: str = "~/.notifybot/pushes.jsonl"

    @property
    def configured(self) -> bool:
        if self.backend == "file":
            return True
        if self.credentials_file:
            return True
        return bool(self.project_id and self.access_token)


class GatewayConfig(BaseModel):
    """A statically configured gateway used to bootstrap the topology."""

    id: str
    address: str
    cert: str = ""


class NetworkConfig(BaseModel):
    """Network gateways and transport."""

    gateways: list[GatewayConfig] = Field(default_factory=list)
    timeout: float = 30.0
    verify: bool = True
    topology_refresh_interval: float = 0.0  # 0 = never refresh


class LoggingConfig(BaseModel):
    """Log destinations."""

    dir: str = "~/.notifybot/logs"
    console_level: str = "WARNING"
    log_events: bool = True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class NotifyBotConfig(BaseModel):
    """Root configuration for notifybot."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    poll: PollConfig = Field(default_factory=PollConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> NotifyBotConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        merged: dict[str, Any] = {}

        user_config_path = user_path or Path.home() / ".notifybot" / "config.toml"
        if user_config_path.exists():
            _deep_merge(merged, _load_toml(user_config_path))

        project_config_path = project_path or Path.cwd() / "notifybot.toml"
        if project_config_path.exists():
            _deep_merge(merged, _load_toml(project_config_path))

        _deep_merge(merged, _load_from_env())

        if overrides:
            _deep_merge(merged, overrides)

        _substitute_env_vars(merged)

        try:
            return NotifyBotConfig(**merged)
        except Exception as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Internal Helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _load_toml(path: Path) -> dict[str, Any]:
    """Load a TOML file."""
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


_ENV_MAPPING = {
    "NOTIFYBOT_STORAGE_BACKEND": ("storage", "backend"),
    "NOTIFYBOT_STORAGE_PATH": ("storage", "path"),
    "NOTIFYBOT_POLL_INTERVAL": ("poll", "interval"),
    "NOTIFYBOT_POLL_MAX_FAILURES": ("poll", "max_consecutive_failures"),
    "NOTIFYBOT_POLL_GATEWAY": ("poll", "gateway_id"),
    "NOTIFYBOT_ROTATION_INTERVAL": ("rotation", "interval"),
    "NOTIFYBOT_ROTATION_DERIVATION_KEY": ("rotation", "derivation_key"),
    "NOTIFYBOT_DISPATCH_MAX_CONCURRENCY": ("dispatch", "max_concurrency"),
    "NOTIFYBOT_PUSH_BACKEND": ("push", "backend"),
    "NOTIFYBOT_PUSH_PROJECT_ID": ("push", "project_id"),
    "NOTIFYBOT_PUSH_ACCESS_TOKEN": ("push", "access_token"),
    "NOTIFYBOT_PUSH_CREDENTIALS_FILE": ("push", "credentials_file"),
    "NOTIFYBOT_LOG_LEVEL": ("logging", "console_level"),
}


def _load_from_env() -> dict[str, Any]:
    """Load configuration from NOTIFYBOT_* environment variables."""
    # Values stay strings; pydantic coerces each one to its field type
    result: dict[str, Any] = {}
    for env_var, (section, key) in _ENV_MAPPING.items():
        value = os.environ.get(env_var)
        if value is not None:
            result.setdefault(section, {})[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """Deep merge override into base (mutates base)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _expand(value: str) -> str:
    for var_name in _ENV_PATTERN.findall(value):
        value = value.replace(f"${{{var_name}}}", os.environ.get(var_name, ""))
    return value


def _substitute_env_vars(data: dict) -> None:
    """Recursively substitute ${ENV_VAR} patterns in string values."""
    for key, value in data.items():
        if isinstance(value, dict):
            _substitute_env_vars(value)
        elif isinstance(value, str):
            data[key] = _expand(value)
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, str):
                    value[i] = _expand(item)
                elif isinstance(item, dict):
                    _substitute_env_vars(item)
