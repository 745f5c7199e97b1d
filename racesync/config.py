"""Configuration loading for racesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .models import Role


@dataclass
class ApiConfig:
    query_url: str = "http://localhost:8082"
    command_url: str = "http://localhost:8081"
    timeout_seconds: float = 10.0


@dataclass
class AuthConfig:
    email: str = "applicant@example.com"
    role: str = Role.APPLICANT.value
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 1.5


@dataclass
class SyncConfig:
    """Timing of the deferred refreshes that follow a mutation."""

    reconcile_delay_seconds: float = 1.0
    verify_delay_seconds: float = 2.0


@dataclass
class Config:
    api: ApiConfig = field(default_factory=ApiConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with RACESYNC_ prefix."""
    return os.environ.get(f"RACESYNC_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # API overrides
    if query_url := _get_env("QUERY_URL"):
        config.api.query_url = query_url
    if command_url := _get_env("COMMAND_URL"):
        config.api.command_url = command_url
    if timeout := _get_env("TIMEOUT"):
        config.api.timeout_seconds = float(timeout)

    # Auth overrides
    if email := _get_env("EMAIL"):
        config.auth.email = email
    if role := _get_env("ROLE"):
        config.auth.role = role
    if attempts := _get_env("RETRY_ATTEMPTS"):
        config.auth.retry_attempts = int(attempts)

    # Sync overrides
    if reconcile_delay := _get_env("RECONCILE_DELAY"):
        config.sync.reconcile_delay_seconds = float(reconcile_delay)
    if verify_delay := _get_env("VERIFY_DELAY"):
        config.sync.verify_delay_seconds = float(verify_delay)

    return config


def _validate(config: Config) -> None:
    roles = [r.value for r in Role]
    if config.auth.role not in roles:
        raise ValueError(f"Unknown role '{config.auth.role}', expected one of {roles}")
    if config.auth.retry_attempts < 1:
        raise ValueError("auth.retry_attempts must be at least 1")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None or missing, defaults
            are used.

    Returns:
        Loaded and validated Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse API config
            if "api" in data:
                api_data = data["api"]
                config.api = ApiConfig(
                    query_url=api_data.get("query_url", config.api.query_url),
                    command_url=api_data.get("command_url", config.api.command_url),
                    timeout_seconds=api_data.get(
                        "timeout_seconds", config.api.timeout_seconds
                    ),
                )

            # Parse auth config
            if "auth" in data:
                auth_data = data["auth"]
                config.auth = AuthConfig(
                    email=auth_data.get("email", config.auth.email),
                    role=auth_data.get("role", config.auth.role),
                    retry_attempts=auth_data.get(
                        "retry_attempts", config.auth.retry_attempts
                    ),
                    retry_delay_seconds=auth_data.get(
                        "retry_delay_seconds", config.auth.retry_delay_seconds
                    ),
                    retry_backoff=auth_data.get(
                        "retry_backoff", config.auth.retry_backoff
                    ),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    reconcile_delay_seconds=sync_data.get(
                        "reconcile_delay_seconds", config.sync.reconcile_delay_seconds
                    ),
                    verify_delay_seconds=sync_data.get(
                        "verify_delay_seconds", config.sync.verify_delay_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)
    return config
