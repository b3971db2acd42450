"""
Sync Bridge Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with SYNC_BRIDGE_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from sync_bridge.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        remote={"url": "https://erp.example.com", "database": "prod"},
        queue={"max_attempts": 5},
    )
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemoteConfig(BaseModel):
    """Connection settings for the remote business-object API."""

    url: str = Field(
        default="",
        description="Base URL of the remote system (JSON-RPC endpoint host)",
    )
    database: str = Field(
        default="",
        description="Remote database name",
    )
    username: str = Field(
        default="",
        description="Login used to authenticate against the remote system",
    )
    api_key: SecretStr = Field(
        default=SecretStr(""),
        description="API key or password for the remote user",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-request timeout",
    )
    verify_ssl: bool = Field(
        default=True,
        description="Verify TLS certificates",
    )

    @field_validator("api_key", mode="before")
    @classmethod
    def validate_api_key(cls, v: Any) -> SecretStr:
        """Accept plain strings from env vars and config files."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")


class QueueOptions(BaseModel):
    """Options controlling the durable job queue."""

    database_path: Path = Field(
        default=Path(".sync-bridge.db"),
        description="SQLite file holding the queue and the entity map",
    )
    batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Jobs claimed per batch",
    )
    claim_timeout_seconds: int = Field(
        default=600,
        ge=1,
        description="Seconds before a processing claim becomes reclaimable",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Total attempts before a transient failure is dead-lettered",
    )
    backoff_base_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Base delay for exponential backoff",
    )
    backoff_max_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Upper bound for a single backoff delay",
    )
    backoff_jitter: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Random extra delay as a fraction of the computed delay",
    )
    default_priority: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Priority for new jobs (lower runs first)",
    )
    push_debounce_seconds: int = Field(
        default=5,
        ge=0,
        description="Delay applied to push jobs raised by change notifications",
    )
    pull_debounce_seconds: int = Field(
        default=0,
        ge=0,
        description="Delay applied to pull jobs raised by change notifications",
    )
    coalesce: bool = Field(
        default=True,
        description="Merge change notifications into an equivalent pending job",
    )
    push_lock_seconds: int = Field(
        default=60,
        ge=1,
        description="Lifetime of the per-entity lock held while creating a remote record",
    )
    retention_days: int = Field(
        default=7,
        ge=1,
        description="Age after which done and dead jobs are purged by cleanup",
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> Self:
        """Ensure the backoff cap is not below the base delay."""
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self


class SyncOptions(BaseModel):
    """Options controlling dispatcher behavior."""

    dry_run: bool = Field(
        default=False,
        description="List due jobs without claiming or executing them",
    )
    drop_dormant_jobs: bool = Field(
        default=False,
        description="Dead-letter queued jobs of modules dormant by mutual exclusion",
    )
    max_dependency_depth: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum nesting of inline dependency pushes",
    )
    batch_time_limit_seconds: float = Field(
        default=55.0,
        gt=0,
        description="Stop claiming new batches after this wall-clock time",
    )
    max_batches_per_run: int = Field(
        default=20,
        ge=1,
        description="Safety cap on batches processed in one run",
    )
    disabled_modules: list[str] = Field(
        default_factory=list,
        description="Modules registered but not enabled",
    )


class BreakerOptions(BaseModel):
    """Circuit breaker protecting the remote system."""

    enabled: bool = Field(default=True, description="Enable the circuit breaker")
    failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failing batches before the breaker opens",
    )
    failure_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Transient failure ratio at which a batch counts as failing",
    )
    recovery_delay_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds the breaker stays open before a probe run",
    )
    module_enabled: bool = Field(
        default=True,
        description="Pause individual modules that keep failing",
    )
    module_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failing batches before a module is paused",
    )
    module_recovery_delay_seconds: int = Field(
        default=600,
        ge=1,
        description="Seconds a paused module waits before a probe batch",
    )
    module_state_max_age_seconds: int = Field(
        default=7200,
        ge=1,
        description="Age after which a paused module's state is discarded",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for Sync Bridge.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (SYNC_BRIDGE_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export SYNC_BRIDGE_REMOTE__URL="https://erp.example.com"
        export SYNC_BRIDGE_REMOTE__API_KEY="secret"
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_BRIDGE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    queue: QueueOptions = Field(default_factory=QueueOptions)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    breaker: BreakerOptions = Field(default_factory=BreakerOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        if "api_key" in data.get("remote", {}):
            data["remote"]["api_key"] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            lines = []
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        lines.append(f"{k} = {json.dumps(v)}")
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            path.write_text("\n".join(lines))
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_credentials(self) -> list[str]:
        """Validate that remote credentials are present. Returns list of errors."""
        errors = []
        if not self.remote.url:
            errors.append("remote.url is required")
        if not self.remote.database:
            errors.append("remote.database is required")
        if not self.remote.username:
            errors.append("remote.username is required")
        if not self.remote.api_key.get_secret_value():
            errors.append("remote.api_key is required")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Top-level sections or values to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
