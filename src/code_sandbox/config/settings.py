"""
Code Sandbox Settings Configuration

This module provides centralized configuration management using Pydantic settings.
Configuration is loaded from .env by default; alternative YAML loading is supported.
"""

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from code_sandbox.models.execution import Capability


class SandboxSettings(BaseSettings):
    """
    Sandbox execution configuration: timeouts, default resource limits,
    concurrency, process start method, and the capability ceiling.
    """

    model_config = SettingsConfigDict(env_prefix="SANDBOX_", extra="ignore")

    # Timeouts
    default_timeout_ms: int = Field(default=5000, ge=1, description="Timeout used when a request does not set one")
    max_timeout_ms: int = Field(default=60000, ge=1, description="Upper bound applied to requested timeouts")
    startup_timeout_seconds: float = Field(
        default=10.0, gt=0, le=300, description="Max wait for the sandbox process to become ready"
    )
    poll_interval_ms: int = Field(default=20, ge=1, le=1000, description="Cancellation/deadline check interval")

    # Default resource limits (per-request limits override)
    max_memory_mb: Optional[int] = Field(default=512, ge=1, description="Address-space headroom in MiB")
    max_cpu_seconds: Optional[int] = Field(default=None, ge=1, description="CPU time limit in seconds")
    max_output_chars: int = Field(default=1_000_000, ge=1, description="Max captured characters per execution")

    # Scheduling
    max_concurrent_executions: int = Field(default=4, ge=1, le=256, description="Concurrent sandbox processes")
    start_method: Optional[str] = Field(
        default=None,
        description="multiprocessing start method: fork, spawn, forkserver (None = platform default)",
    )

    # Policy
    static_guard_enabled: bool = Field(default=True, description="Run the static code policy check before executing")
    capture_stderr: bool = Field(default=True, description="Capture stderr writes together with stdout")
    allowed_capabilities: List[Capability] = Field(
        default_factory=lambda: list(Capability),
        description="Capabilities requests may ask for; anything else is refused",
    )

    @field_validator("start_method")
    @classmethod
    def validate_start_method(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        allowed = ("fork", "spawn", "forkserver")
        if v.lower() not in allowed:
            raise ValueError(f"start_method must be one of {allowed}")
        return v.lower()

    @model_validator(mode="after")
    def validate_timeouts(self) -> "SandboxSettings":
        if self.default_timeout_ms > self.max_timeout_ms:
            raise ValueError("default_timeout_ms must not exceed max_timeout_ms")
        return self


class LoggingSettings(BaseSettings):
    """Logging configuration: level, format (json/console), and log file path."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_format: str = Field(default="json", description="Format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path (default: stderr)")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ("json", "console")
        if v.lower() not in allowed:
            raise ValueError(f"log_format must be one of {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        u = v.upper()
        if u not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return u


class Settings(BaseSettings):
    """
    Root settings class. Loads from .env by default; supports creation from YAML.

    Nested models: sandbox, logging.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings, description="Sandbox execution config")
    logging: LoggingSettings = Field(default_factory=LoggingSettings, description="Logging config")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """
        Create Settings from a YAML file. Top-level keys should match
        nested model names (sandbox, logging).
        Environment variables still override when present.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        kwargs: dict[str, Any] = {}
        for name, model_class in [
            ("sandbox", SandboxSettings),
            ("logging", LoggingSettings),
        ]:
            if name in data and isinstance(data[name], dict):
                kwargs[name] = model_class.model_validate(data[name])
        return cls(**kwargs)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance (loads from .env)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Force reload of settings from environment."""
    global _settings
    _settings = Settings()
    return _settings
