"""
Configuration management using Pydantic Settings.
Environment variables use the ``PORTAL_`` prefix (e.g. ``PORTAL_LOG_LEVEL``).
"""
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="PORTAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="portal-orchestrator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8300, ge=1024, le=65535, description="API port")
    cors_origins: List[str] = Field(default=["*"], description="Allowed CORS origins")

    # Scheduling
    max_concurrent_nodes_per_graph: Optional[int] = Field(
        default=None, ge=1, description="Running-node cap per graph (None = unbounded)"
    )
    tick_interval_seconds: float = Field(default=0.7, gt=0.0, description="Delay between scheduler ticks")
    backoff_initial_ms: int = Field(default=250, ge=1, description="First backoff after a failed tick")
    backoff_max_ms: int = Field(default=30000, ge=1, description="Backoff ceiling after failed ticks")

    # Agents
    agent_runner: str = Field(default="simulated", description="Agent runner: simulated or none")
    simulated_step_seconds: float = Field(default=0.7, ge=0.0, description="Delay between simulated progress steps")

    # Persistence
    storage_backend: str = Field(default="memory", description="Storage backend: memory or file")
    storage_path: str = Field(default="~/.portal/state.json", description="JSON file for the file backend")
    storage_write_attempts: int = Field(default=3, ge=1, description="Write attempts before StorageUnavailable")

    # Events
    transcript_limit: int = Field(default=1000, ge=10, description="Events retained per session transcript")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        allowed = ["memory", "file"]
        if v not in allowed:
            raise ValueError(f"Storage backend must be one of {allowed}")
        return v

    @field_validator("agent_runner")
    @classmethod
    def validate_agent_runner(cls, v: str) -> str:
        allowed = ["simulated", "none"]
        if v not in allowed:
            raise ValueError(f"Agent runner must be one of {allowed}")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
