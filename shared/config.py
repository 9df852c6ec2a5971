"""
Shared configuration management for the groups engine.
"""

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GROUPS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    storage_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/groups")
    postgres_min_pool_size: int = Field(default=2, ge=1)
    postgres_max_pool_size: int = Field(default=10, ge=1)
    storage_timeout_seconds: float = Field(default=10.0, gt=0)

    # Observability
    metrics_enabled: bool = Field(default=False)
    metrics_port: int = Field(default=9090)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "groups"


def get_config(**overrides: Any) -> ServiceConfig:
    """Get configuration, environment first, explicit overrides last."""
    return ServiceConfig(**overrides)
