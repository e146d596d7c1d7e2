"""
Shared configuration management for the Access Review platform.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")

    # Storage
    store_backend: str = Field(default="memory", description="Document store backend: memory|postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access_review")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Identity directory
    identity_service_url: Optional[str] = Field(default=None, description="External identity API; store-backed when unset")
    identity_cache_enabled: bool = Field(default=False)
    identity_cache_ttl_seconds: int = Field(default=300, ge=1)

    # Reconciliation
    allow_empty_import: bool = Field(default=False)
    block_uncorrelated: bool = Field(default=False)
    sod_block_on_conflict: bool = Field(default=False)
    sod_scope: str = Field(default="app", description="Held-entitlement scope for SoD checks: app|global")
    sod_portal_url: str = Field(default="")
    reconcile_batch_size: int = Field(default=50, ge=1)
    reconcile_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    # Campaigns
    review_due_days: int = Field(default=14, ge=1)
    max_reassignments: int = Field(default=3, ge=0)

    # Audit
    default_actor_id: str = Field(default="ADM001")
    default_actor_name: str = Field(default="Admin User")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
