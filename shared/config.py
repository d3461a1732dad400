"""
Shared configuration management for the content cache service.
"""

from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENT_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Remote repository
    github_owner: str = "prolix-oc"
    github_repo: str = "ST-Presets"
    github_ref: str = "HEAD"
    github_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CONTENT_GITHUB_TOKEN", "GITHUB_TOKEN", "github_token"),
    )
    github_api_url: str = "https://api.github.com"
    github_graphql_url: str = "https://api.github.com/graphql"
    github_raw_url: str = "https://raw.githubusercontent.com"
    user_agent: str = "Landing-Page-App/1.0"
    request_timeout_seconds: float = 10.0

    # Retry and circuit breaking for remote calls
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 5.0
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 30.0

    # Quota safety floors: admission is refused at or below these
    rest_quota_floor: int = 10
    batched_quota_floor: int = 50

    # Cache store
    persistent_backend: str = "file"
    persistent_cache_dir: str = Field(
        default=".cache",
        validation_alias=AliasChoices("CONTENT_PERSISTENT_CACHE_DIR", "PERSISTENT_CACHE_DIR", "persistent_cache_dir"),
    )
    persistent_max_size_mb: int = 100
    redis_url: str = "redis://localhost:6379/0"
    memory_max_entries: int = 5000

    # TTLs (seconds)
    listing_ttl_seconds: float = 30
    json_ttl_seconds: float = 1800
    commit_ttl_seconds: float = 1800
    thumbnail_ttl_seconds: float = 3600
    negative_ttl_seconds: float = 60
    max_stale_seconds: float = 86400

    # Warmup and periodic refresh
    content_roots: List[str] = ["Character Cards", "World Books", "Chat Completion"]
    warmup_on_startup: bool = True
    warmup_depth: int = 2
    cache_warm_concurrency: int = 5
    use_batched_warmup: bool = True
    refresh_interval_seconds: float = 300

    # Slugs
    strip_variant_suffix: bool = False

    # Local mirror used instead of the remote store during development
    use_local_cache: bool = Field(
        default=False,
        validation_alias=AliasChoices("CONTENT_USE_LOCAL_CACHE", "USE_LOCAL_CACHE", "use_local_cache"),
    )
    local_cache_path: str = Field(
        default="data",
        validation_alias=AliasChoices("CONTENT_LOCAL_CACHE_PATH", "LOCAL_CACHE_PATH", "local_cache_path"),
    )

    # Boundary security
    webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("CONTENT_WEBHOOK_SECRET", "GITHUB_WEBHOOK_SECRET", "webhook_secret"),
    )
    admin_token: Optional[str] = None

    def resolved_admin_token(self) -> Optional[str]:
        """Token accepted by administrative endpoints."""
        return self.admin_token or self.github_token


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
