"""
Configuration module for the Obsidian Vault MCP Server.

Uses pydantic-settings for configuration management with environment variable support.
Environment variables use OBSIDIAN_ prefix (e.g., OBSIDIAN_API_KEY).
"""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import ConfigurationError


class CacheConfig(BaseModel):
    """Tuning knobs for VaultCacheService.

    Passed explicitly into the service so that nothing in the cache layer
    depends on process-wide settings.
    """

    content_max_items: int = Field(default=500, ge=1)
    content_ttl_seconds: float = Field(default=300, gt=0)
    refresh_interval_min: float = Field(default=10, gt=0)
    refresh_concurrency: int = Field(default=8, ge=1)
    repair_enabled: bool = False
    repair_dry_run: bool = True
    max_repairs_per_run: int = Field(default=10, ge=0)
    normalize_tags_to_lowercase: bool = True

    # Retry policy for per-file fetches (transient failures only)
    stat_max_retries: int = Field(default=2, ge=0)
    fetch_max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=0.25, ge=0)
    update_max_retries: int = Field(default=3, ge=0)
    update_retry_delay_seconds: float = Field(default=0.3, ge=0)


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Environment variables:
    - OBSIDIAN_API_KEY: Bearer token for the Local REST API plugin
    - OBSIDIAN_BASE_URL: Base URL of the Local REST API plugin
    - OBSIDIAN_VERIFY_SSL: Verify TLS certificates (the plugin is self-signed)
    - OBSIDIAN_VAULT_PATH: Read the vault straight from disk instead of the API
    - OBSIDIAN_ENABLE_CACHE: Build and maintain the vault cache
    - OBSIDIAN_API_SEARCH_TIMEOUT_MS: Live search budget before falling back to the cache
    - OBSIDIAN_CACHE_*: Cache sizing, refresh and repair behavior
    - OBSIDIAN_LOG_LEVEL: Minimum log level
    """

    api_key: str = ""
    base_url: str = "http://127.0.0.1:27123"
    verify_ssl: bool = False
    vault_path: Path | None = None
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    enable_cache: bool = True
    api_search_timeout_ms: int = Field(default=30_000, ge=1)

    cache_content_max_items: int = Field(default=500, ge=1)
    cache_content_ttl_seconds: int = Field(default=300, ge=1)
    cache_refresh_interval_min: float = Field(default=10, gt=0)
    cache_refresh_concurrency: int = Field(default=8, ge=1)
    cache_repair_enabled: bool = False
    cache_repair_dry_run: bool = True
    cache_max_repairs_per_run: int = Field(default=10, ge=0)
    cache_normalize_tags_to_lowercase: bool = True

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="OBSIDIAN_")

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            content_max_items=self.cache_content_max_items,
            content_ttl_seconds=self.cache_content_ttl_seconds,
            refresh_interval_min=self.cache_refresh_interval_min,
            refresh_concurrency=self.cache_refresh_concurrency,
            repair_enabled=self.cache_repair_enabled,
            repair_dry_run=self.cache_repair_dry_run,
            max_repairs_per_run=self.cache_max_repairs_per_run,
            normalize_tags_to_lowercase=self.cache_normalize_tags_to_lowercase,
        )

    def validate_source(self) -> None:
        """Fail fast when no note source can be built.

        Raises:
            ConfigurationError: If neither a vault path nor an API key is set
        """
        if self.vault_path is not None:
            if not self.vault_path.is_dir():
                raise ConfigurationError(f"Vault path is not a directory: {self.vault_path}")
            return
        if not self.api_key:
            raise ConfigurationError("OBSIDIAN_API_KEY is required when OBSIDIAN_VAULT_PATH is not set")


# Global settings instance, read by the entry point only
settings = Settings()
