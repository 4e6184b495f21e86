"""
Runtime settings loaded from environment variables.

Secrets such as the upstream API key live here and nowhere else.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.catalog import DEFAULT_CATALOG, ProviderCatalog
from .loader import load_catalog


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream completion API (OpenRouter-compatible)
    openrouter_api_key: str = Field(default="", alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    request_timeout: float = Field(default=60.0, gt=0, alias="CHAT_COMPARE_REQUEST_TIMEOUT")

    # Local store
    db_path: str = Field(default=".chat-compare.db", alias="CHAT_COMPARE_DB_PATH")

    # Provider catalog (built-in catalog when unset)
    catalog_path: Optional[str] = Field(default=None, alias="CHAT_COMPARE_CATALOG")

    # Replenishment sweep period in seconds
    sweep_seconds: float = Field(default=60.0, gt=0, alias="CHAT_COMPARE_SWEEP_SECONDS")

    log_level: str = Field(default="WARNING", alias="CHAT_COMPARE_LOG_LEVEL")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def resolve_catalog(settings: Settings, path: Optional[str] = None) -> ProviderCatalog:
    """Catalog from an explicit path, the configured path, or the built-in one."""
    catalog_path = path or settings.catalog_path
    if catalog_path:
        return load_catalog(catalog_path)
    return DEFAULT_CATALOG
