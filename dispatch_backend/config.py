"""
Configuration and settings for the dispatch backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Queue (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_queue_key: str = Field(default="dispatch:notifications")

    # Balanced category fetch
    article_categories: List[str] = Field(
        default_factory=lambda: ["news", "tech", "culture", "business", "science"]
    )
    balanced_max_backfill_iterations: int = Field(default=5, ge=0)
    balanced_fetch_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    balanced_global_sort: bool = Field(default=False)

    # Email (Microsoft Graph)
    graph_api_url: str = Field(default="https://graph.microsoft.com/v1.0")
    azure_tenant_id: Optional[str] = Field(default=None)
    azure_client_id: Optional[str] = Field(default=None)
    azure_client_secret: Optional[str] = Field(default=None)
    email_sender: Optional[str] = Field(default=None)

    # Rankings relay targets
    rankings_notify_emails: List[str] = Field(default_factory=list)
    rankings_forward_urls: List[str] = Field(default_factory=list)
    notification_max_attempts: int = Field(default=3, ge=1)
    webhook_timeout_seconds: float = Field(default=15.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
