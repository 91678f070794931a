"""Configuration and settings for the prospect_miner package.

Centralizes environment-variable based configuration using Pydantic
for type safety and discoverability.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prospect_miner.models import MiningEnv


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The mining thresholds default to the values the engine has always
    used; they are settings so they can be tuned per deployment.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    mining_env: MiningEnv = Field(MiningEnv.PRODUCTION, validation_alias="MINING_ENV")

    # Worker cadence. Kept long relative to provider latency so a job's
    # ticks never overlap and the provider's rate limits are respected.
    poll_interval_seconds: float = Field(10.0, validation_alias="MINING_POLL_INTERVAL_SECONDS", ge=0)
    max_errors: int = Field(10, validation_alias="MINING_MAX_ERRORS", ge=0)
    exhaustion_empty_pages: int = Field(3, validation_alias="MINING_EXHAUSTION_EMPTY_PAGES", ge=0)

    audit_log_cap: int = Field(500, validation_alias="MINING_AUDIT_LOG_CAP", ge=1)
    snapshot_retention: int = Field(7, validation_alias="MINING_SNAPSHOT_RETENTION", ge=1)

    # Percent of target_count between progress notifications; 0 disables them.
    notification_milestone_step: int = Field(
        25, validation_alias="MINING_NOTIFICATION_MILESTONE_STEP", ge=0, le=100
    )
    notification_email: Optional[str] = Field(None, validation_alias="MINING_NOTIFICATION_EMAIL")

    # memory | postgres | supabase
    store_backend: str = Field("memory", validation_alias="MINING_STORE_BACKEND")
    store_table: str = Field("mining_kv", validation_alias="MINING_STORE_TABLE")
    postgres_url: Optional[str] = Field(None, validation_alias="POSTGRES_URL")
    supabase_url: Optional[str] = Field(None, validation_alias="SUPABASE_URL")
    supabase_key: Optional[str] = Field(None, validation_alias="SUPABASE_SERVICE_KEY")

    # Dotted "module:callable" returning a DiscoveryProvider.
    provider_factory: Optional[str] = Field(None, validation_alias="MINING_PROVIDER")

    @field_validator("mining_env", mode="before")
    @classmethod
    def _normalize_env(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("store_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or "memory"
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Using an accessor keeps imports cheap and avoids repeated parsing.
    """

    return Settings()  # type: ignore[call-arg]
