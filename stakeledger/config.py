"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Database Configuration
    # ===================
    database_url: str = Field(
        default="sqlite+aiosqlite:///stakeledger.db",
        description="Database connection string (PostgreSQL in production)"
    )
    db_pool_size: int = Field(default=5, ge=1, le=50)
    db_max_overflow: int = Field(default=10, ge=0, le=100)

    # ===================
    # Local Key-Value Store
    # ===================
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for identity and draft caches (in-process store when unset)"
    )
    cache_namespace: str = Field(default="stakeledger", description="Prefix for every cache key")

    # ===================
    # Settlement Configuration
    # ===================
    require_settlement_confirmation: bool = Field(
        default=False,
        description="Stop finalised sessions at awaiting_settlement until the counterparty confirms"
    )

    # ===================
    # Invite Configuration
    # ===================
    invite_expiry_days: int = Field(
        default=30,
        description="Pending staking invites older than this can be expired"
    )

    # ===================
    # Session Identity Configuration
    # ===================
    identity_claim_ttl_days: int = Field(
        default=365,
        ge=1,
        description="How long a minted session identity stays reserved against reuse"
    )

    # ===================
    # Retry policy for read paths
    # ===================
    read_retry_attempts: int = Field(default=3, ge=1, le=10)
    read_retry_max_wait: int = Field(default=10, ge=1, description="Max backoff in seconds")

    # ===================
    # API Server
    # ===================
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("invite_expiry_days")
    @classmethod
    def validate_invite_expiry(cls, v: int) -> int:
        """Expiry window must be at least one day."""
        if v < 1:
            raise ValueError("invite_expiry_days must be a positive number of days")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def async_database_url(self) -> str:
        """Database URL rewritten for the async driver."""
        url = self.database_url
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
