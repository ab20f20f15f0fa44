"""Application configuration and settings."""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimiterProfile(BaseModel):
    """Quota profile for one category of remote calls."""

    max_concurrent: int = 3
    min_time_ms: int = 150  # Minimum spacing between dispatches
    reservoir: int = 60  # Permits available at start
    reservoir_refresh_amount: int = 6
    reservoir_refresh_interval_ms: int = 1000
    expiration_ms: int = 60_000  # Drop queued calls older than this
    max_retries: int = 5  # Retries on throttling responses
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30_000

    @model_validator(mode="after")
    def check_backoff_cap(self) -> "LimiterProfile":
        # Every retry must wait longer than the one before it.
        if self.max_retries > 0:
            longest = self.backoff_base_ms * 2 ** (self.max_retries - 1)
            if longest > self.backoff_max_ms:
                raise ValueError(
                    f"backoff_max_ms ({self.backoff_max_ms}) must be at least "
                    f"backoff_base_ms * 2^(max_retries - 1) = {longest}"
                )
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    app_name: str = "Catalog Migration"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"

    # OpenAI Configuration
    openai_api_key: str | None = None
    openai_embedding_model: str = "text-embedding-3-large"
    openai_timeout: float = 45.0  # Per-request timeout in seconds
    vector_dimensions: int = 1024

    # Rate limiting (shared by every caller of the remote service)
    embedding_limiter: LimiterProfile = LimiterProfile()
    completion_limiter: LimiterProfile = LimiterProfile(
        max_concurrent=2,
        min_time_ms=500,
        reservoir=20,
        reservoir_refresh_amount=2,
        expiration_ms=60_000,
    )
    limiter_metrics_interval_seconds: float = 300.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
