from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Background worker
    REDIS_URL: str = "redis://localhost:6379/0"

    # Fulfillment provider
    PROVIDER_BASE_URL: str = "https://provider.invalid/api"
    PROVIDER_API_KEY: str = ""
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Order lifecycle
    ORDER_POLL_TIMEOUT_SECONDS: int = 600  # 10 minutes from created_at
    ORDER_MAX_SUBMIT_ATTEMPTS: int = 5
    ORDER_SUBMIT_BACKOFF_SECONDS: float = 5.0
    FREE_REDOWNLOADS: bool = True

    # Polling scheduler
    SCHEDULER_TICK_SECONDS: float = 5.0
    SCHEDULER_CONCURRENCY: int = 8
    SCHEDULER_BATCH_SIZE: int = 100

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @field_validator("PROVIDER_BASE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
