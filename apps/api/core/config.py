"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="practice_sync")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Full SQLAlchemy URL. When set it wins over the POSTGRES_* parts
    # (used for SQLite in tests and local tooling).
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # JWT Authentication - tokens are issued by the auth service, we only verify them.
    # Must be set via environment variable, never use default in production
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key shared with the auth service. Must be 32+ chars."
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    API_RELOAD: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")
    # Run tasks inline (tests, single-process dev).
    CELERY_TASK_ALWAYS_EAGER: bool = Field(default=False)

    # Idempotency (legacy push path)
    IDEMPOTENCY_TTL_S: int = Field(default=24 * 60 * 60)  # 24 hours
    # Claim-before-execute marker in Redis for concurrent retries of the same key.
    IDEMPOTENCY_CLAIM_ENABLED: bool = Field(default=False)
    IDEMPOTENCY_CLAIM_TTL_S: int = Field(default=30)

    # Real-time broadcast hand-off (best-effort)
    SYNC_BROADCAST_URL: Optional[str] = Field(default=None)
    SYNC_BROADCAST_SECRET: Optional[str] = Field(default=None)
    SYNC_BROADCAST_TIMEOUT_S: float = Field(default=3.0, gt=0, le=30)
    # Hand events to the Celery worker instead of posting from the request process.
    SYNC_BROADCAST_ASYNC: bool = Field(default=False)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.1)


# Global settings instance
settings = Settings()
