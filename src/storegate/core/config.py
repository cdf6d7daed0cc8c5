"""
Application configuration using Pydantic Settings.

Loads configuration from environment variables with validation.

The settings object is built once by the process entry point and handed
to the router and services explicitly; nothing below main.py reads it
from a module global.
"""

from typing import Annotated, List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Master database (tenant registry + credentials)
    MASTER_DATABASE_URL: str = Field(
        default="sqlite+aiosqlite:///./master.db",
        description="Async SQLAlchemy URL of the Master database"
    )

    # Per-tenant databases
    TENANT_DATABASE_URL_TEMPLATE: str = Field(
        default="sqlite+aiosqlite:///./{database}.db",
        description="Async SQLAlchemy URL with {server} and {database} placeholders"
    )
    TENANT_POOL_SIZE: int = Field(default=10, ge=1)
    TENANT_POOL_MAX_OVERFLOW: int = Field(default=5, ge=0)
    TENANT_POOL_TIMEOUT_SECONDS: int = Field(default=30, ge=1)
    TENANT_POOL_RECYCLE_SECONDS: int = Field(default=3600, ge=60)

    # Idle pool eviction
    ROUTER_CLEANUP_INTERVAL_SECONDS: float = Field(default=300.0, gt=0)
    ROUTER_MAX_IDLE_SECONDS: float = Field(default=1800.0, gt=0)

    # Single-tenant (legacy) deployments
    AUTH_MODE: Literal["multi_tenant", "single_tenant"] = Field(default="multi_tenant")
    LEGACY_DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Async SQLAlchemy URL of the single-tenant database (legacy mode)"
    )

    # Session tokens
    JWT_SECRET: str = Field(
        default="development-secret-change-me-at-least-32-chars",
        description="HMAC signing secret (min 32 chars)"
    )
    JWT_ALGORITHM: str = Field(default="HS256")
    TOKEN_LIFETIME_HOURS: int = Field(default=8, ge=1)
    SESSION_LIFETIME_DAYS: int = Field(default=7, ge=1)
    AUTH_COOKIE_NAME: str = Field(default="token")

    # Lockout policy
    MAX_FAILED_LOGIN_ATTEMPTS: int = Field(default=5, ge=1)
    LOCKOUT_DURATION_MINUTES: int = Field(default=15, ge=1)

    # Password hashing cost (tests lower this)
    BCRYPT_ROUNDS: int = Field(default=12, ge=4, le=31)

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = Field(
        default=["http://localhost:3000", "http://localhost:5173"]
    )

    # Monitoring
    SENTRY_DSN: str = Field(default="")

    # API Configuration
    API_V1_PREFIX: str = Field(default="/api/v1")

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure the signing secret is at least 32 characters."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return v

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def legacy_mode_enabled(self) -> bool:
        """Whether a single-tenant database is configured."""
        return bool(self.LEGACY_DATABASE_URL)
