"""
Configuration management with environment variable validation.
Loads and validates process-level configuration from environment variables.

Runtime tunables (API keys for upstream services, rate limits, iteration caps)
live in the database-backed settings store, not here. Only what must exist
before the database is reachable belongs in this module.
"""
import json
from functools import lru_cache
from typing import List, Optional
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

    # Application
    app_name: str = Field(default="perf-hub")
    app_version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8001)

    # Security
    encryption_key: str = Field(...)  # Required, master secret for the vault
    api_key_header: str = Field(default="X-Hub-Api-Key")
    site_url_header: str = Field(default="X-Hub-Site-Url")
    api_key_prefix_length: int = Field(default=12, ge=4, le=32)
    transit_max_age_seconds: int = Field(default=300, ge=1)

    # Database
    database_url: str = Field(...)  # Required
    database_pool_size: int = Field(default=20)
    database_max_overflow: int = Field(default=10)
    database_echo: bool = Field(default=False)

    # Rate Limiting
    rate_limit_bucket_seconds: int = Field(default=60, ge=1)
    ip_rate_limit: str = Field(default="60/minute")
    ip_rate_limit_enabled: bool = Field(default=True)

    # Performance scoring API
    pagespeed_api_url: str = Field(
        default="https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    )
    pagespeed_timeout_seconds: float = Field(default=120.0)

    # AI API
    claude_api_url: str = Field(default="https://api.anthropic.com/v1/messages")
    claude_api_version: str = Field(default="2023-06-01")
    claude_timeout_seconds: float = Field(default=60.0)
    default_claude_model: str = Field(default="claude-sonnet-4-20250514")
    default_claude_max_tokens: int = Field(default=4096)

    # Optimization loop
    max_optimization_iterations: int = Field(default=5, ge=1)
    convergence_score: int = Field(default=90, ge=0, le=100)

    # Logging
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="/app/logs/hub.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    # CORS
    cors_enabled: bool = Field(default=False)
    cors_origins: List[str] = Field(default=["http://localhost:3000"])

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Ensure the master secret is not a placeholder."""
        if not v or v in ["CHANGE_ME", "changeme", "password", "secret"]:
            raise ValueError(
                "encryption_key must be set to a secure value. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        if len(v) < 32:
            raise ValueError("encryption_key must be at least 32 characters long")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS origins from JSON string if needed."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return v.split(",")
        return v


def validate_environment(overrides: Optional[dict] = None) -> Settings:
    """
    Validate environment configuration on startup.
    Raises ValueError if required variables are missing or invalid.
    """
    settings = Settings(**(overrides or {}))

    if settings.environment == "production":
        if settings.debug:
            raise ValueError("DEBUG must be False in production")
        if settings.database_echo:
            raise ValueError("DATABASE_ECHO must be False in production")

    if not settings.database_url.startswith(("postgresql", "sqlite")):
        raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")

    return settings


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return validate_environment()
