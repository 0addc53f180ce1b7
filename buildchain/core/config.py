"""
Build Chain - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Build Chain"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./buildchain.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Workspace
    # ==========================================================================
    WORKSPACE_DIR: Path = Path("~/.buildchain/workspace").expanduser()
    AGENT_DEFINITIONS_DIR: Optional[Path] = None  # Defaults to bundled agents

    # ==========================================================================
    # Agent Execution Service
    # ==========================================================================
    AGENT_SERVICE_URL: str = "http://localhost:8765"
    AGENT_SERVICE_API_KEY: str | None = None
    AGENT_SERVICE_TIMEOUT_SECONDS: float = 900.0
    MODEL_FAST: str = "claude-sonnet"
    MODEL_COMPLEX: str = "claude-opus"
    DEFAULT_MAX_TURNS: int = 100

    # ==========================================================================
    # Pipeline
    # ==========================================================================
    PHASE_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    PHASE_RETRY_BACKOFF_SECONDS: float = Field(default=2.0, ge=0)
    CONFIRMATION_TTL_MINUTES: int = Field(default=15, ge=10, le=30)
    DEFAULT_LOCALE: str = "en"

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
