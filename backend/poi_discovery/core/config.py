# backend/poi_discovery/core/config.py
"""
Process-level settings for the POI discovery service.

Values come from the environment (or a local .env file). Tunables that are
adjusted at runtime live in services/discovery/config.py instead.
"""
import logging
import os
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    environment: Literal["development", "test", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Deployment environment name",
    )
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Root log level for the service",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./poi_discovery.db",
        alias="DATABASE_URL",
        description="SQLAlchemy URL of the POI store",
    )
    database_echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements (debug only)",
    )

    # OpenAI
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        alias="OPENAI_API_KEY",
        description="API key for completion and embedding calls",
    )
    openai_timeout_s: float = Field(
        default=20.0,
        alias="OPENAI_TIMEOUT_S",
        description="Transport timeout for OpenAI requests in seconds",
    )
    openai_call_concurrency: int = Field(
        default=3,
        alias="OPENAI_CALL_CONCURRENCY",
        description="Max concurrent OpenAI calls per worker",
    )

    # Wiring
    spatial_backend: Literal["database", "memory"] = Field(
        default="database",
        alias="SPATIAL_BACKEND",
        description="Which spatial store adapter the API wires in",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
