"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Practice backend
    API_BASE_URL: str = "http://localhost:8000"
    API_TIMEOUT_READ: float = 10.0
    API_TIMEOUT_MUTATE: float = 30.0
    API_MAX_RETRIES: int = 3

    # Help generation runs an LLM server-side, so it gets a longer timeout
    HELP_GENERATION_TIMEOUT: float = 30.0
    # Speaking assessment uploads ~60s of WAV audio
    ASSESSMENT_TIMEOUT: float = 120.0

    # Turn-state grace windows (seconds)
    AI_GRACE_PERIOD: float = 0.2
    USER_GRACE_PERIOD: float = 0.3

    # Contextual help
    HELP_DEBOUNCE_SECONDS: float = 0.5
    HELP_SESSION_END_GUARD_SECONDS: float = 10.0
    HELP_CONTEXT_MESSAGES: int = 5
    HELP_DEFAULT_LANGUAGE: str = "english"

    # Speaking assessment recording
    RECORDING_TARGET_SECONDS: int = 60
    RECORDING_MINIMUM_SECONDS: int = 45
    RECORDING_COUNTDOWN_SECONDS: int = 5
    RECORDING_WARNING_SECONDS: int = 10


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
