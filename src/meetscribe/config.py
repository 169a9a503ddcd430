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

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./meetscribe.db"

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Monitoring
    SENTRY_DSN: str = ""

    # Chunk limits
    MAX_CHUNK_BYTES: int = 50 * 1024 * 1024
    MAX_CHUNKS_PER_MEETING: int = 2000
    MAX_MEETING_DURATION_SECONDS: int = 4 * 60 * 60

    # Summary jobs -- retry bound and backoff for rate-limited upstreams
    SUMMARY_MAX_ATTEMPTS: int = 4
    SUMMARY_BACKOFF_BASE: float = 2.0
    SUMMARY_BACKOFF_MAX: float = 60.0
    SUMMARY_WORKERS: int = 2
    SUMMARY_MAX_TOKENS: int = 2048

    # Idle finalization (0 disables the sweep)
    IDLE_FINALIZE_SECONDS: float = 300.0
    IDLE_SWEEP_INTERVAL: float = 30.0

    # Speech-to-text (Deepgram pre-recorded API)
    DEEPGRAM_API_KEY: str = ""
    DEEPGRAM_MODEL: str = "nova-3"
    DEEPGRAM_LANGUAGE: str = "en-US"

    # LLM Providers
    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    LLM_TIMEOUT: int = 60


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
