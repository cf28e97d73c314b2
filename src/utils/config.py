"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Google Custom Search (required for ranking collection)
    GOOGLE_API_KEY: Optional[str] = None
    GOOGLE_CX: Optional[str] = None
    TARGET_DOMAIN: Optional[str] = None

    # Claude API (required for insight generation)
    ANTHROPIC_API_KEY: Optional[str] = None
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Search API pacing (seconds)
    SEARCH_CALL_DELAY: float = 4.0
    SEARCH_MAX_RETRIES: int = 3
    SEARCH_BACKOFF_BASE: float = 5.0
    SEARCH_BACKOFF_MAX: float = 60.0
    SEARCH_BACKOFF_JITTER: float = 2.0
    SEARCH_TIMEOUT: float = 30.0
    CIRCUIT_BREAKER_THRESHOLD: int = 3

    # Batch collection
    PAGES_PER_KEYWORD: int = 2
    KEYWORD_DELAY: float = 8.0
    ERROR_DELAY: float = 15.0
    BATCH_STALE_AFTER_MINUTES: int = 120

    # Timeouts
    ANALYSIS_TIMEOUT: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
