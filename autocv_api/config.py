"""Environment configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Mock control (opt-in feature gate for testing)
    mock_openrouter: bool = False  # Stream a canned analysis instead of calling OpenRouter
    mock_fragment_delay_seconds: float = 0.02

    # OpenRouter configuration
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "google/gemini-2.5-pro"
    llm_max_tokens: int = 8192
    llm_temperature: float = 0.4
    llm_timeout_seconds: float = 120.0

    # Operation management
    operation_ttl: int = 1800  # 30 minutes of inactivity
    max_operations: int = 1000
    reaper_interval_seconds: float = 60.0
    sse_heartbeat_seconds: float | None = 15.0

    # Input limits
    max_upload_bytes: int = 10 * 1024 * 1024
    job_posting_fetch_timeout: float = 10.0
    job_posting_max_chars: int = 20000
    max_refinement_chars: int = 2000

    # Result persistence
    persistence_enabled: bool = True
    persistence_db_path: str = "data/autocv.sqlite3"

    # Rate limiting
    rate_limit_per_minute: int = 10

    # Server configuration
    port: int = 3001
    host: str = "0.0.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    environment: Literal["development", "production"] = "development"
    cors_allow_origins: list[str] = ["*"]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
