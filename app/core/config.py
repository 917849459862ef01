"""Configuration management for the report stream engine."""

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file (only if accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    # In sandboxed environments, .env might not be accessible
    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Environment
    ENGINE_ENV: str = Field(default="dev", description="Environment: dev, test, staging, prod")

    # Provider credentials
    ANTHROPIC_API_KEY: str = Field(default="", description="Anthropic API key")
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Generation models
    DEFAULT_MODEL: str = Field(
        default="claude-3-5-sonnet-20241022", description="Model used when a request names none"
    )
    ALLOWED_MODELS: list[str] = Field(
        default=[
            "claude-3-5-sonnet-20241022",
            "claude-3-opus-20240229",
            "claude-3-sonnet-20240229",
            "claude-3-haiku-20240307",
            "gpt-4o",
            "gpt-4o-mini",
        ],
        description="Models a generation request may select",
    )
    ENTITY_MODEL: str = Field(
        default="claude-3-haiku-20240307", description="Fast model for entity extraction"
    )
    EDIT_MAX_TOKENS: int = Field(default=4000, description="Output budget for section edits")

    # Request bounds
    PROMPT_MIN_CHARS: int = Field(default=10, description="Minimum prompt length")
    PROMPT_MAX_CHARS: int = Field(default=5000, description="Maximum prompt length")
    MIN_OUTPUT_TOKENS: int = Field(default=100, description="Lower bound for max_tokens")
    MAX_OUTPUT_TOKENS: int = Field(default=100_000, description="Upper bound for max_tokens")
    DEFAULT_MAX_TOKENS: int = Field(default=8000, description="Default output budget")
    DEFAULT_TEMPERATURE: float = Field(default=0.7, description="Default sampling temperature")

    # Incremental assembly
    SECTION_BUFFER_THRESHOLD: int = Field(
        default=500, description="Buffered chars before a section scan runs"
    )
    ENTITY_TEXT_LIMIT: int = Field(
        default=10_000, description="Max chars of report text sent for entity extraction"
    )
    ENTITY_MAX_TOKENS: int = Field(default=2000, description="Output budget for entity extraction")

    # Cache
    REDIS_URL: str | None = Field(default=None, description="Redis URL for cache and pub/sub")
    REPORT_CACHE_TTL: int = Field(default=7200, description="Completed report cache TTL (seconds)")
    EXPORT_CACHE_TTL: int = Field(default=3600, description="Export cache TTL (seconds)")

    # Content store
    CONTENT_STORE_BACKEND: str = Field(default="memory", description="memory or supabase")
    SUPABASE_URL: str | None = Field(default=None, description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str | None = Field(
        default=None, description="Supabase service role key"
    )

    # Runs and live sync
    GENERATION_TIMEOUT_SECONDS: float = Field(
        default=600.0, description="Deadline for a single generation or edit run"
    )
    LIVE_HEARTBEAT_SECONDS: float = Field(
        default=15.0, description="Interval between keep-alive comments on live streams"
    )
    SUBSCRIBER_QUEUE_SIZE: int = Field(
        default=256, description="Buffered events per live subscriber before dropping"
    )
    GENERATION_RATE_LIMIT_PER_HOUR: int = Field(
        default=10, description="Report generations per client per hour (prod)"
    )
    DEV_GENERATION_RATE_LIMIT_PER_HOUR: int = Field(
        default=100, description="Report generations per client per hour (dev/test)"
    )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance
    """
    return Settings()
