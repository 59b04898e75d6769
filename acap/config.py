"""Configuration management for ACAP using Pydantic Settings."""

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenAI settings
    openai_api_key: SecretStr = Field(
        ...,
        description="OpenAI API key for link, selector and article classification",
    )
    classifier_model: str = Field(
        default="gpt-4o-mini",
        description="Chat model used by the classification collaborator",
    )
    classifier_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for a single classifier request",
    )

    # Database settings
    database_url: str = Field(
        default="postgresql+asyncpg://postgres@localhost/acap",
        description="Async SQLAlchemy database URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL queries to console",
    )

    # Browser / HTTP settings
    headless: bool = Field(
        default=True,
        description="Run Chromium in headless mode",
    )
    navigation_timeout_ms: int = Field(
        default=30000,
        description="Timeout for browser navigations in milliseconds",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        description="Timeout for plain HTTP fetches",
    )
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="Default desktop user agent for HTTP and browser requests",
    )

    # Orchestration settings
    source_concurrency: int = Field(
        default=5,
        description="Number of sources scraped concurrently per batch",
    )
    article_concurrency: int = Field(
        default=5,
        description="Number of articles fetched concurrently within one source",
    )
    batch_pause_seconds: float = Field(
        default=1.0,
        description="Pause between source batches",
    )
    max_links_per_source: int = Field(
        default=50,
        description="Maximum article links kept per source and pass",
    )

    # Classification queue settings
    queue_max_concurrent: int = Field(
        default=3,
        description="Concurrent classification workers",
    )
    queue_max_attempts: int = Field(
        default=3,
        description="Attempts before a queue item is dead-lettered",
    )
    queue_retry_delay_seconds: float = Field(
        default=30.0,
        description="Delay before a failed queue item is re-enqueued",
    )
    queue_poll_interval_seconds: float = Field(
        default=1.0,
        description="Worker loop poll interval",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    environment: str = Field(
        default="development",
        description="Environment (development or production)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("classifier_model")
    @classmethod
    def validate_classifier_model(cls, v: str) -> str:
        """Validate classifier model is in allowed list."""
        allowed_models = {"gpt-4o-mini", "gpt-4o", "gpt-4.1-mini", "gpt-4.1"}
        if v not in allowed_models:
            raise ValueError(
                f"Invalid classifier_model: {v}. Allowed values: {', '.join(sorted(allowed_models))}"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @model_validator(mode="after")
    def validate_concurrency(self) -> "Settings":
        """Concurrency and attempt limits must be positive."""
        for name in (
            "source_concurrency",
            "article_concurrency",
            "queue_max_concurrent",
            "queue_max_attempts",
            "max_links_per_source",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        return self


# Global settings instance
settings = Settings()  # type: ignore[call-arg]
