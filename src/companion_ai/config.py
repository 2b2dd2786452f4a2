"""Configuration management for Companion AI."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="companion_ai", description="Prefix for log file names")

    # OpenAI
    openai_api_key: SecretStr | None = Field(default=None, description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="Chat completion model")
    openai_request_timeout: float = Field(
        default=30.0, description="Timeout for a single chat completion call (seconds)"
    )

    # Assistants (persona system prompts keyed by assistant id)
    default_assistant_id: str = Field(
        default="emotional", description="Assistant used when a request names none"
    )
    assistant_prompts: dict[str, str] = Field(
        default_factory=lambda: {
            "emotional": (
                "You are a warm, attentive wellness companion. Listen carefully, "
                "reflect feelings back and keep replies short and kind."
            ),
            "corporate": (
                "You are a supportive workplace wellbeing coach. Be practical, "
                "respectful of boundaries and concise."
            ),
        },
        description="System prompt per assistant id (JSON object in the environment)",
    )

    # Queue scheduling (shared by every queue)
    queue_rate_limit_recheck_ms: int = Field(
        default=1000, description="Delay before re-checking an exhausted window (ms)"
    )
    queue_item_timeout_ms: int | None = Field(
        default=None, description="Optional per-attempt timeout (ms); unset means unbounded"
    )
    queue_drain_timeout_seconds: float = Field(
        default=30.0, description="Max seconds to wait for in-flight items on shutdown"
    )

    # Chat queue
    chat_queue_max_concurrent: int = Field(default=2, description="Concurrent chat calls")
    chat_queue_max_retries: int = Field(default=3, description="Retries per chat request")
    chat_queue_retry_delay_ms: int = Field(default=2000, description="Chat backoff unit (ms)")
    chat_queue_rate_limit: int = Field(default=5, description="Chat calls per window")
    chat_queue_rate_limit_window_ms: int = Field(
        default=60000, description="Chat rate limit window (ms)"
    )

    # Response cache
    cache_max_size: int = Field(default=1000, description="Max cached chat responses")
    cache_ttl_seconds: int = Field(default=300, description="Chat response cache TTL (seconds)")

    # Public API
    api_host: str = Field(
        default="0.0.0.0",  # nosec B104 - Intentional for Docker container
        description="API bind host",
    )
    api_port: int = Field(default=8080, description="API bind port")
    api_rate_limit: int = Field(default=10, description="Chat requests per client per window")
    api_rate_limit_window_seconds: float = Field(
        default=60.0, description="Per-client API rate limit window (seconds)"
    )
    admin_jwt_secret: SecretStr | None = Field(
        default=None, description="HS256 secret for admin tokens (queue status endpoint)"
    )
    admin_username: str | None = Field(default=None, description="Operator login username")
    admin_password: SecretStr | None = Field(default=None, description="Operator login password")

    # Queue monitor
    queue_monitor_enabled: bool = Field(default=True, description="Log queue stats periodically")
    queue_monitor_interval_seconds: float = Field(
        default=5.0, description="Seconds between queue stat snapshots"
    )

    @field_validator(
        "chat_queue_max_concurrent",
        "chat_queue_max_retries",
        "chat_queue_retry_delay_ms",
        "chat_queue_rate_limit",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate queue counters are not negative."""
        if v < 0:
            raise ValueError(f"Value must be >= 0, got: {v}")
        return v

    @field_validator(
        "queue_rate_limit_recheck_ms",
        "chat_queue_rate_limit_window_ms",
        "cache_max_size",
        "cache_ttl_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate windows and sizes are positive."""
        if v <= 0:
            raise ValueError(f"Value must be > 0, got: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the stdlib names."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Invalid log level: {v}. Must be one of {sorted(valid)}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
