"""Configuration management for turnloop."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Database Settings
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")
    postgres_db: str = Field(default="turnloop", alias="POSTGRES_DB")
    postgres_user: str = Field(default="postgres", alias="POSTGRES_USER")
    postgres_password: str = Field(default="password", alias="POSTGRES_PASSWORD")
    database_url: str | None = Field(default=None, alias="DATABASE_URL")

    # PostgreSQL Connection Pool Settings
    postgres_pool_size: int = Field(default=10, alias="POSTGRES_POOL_SIZE")
    postgres_max_overflow: int = Field(default=20, alias="POSTGRES_MAX_OVERFLOW")
    postgres_pool_recycle: int = Field(default=3600, alias="POSTGRES_POOL_RECYCLE")
    postgres_pool_pre_ping: bool = Field(default=True, alias="POSTGRES_POOL_PRE_PING")

    # Redis Settings
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_password: str | None = Field(default=None, alias="REDIS_PASSWORD")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    # Work queue and notifications
    turn_queue_stream: str = Field(default="turnloop:jobs", alias="TURN_QUEUE_STREAM")
    turn_queue_group: str = Field(default="turnloop-workers", alias="TURN_QUEUE_GROUP")
    turn_queue_block_ms: int = Field(default=5000, alias="TURN_QUEUE_BLOCK_MS")
    # Stable consumer name; required for a restarted worker to reclaim its pending jobs
    turn_worker_name: str | None = Field(default=None, alias="TURN_WORKER_NAME")
    turn_event_channel_prefix: str = Field(
        default="turnloop:turn-events:", alias="TURN_EVENT_CHANNEL_PREFIX"
    )

    # Agent Settings
    agent_max_turns: int = Field(default=5, alias="AGENT_MAX_TURNS", ge=1)
    agent_history_window: int = Field(default=20, alias="AGENT_HISTORY_WINDOW", ge=1)
    agent_approval_mode: Literal["workflow", "inline"] = Field(
        default="workflow", alias="AGENT_APPROVAL_MODE"
    )

    # Error reporting
    error_message_max_length: int = Field(default=255, alias="ERROR_MESSAGE_MAX_LENGTH")
    error_detail_max_length: int = Field(default=32000, alias="ERROR_DETAIL_MAX_LENGTH")

    # History
    history_page_size: int = Field(default=25, alias="HISTORY_PAGE_SIZE", ge=1)

    # Action implementations: implementation key -> "package.module:attribute"
    action_implementations: dict[str, str] = Field(
        default_factory=dict, alias="ACTION_IMPLEMENTATIONS"
    )

    # LLM adapter factory: "package.module:attribute", called without arguments
    llm_adapter: str | None = Field(default=None, alias="LLM_ADAPTER")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("agent_approval_mode", mode="before")
    @classmethod
    def normalize_approval_mode(cls, value: str | None) -> str:
        """Normalize approval mode value from environment."""
        if value is None:
            return "workflow"
        normalized = str(value).strip().lower()
        if normalized in {"workflow", "inline"}:
            return normalized
        raise ValueError("AGENT_APPROVAL_MODE must be one of: workflow, inline")

    @property
    def postgres_url(self) -> str:
        """Get the database connection URL."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return (
                f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
            )
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
