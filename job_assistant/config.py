"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    anthropic_api_key: str = Field(..., alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(default="claude-haiku-4-5-20251001", alias="ANTHROPIC_MODEL")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", alias="ANTHROPIC_BASE_URL")
    max_tokens_per_call: int = Field(default=4096, alias="MAX_TOKENS_PER_CALL")
    context_limit: int = Field(default=200_000, alias="CONTEXT_LIMIT")
    context_threshold: float = Field(default=0.95, gt=0, le=1, alias="CONTEXT_THRESHOLD")
    # Upper bound on model round-trips per stream, continuations included.
    agent_max_iterations: int = Field(default=25, ge=1, alias="AGENT_MAX_ITERATIONS")
    model_timeout_seconds: float = Field(default=60.0, alias="MODEL_TIMEOUT_SECONDS")
    tool_timeout_seconds: float = Field(default=30.0, alias="TOOL_TIMEOUT_SECONDS")
    stream_idle_timeout_seconds: float = Field(default=180.0, alias="STREAM_IDLE_TIMEOUT_SECONDS")
    llm_rate_limit_retries: int = Field(default=2, ge=0, alias="LLM_RATE_LIMIT_RETRIES")
    tool_result_max_bytes: int = Field(default=10_240, alias="TOOL_RESULT_MAX_BYTES")
    tool_result_truncate_chars: int = Field(default=5_000, alias="TOOL_RESULT_TRUNCATE_CHARS")
    memory_window_messages: int = Field(default=20, alias="MEMORY_WINDOW_MESSAGES")
    database_path: Path = Field(default=Path("job_assistant.db"), alias="DATABASE_PATH")
    agent_instructions_path: Path | None = Field(default=None, alias="AGENT_INSTRUCTIONS_PATH")
    browser_service_url: str = Field(default="http://localhost:3001", alias="BROWSER_SERVICE_URL")
    browser_service_api_key: str = Field(default="", alias="BROWSER_SERVICE_API_KEY")
    # Comma-separated Greenhouse board tokens searched by job_search.
    greenhouse_boards: str = Field(default="airbnb,stripe,databricks,figma", alias="GREENHOUSE_BOARDS")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def greenhouse_boards(settings: Settings) -> list[str]:
    """Return the configured Greenhouse board tokens, in order, without blanks."""
    return [token.strip() for token in settings.greenhouse_boards.split(",") if token.strip()]
