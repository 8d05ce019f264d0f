"""
Configuration management using Pydantic Settings.
Every value can be overridden through a DEVFLOW_-prefixed environment variable
or a local .env file.
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="DEVFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="devflow", description="Application name")
    environment: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")
    api_tokens: List[str] = Field(default_factory=list, description="Accepted bearer tokens for API and live listeners")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    # Durable store
    db_path: str = Field(default=".devflow/devflow.db", description="SQLite database path")

    # Cache / event bus
    redis_url: Optional[str] = Field(default=None, description="Redis URL; in-process cache and bus when unset")
    cache_ttl_seconds: int = Field(default=3600, ge=1, description="Workflow state cache TTL")
    cache_key_prefix: str = Field(default="workflow:state:", description="Namespace for cached workflow states")
    stream_prefix: str = Field(default="devflow", description="Namespace for Redis event streams")

    # Orchestration
    max_retries: int = Field(default=3, ge=1, description="Failures tolerated before a task is terminally failed")
    quality_format_threshold: int = Field(default=60, ge=0, le=100, description="Quality score that triggers auto-format")
    max_concurrent_tasks: int = Field(default=4, ge=1, le=64, description="Workflows executed concurrently")

    # Command execution
    command_timeout_seconds: int = Field(default=300, ge=1, description="Hard timeout for a single command")
    command_debug_attempts: int = Field(default=3, ge=1, description="Attempts made by the auto-debug loop")
    test_command: str = Field(default="pytest -q", description="Command used to run the test suite")
    lint_command: Optional[str] = Field(default=None, description="Command used for static analysis")
    format_command: Optional[str] = Field(default=None, description="Command used to auto-format code")

    # LLM completion provider (OpenAI-compatible)
    llm_base_url: Optional[str] = Field(default=None, description="Chat completions base URL")
    llm_api_key: Optional[str] = Field(default=None, description="Chat completions API key")
    llm_model: str = Field(default="gpt-4o-mini", description="Completion model")
    llm_timeout_seconds: int = Field(default=60, ge=1, description="Completion request timeout")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_tokens_in_production(self) -> "Settings":
        """Refuse an open gateway in production."""
        if self.environment == "production" and not self.api_tokens:
            raise ValueError("api_tokens must be configured in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def ensure_directories(self) -> None:
        """Create the directory holding the SQLite database."""
        Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
