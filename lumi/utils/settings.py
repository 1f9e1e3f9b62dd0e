"""Runtime settings loaded from the environment.

Every field reads a ``LUMI_``-prefixed variable (``LUMI_MAX_ITERATIONS`` and so on).
The few whose variable names differ from the field name declare an alias, and
``populate_by_name`` keeps the field names usable as keyword arguments.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lumi.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"


class Settings(BaseSettings):
    """Process-wide configuration for the agent runtime."""

    ollama_url: str = Field(default=DEFAULT_OLLAMA_URL, description="Base URL of the local Ollama server")
    http_timeout: float = Field(default=120.0, gt=0, description="Per-request provider timeout in seconds")
    stream_idle_timeout: float = Field(default=120.0, gt=0, description="Longest gap between stream lines")
    max_retries: int = Field(default=3, ge=0, description="Retries for transient provider failures")
    retry_delay: float = Field(default=1.0, ge=0, description="Base backoff delay in seconds")

    max_iterations: int = Field(default=10, ge=1, description="Tool-loop iterations per run")
    agent_mode_max_iterations: int = Field(default=30, ge=1, description="Tool-loop iterations in agent mode")
    screen_settle_delay: float = Field(default=0.9, ge=0, description="Pause before a fresh screenshot")
    delegation_depth_limit: int = Field(
        default=20, ge=0, alias="LUMI_DELEGATION_DEPTH", description="Longest chain of agent hand-offs"
    )

    requests_per_minute: int = Field(default=50, ge=1, description="Provider requests allowed per minute")
    tokens_per_minute: int = Field(default=40_000, ge=1, description="Estimated tokens allowed per minute")
    rate_limit_enabled: bool = Field(default=True, alias="LUMI_RATE_LIMIT", description="Throttle provider calls")

    data_dir: Path | None = Field(default=None, description="Directory for JSON stores; in-memory when unset")
    working_directory: Path = Field(
        default_factory=Path.home, alias="LUMI_WORKDIR", description="Default cwd for shell commands"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Root log level")

    model_config = SettingsConfigDict(
        env_prefix="LUMI_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("ollama_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("data_dir", "working_directory")
    @classmethod
    def expand_home(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None


def load_settings() -> Settings:
    """Build settings from LUMI_* environment variables.

    Raises:
        pydantic.ValidationError: If a variable holds a value of the wrong type
    """
    settings = Settings()
    logger.debug(f"Loaded settings: {settings}")
    return settings
