"""
Process-level settings and configuration management.

Environment variables (and an optional ``.env`` file) configure provider
credentials, model names, timeouts, retry policy and logging. The user-facing
provider selection lives in the stored ``AppSettings`` blob instead
(see ``knowledge_architect.services.storage``).
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    API keys are optional here: a key entered in the stored settings blob
    takes precedence, and a missing key only fails when that provider is used.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # API Keys
    anthropic_api_key: Optional[SecretStr] = Field(default=None, alias="ANTHROPIC_API_KEY")
    openrouter_api_key: Optional[SecretStr] = Field(default=None, alias="OPENROUTER_API_KEY")

    # Model Configuration
    claude_fast_model: str = Field(
        default="claude-3-5-haiku-20241022",
        alias="CLAUDE_FAST_MODEL",
    )
    claude_quality_model: str = Field(
        default="claude-sonnet-4-20250514",
        alias="CLAUDE_QUALITY_MODEL",
    )
    claude_max_tokens: int = Field(default=8192, alias="CLAUDE_MAX_TOKENS")

    # Endpoints
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    app_referer: str = Field(default="http://localhost", alias="APP_REFERER")
    app_title: str = Field(default="Obsidian Knowledge Architect", alias="APP_TITLE")

    # Timeouts
    request_timeout_seconds: float = Field(default=120.0, alias="REQUEST_TIMEOUT_SECONDS")
    local_request_timeout_seconds: float = Field(
        default=300.0,
        alias="LOCAL_REQUEST_TIMEOUT_SECONDS",
    )
    model_list_timeout_seconds: float = Field(default=10.0, alias="MODEL_LIST_TIMEOUT_SECONDS")

    # Retry policy (rate limits only)
    retry_max_attempts: int = Field(default=3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=2.0, ge=0, alias="RETRY_BASE_DELAY_SECONDS")

    # Input limits
    max_input_chars: int = Field(default=500_000, alias="MAX_INPUT_CHARS")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
    )
    log_json: bool = Field(default=False, alias="LOG_JSON")
    max_log_entries: int = Field(default=1000, alias="MAX_LOG_ENTRIES")

    # Storage
    data_dir: Path = Field(default=Path.home() / ".knowledge-architect", alias="DATA_DIR")
    output_dir: Path = Field(default=Path("outputs/notes"), alias="OUTPUT_DIR")

    @field_validator("data_dir", "output_dir", mode="before")
    @classmethod
    def expand_directories(cls, v: str | Path) -> Path:
        """Expand ``~`` in configured directories."""
        return Path(v).expanduser()

    def get_api_key(self, provider: str) -> Optional[str]:
        """Return the environment API key for a provider, if any."""
        secret = {
            "anthropic": self.anthropic_api_key,
            "openrouter": self.openrouter_api_key,
        }.get(provider)
        return secret.get_secret_value() if secret else None


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
