from pathlib import Path

import pytest
from pydantic import ValidationError

from knowledge_architect.config.settings import Settings


ENV_NAMES = [
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "CLAUDE_FAST_MODEL",
    "RETRY_MAX_ATTEMPTS",
    "LOG_LEVEL",
    "DATA_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings(_env_file=None)

    assert settings.anthropic_api_key is None
    assert settings.request_timeout_seconds == 120.0
    assert settings.local_request_timeout_seconds == 300.0
    assert settings.retry_max_attempts == 3
    assert settings.retry_base_delay_seconds == 2.0
    assert settings.log_level == "INFO"
    assert settings.get_api_key("anthropic") is None


def test_reads_environment(clean_env):
    clean_env.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
    clean_env.setenv("CLAUDE_FAST_MODEL", "claude-custom-fast")
    clean_env.setenv("RETRY_MAX_ATTEMPTS", "5")

    settings = Settings(_env_file=None)

    assert settings.get_api_key("anthropic") == "sk-ant-env"
    assert settings.claude_fast_model == "claude-custom-fast"
    assert settings.retry_max_attempts == 5


def test_api_key_is_secret(clean_env):
    settings = Settings(_env_file=None, OPENROUTER_API_KEY="sk-or-secret")

    assert "sk-or-secret" not in repr(settings)
    assert settings.get_api_key("openrouter") == "sk-or-secret"
    assert settings.get_api_key("ollama") is None


def test_directories_are_expanded(clean_env):
    settings = Settings(_env_file=None, DATA_DIR="~/ka-data")
    assert settings.data_dir == Path.home() / "ka-data"


def test_invalid_values(clean_env):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, RETRY_MAX_ATTEMPTS=0)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LOG_LEVEL="VERBOSE")
