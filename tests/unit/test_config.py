"""Unit tests for configuration management."""

import pytest
from pydantic import ValidationError

from acap.config import Settings


def test_settings_from_environment(test_settings: Settings):
    """Test that settings load from environment variables."""
    assert test_settings.openai_api_key.get_secret_value() == "sk-test-key"
    assert test_settings.database_url == "sqlite+aiosqlite:///:memory:"
    assert test_settings.log_level == "DEBUG"
    assert test_settings.source_concurrency == 2


def test_default_values(monkeypatch: pytest.MonkeyPatch):
    """Test that default values are set correctly."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    for name in ("SOURCE_CONCURRENCY", "LOG_LEVEL", "CLASSIFIER_MODEL", "QUEUE_MAX_ATTEMPTS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.classifier_model == "gpt-4o-mini"
    assert settings.source_concurrency == 5
    assert settings.article_concurrency == 5
    assert settings.queue_max_concurrent == 3
    assert settings.queue_max_attempts == 3
    assert settings.queue_retry_delay_seconds == 30.0
    assert settings.max_links_per_source == 50
    assert settings.log_level == "INFO"


def test_classifier_model_validation_invalid(monkeypatch: pytest.MonkeyPatch):
    """Test validation error for an unknown classifier model."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("CLASSIFIER_MODEL", "invalid-model")

    with pytest.raises(ValidationError) as exc_info:
        Settings()

    assert "Invalid classifier_model" in str(exc_info.value)


def test_log_level_is_normalized(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("LOG_LEVEL", "warning")

    assert Settings().log_level == "WARNING"


def test_log_level_validation_invalid(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("LOG_LEVEL", "LOUD")

    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.parametrize("name", ["SOURCE_CONCURRENCY", "QUEUE_MAX_CONCURRENT", "QUEUE_MAX_ATTEMPTS"])
def test_non_positive_limits_rejected(monkeypatch: pytest.MonkeyPatch, name: str):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv(name, "0")

    with pytest.raises(ValidationError) as exc_info:
        Settings()

    assert name.lower() in str(exc_info.value)


def test_missing_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
