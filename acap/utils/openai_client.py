"""Centralized OpenAI client initialization."""

from openai import AsyncOpenAI

from acap.config import settings


def get_openai_client() -> AsyncOpenAI:
    """AsyncOpenAI client for the classifier, configured from settings."""
    return AsyncOpenAI(
        api_key=settings.openai_api_key.get_secret_value(),
        timeout=settings.classifier_timeout_seconds,
    )
