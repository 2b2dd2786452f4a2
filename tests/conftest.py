"""Pytest fixtures for Companion AI tests."""

import os
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Ensures Settings can be built without a real .env and starts every
    session with a fresh settings cache.
    """
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-placeholder")
    os.environ.setdefault("ENVIRONMENT", "test")

    from companion_ai.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def mock_settings():
    """Settings with small, test-friendly queue values."""
    from companion_ai.config import Settings

    return Settings(
        _env_file=None,
        openai_api_key="test-openai-key",
        environment="test",
        log_level="DEBUG",
        chat_queue_max_concurrent=2,
        chat_queue_max_retries=1,
        chat_queue_retry_delay_ms=10,
        chat_queue_rate_limit=100,
        chat_queue_rate_limit_window_ms=1000,
        queue_rate_limit_recheck_ms=10,
    )


def _make_completion(content: str | None) -> MagicMock:
    """Build a mock chat completion whose first choice carries ``content``."""
    completion = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    completion.choices = [choice]
    return completion


@pytest.fixture
def mock_openai_client():
    """Mock AsyncOpenAI client returning a JSON reply."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=_make_completion('{"response": "I hear you. Tell me more."}')
    )
    client.close = AsyncMock()
    return client
