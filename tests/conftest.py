"""
Test configuration and fixtures for the chat service tests.
"""

import os

import pytest

# Set up test environment variables if not already set
if not os.getenv("JWT_SECRET_KEY"):
    os.environ["JWT_SECRET_KEY"] = "test_secret_key_for_chat_testing_only"

if not os.getenv("OPENAI_API_KEY"):
    os.environ["OPENAI_API_KEY"] = "test_openai_key"

if not os.getenv("REDIS_URL"):
    os.environ["REDIS_URL"] = "redis://localhost:6379/15"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached process-wide; reset around each test."""
    from src.perplex.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
