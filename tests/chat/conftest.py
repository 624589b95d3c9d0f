"""
Shared fixtures for chat tests.
"""

from typing import Optional
from unittest.mock import AsyncMock

import pytest

from src.perplex.config import Settings
from src.perplex.processors.response_orchestrator import ResponseOrchestrator
from src.perplex.services.session_registry import SessionRegistry
from src.perplex.tools.executor import ToolExecutor
from src.perplex.tools.registry import ToolRegistry
from tests.chat.fakes import InMemoryConversationStore


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def session_registry():
    return SessionRegistry()


@pytest.fixture
def search_client():
    client = AsyncMock()
    client.search = AsyncMock(return_value={
        "answer": "Sunny, 21C",
        "results": [{"title": "Forecast", "url": "https://weather.example.com", "content": "Sunny"}],
    })
    return client


@pytest.fixture
def image_client():
    client = AsyncMock()
    client.generate = AsyncMock(return_value={"image_bytes": b"\x89PNG", "revised_prompt": "A red fox at dusk"})
    return client


@pytest.fixture
def storage_client():
    client = AsyncMock()
    client.upload = AsyncMock(return_value={
        "url": "https://res.cloudinary.com/demo/image/upload/fox.png",
        "storage_id": "perplex/generated/fox",
    })
    return client


@pytest.fixture
def make_orchestrator(settings, store, session_registry, search_client, image_client, storage_client):
    """Factory: orchestrator around a scripted backend."""

    def _make(backend, settings_override: Optional[Settings] = None) -> ResponseOrchestrator:
        executor = ToolExecutor(search_client, image_client, storage_client)
        return ResponseOrchestrator(
            backend=backend,
            tool_registry=ToolRegistry(current_year=2026),
            tool_executor=executor,
            session_registry=session_registry,
            conversation_store=store,
            storage_client=storage_client,
            settings=settings_override or settings,
        )

    return _make
