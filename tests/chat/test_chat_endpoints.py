"""
API tests for the chat endpoints.

Runs the FastAPI app without its lifespan; the orchestrator is injected
around a scripted backend and the in-memory store.
"""

import json

import pytest
from fastapi.testclient import TestClient

from src.perplex.api import chat_endpoints
from src.perplex.api.auth import issue_token
from src.perplex.api.main import app
from src.perplex.models import StreamFinished, TextDelta
from src.perplex.services.session_registry import SessionHandle
from tests.chat.fakes import ScriptedBackend

USER = "user-1"


def parse_sse(body: str):
    """Split an SSE body into (event, data) pairs, skipping comment frames."""
    events = []
    for frame in body.split("\n\n"):
        if not frame or frame.startswith(":"):
            continue
        lines = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {issue_token(USER)}"}


@pytest.fixture
def backend():
    return ScriptedBackend([TextDelta(text="Hello "), TextDelta(text="there"), StreamFinished(finish_reason="stop")])


@pytest.fixture
def orchestrator(make_orchestrator, backend):
    orchestrator = make_orchestrator(backend)
    chat_endpoints._orchestrator = orchestrator
    yield orchestrator
    chat_endpoints._orchestrator = None


@pytest.fixture
def client(orchestrator):
    return TestClient(app)


class TestStreamEndpoint:
    """POST /v1/chat/stream"""

    def test_requires_token(self, client):
        response = client.post("/v1/chat/stream", data={"prompt": "Hi"})

        assert response.status_code in (401, 403)

    def test_rejects_invalid_token(self, client):
        response = client.post(
            "/v1/chat/stream",
            data={"prompt": "Hi"},
            headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_streams_event_sequence(self, client, auth_headers):
        response = client.post("/v1/chat/stream", data={"prompt": "Hi"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"

        events = parse_sse(response.text)
        types = [event_type for event_type, _ in events]
        assert types == ["connecting", "connected", "chunk", "chunk", "done", "close"]

        connecting = events[0][1]
        connected = events[1][1]
        assert connected["sessionId"] == connecting["sessionId"]
        assert connected["conversationId"]

        done = events[4][1]
        assert done["fullResponse"] == "Hello there"
        assert done["finishReason"] == "stop"

    def test_empty_request_rejected_before_stream(self, client, auth_headers, backend):
        response = client.post("/v1/chat/stream", data={"prompt": "   "}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["category"] == "validation"
        assert backend.calls == []

    def test_invalid_mode_rejected(self, client, auth_headers):
        response = client.post("/v1/chat/stream", data={"prompt": "Hi", "mode": "turbo"}, headers=auth_headers)

        assert response.status_code == 400

    def test_unsupported_document_rejected(self, client, auth_headers):
        response = client.post(
            "/v1/chat/stream",
            data={"prompt": "Summarize"},
            files={"document": ("archive.zip", b"PK\x03\x04", "application/zip")},
            headers=auth_headers
        )

        assert response.status_code == 400

    def test_non_image_upload_rejected(self, client, auth_headers):
        response = client.post(
            "/v1/chat/stream",
            files={"image": ("notes.txt", b"hello", "text/plain")},
            headers=auth_headers
        )

        assert response.status_code == 400

    def test_foreign_conversation_forbidden(self, client, auth_headers, store):
        store.conversations["conv-9"] = {"id": "conv-9", "user_id": "someone-else", "space_id": None, "title": "x"}

        response = client.post(
            "/v1/chat/stream",
            data={"prompt": "Hi", "conversation_id": "conv-9"},
            headers=auth_headers
        )

        assert response.status_code == 403

    def test_unknown_conversation_not_found(self, client, auth_headers):
        response = client.post(
            "/v1/chat/stream",
            data={"prompt": "Hi", "conversation_id": "missing"},
            headers=auth_headers
        )

        assert response.status_code == 404

    def test_document_only_request_streams(self, client, auth_headers, backend):
        response = client.post(
            "/v1/chat/stream",
            files={"document": ("notes.md", b"# Notes\nBuy milk", "text/markdown")},
            headers=auth_headers
        )

        assert response.status_code == 200
        user_turn = backend.calls[0]["messages"][-1]
        assert "--- Document: notes.md ---" in user_turn.content


class TestAskEndpoint:
    """POST /v1/chat/ask"""

    def test_returns_full_response(self, client, auth_headers):
        response = client.post("/v1/chat/ask", data={"prompt": "Hi"}, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["response"] == "Hello there"
        assert body["finish_reason"] == "stop"
        assert body["conversation_id"]
        assert body["generated_images"] == []


class TestStopEndpoint:
    """POST /v1/chat/stop"""

    def test_unknown_session(self, client, auth_headers):
        response = client.post("/v1/chat/stop", json={"session_id": "nope"}, headers=auth_headers)

        assert response.status_code == 404

    def test_foreign_session(self, client, auth_headers, session_registry):
        session_registry.register("sess-x", SessionHandle("sess-x", "someone-else", lambda: 0))

        response = client.post("/v1/chat/stop", json={"session_id": "sess-x"}, headers=auth_headers)

        assert response.status_code == 403
        assert "sess-x" in session_registry

    def test_stops_own_session(self, client, auth_headers, session_registry):
        handle = SessionHandle("sess-1", USER, lambda: 42)
        session_registry.register("sess-1", handle)

        response = client.post("/v1/chat/stop", json={"session_id": "sess-1"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"stopped": True, "session_id": "sess-1", "partial_length": 42}
        assert handle.cancelled
        assert "sess-1" not in session_registry

    def test_finished_session_not_found(self, client, auth_headers, session_registry):
        handle = SessionHandle("sess-1", USER, lambda: 42)
        session_registry.register("sess-1", handle)
        handle.close()

        response = client.post("/v1/chat/stop", json={"session_id": "sess-1"}, headers=auth_headers)

        assert response.status_code == 404
        assert not handle.cancelled


class TestHistoryEndpoints:
    """GET and DELETE /v1/chat/history"""

    def test_get_history(self, client, auth_headers, store):
        store.search_history[USER] = ["third", "second", "first"]

        response = client.get("/v1/chat/history?page=1&limit=2", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert [entry["query"] for entry in body["history"]] == ["third", "second"]
        assert body["pagination"]["total"] == 3

    def test_limit_bounds(self, client, auth_headers):
        response = client.get("/v1/chat/history?limit=100", headers=auth_headers)

        assert response.status_code == 422

    def test_clear_history(self, client, auth_headers, store):
        store.search_history[USER] = ["weather"]

        response = client.delete("/v1/chat/history", headers=auth_headers)

        assert response.status_code == 200
        assert USER not in store.search_history


class TestServiceEndpoints:
    """Health, metrics and root."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["active_sessions"] == 0
        assert "X-Process-Time" in response.headers

    def test_health_without_orchestrator(self):
        chat_endpoints._orchestrator = None

        response = TestClient(app).get("/health")

        assert response.status_code == 503

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "chat_" in response.text

    def test_root(self, client):
        assert client.get("/").json()["endpoints"]["stop"] == "/v1/chat/stop"
