"""
Unit tests for the image generation and durable storage clients.
"""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from src.perplex.clients.image_client import OpenAIImageClient
from src.perplex.clients.storage_client import CloudinaryStorageClient, StorageError

UPLOAD_URL = "https://api.cloudinary.com/v1_1/demo/image/upload"


class TestOpenAIImageClient:
    """Test image generation results."""

    @pytest.fixture
    def openai_client(self):
        client = MagicMock()
        client.images.generate = AsyncMock()
        return client

    async def test_decodes_image(self, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(data=[
            SimpleNamespace(b64_json=base64.b64encode(b"\x89PNG").decode(), revised_prompt="A fox at dusk"),
        ])
        client = OpenAIImageClient(openai_client, model="gpt-image-1")

        result = await client.generate("a fox", size="1024x1536", quality="low")

        assert result == {"image_bytes": b"\x89PNG", "revised_prompt": "A fox at dusk"}
        kwargs = openai_client.images.generate.call_args.kwargs
        assert kwargs["model"] == "gpt-image-1"
        assert kwargs["size"] == "1024x1536"
        assert kwargs["quality"] == "low"
        assert kwargs["n"] == 1

    async def test_revised_prompt_defaults_to_prompt(self, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(data=[
            SimpleNamespace(b64_json=base64.b64encode(b"img").decode(), revised_prompt=None),
        ])

        result = await OpenAIImageClient(openai_client, model="m").generate("a fox")

        assert result["revised_prompt"] == "a fox"

    async def test_empty_response(self, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(data=[])

        result = await OpenAIImageClient(openai_client, model="m").generate("a fox")

        assert result["error"] == "image_generation_failed"

    async def test_api_error(self, openai_client):
        request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")
        openai_client.images.generate.side_effect = openai.APIConnectionError(request=request)

        result = await OpenAIImageClient(openai_client, model="m").generate("a fox")

        assert result["error"] == "image_generation_failed"


class TestCloudinaryStorageClient:
    """Test signed uploads."""

    @pytest.fixture
    def http_client(self):
        return AsyncMock()

    @pytest.fixture
    def patched_client(self, http_client):
        with patch("src.perplex.clients.storage_client.AsyncClient") as client_cls:
            client_cls.return_value.__aenter__.return_value = http_client
            yield client_cls

    @pytest.fixture
    def storage(self):
        return CloudinaryStorageClient(cloud_name="demo", api_key="key", api_secret="secret")

    def response(self, status_code, body):
        return httpx.Response(status_code, json=body, request=httpx.Request("POST", UPLOAD_URL))

    async def test_not_configured(self):
        storage = CloudinaryStorageClient(cloud_name="demo", api_key="key", api_secret="secret")
        storage.api_secret = None

        assert not storage.configured
        with pytest.raises(StorageError):
            await storage.upload(b"data", folder="perplex/uploads")

    async def test_upload(self, storage, patched_client, http_client):
        http_client.post.return_value = self.response(200, {
            "secure_url": "https://res.cloudinary.com/demo/image/upload/a.png",
            "public_id": "perplex/uploads/a",
        })

        result = await storage.upload(b"data", folder="perplex/uploads", filename="a.png", resource_type="image")

        assert result == {
            "url": "https://res.cloudinary.com/demo/image/upload/a.png",
            "storage_id": "perplex/uploads/a",
        }
        args, kwargs = http_client.post.call_args
        assert args[0] == UPLOAD_URL
        assert kwargs["data"]["folder"] == "perplex/uploads"
        assert kwargs["data"]["signature"] == storage._sign({
            "folder": "perplex/uploads",
            "timestamp": kwargs["data"]["timestamp"],
        })

    async def test_http_error(self, storage, patched_client, http_client):
        http_client.post.return_value = self.response(500, {"error": {"message": "down"}})

        with pytest.raises(StorageError, match="500"):
            await storage.upload(b"data", folder="perplex/uploads")

    async def test_missing_url(self, storage, patched_client, http_client):
        http_client.post.return_value = self.response(200, {"public_id": "x"})

        with pytest.raises(StorageError):
            await storage.upload(b"data", folder="perplex/uploads")

    def test_signature_is_order_independent(self, storage):
        assert storage._sign({"b": "2", "a": "1"}) == storage._sign({"a": "1", "b": "2"})
