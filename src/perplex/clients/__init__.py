"""
External collaborator clients for the chat streaming service.
"""

from .image_client import OpenAIImageClient
from .model_backend import OpenAIModelBackend, create_openai_client
from .search_client import TavilySearchClient
from .storage_client import CloudinaryStorageClient, StorageError

__all__ = [
    "OpenAIModelBackend",
    "OpenAIImageClient",
    "TavilySearchClient",
    "CloudinaryStorageClient",
    "StorageError",
    "create_openai_client",
]
