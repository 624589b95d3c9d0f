"""
Durable blob storage client (Cloudinary signed uploads).
"""

import hashlib
import logging
import time
from typing import Dict, Optional

import httpx
from httpx import AsyncClient, HTTPStatusError

from src.perplex.config import get_settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Upload to durable storage failed."""
    pass


class CloudinaryStorageClient:
    """Uploads bytes to Cloudinary and returns the durable URL."""

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ):
        settings = get_settings()
        self.cloud_name = cloud_name or settings.cloudinary_cloud_name
        self.api_key = api_key or settings.cloudinary_api_key
        self.api_secret = api_secret or settings.cloudinary_api_secret
        self.timeout = httpx.Timeout(60.0, connect=5.0)

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _sign(self, params: Dict[str, str]) -> str:
        """SHA-1 signature over the sorted params followed by the API secret."""
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode("utf-8")).hexdigest()

    async def upload(
        self,
        data: bytes,
        folder: str,
        filename: str = "upload",
        resource_type: str = "auto",
    ) -> Dict[str, str]:
        """
        Upload bytes.

        Args:
            data: File content
            folder: Namespace within the storage account
            filename: Name sent with the multipart body
            resource_type: 'image', 'raw' or 'auto'

        Returns:
            {url, storage_id}

        Raises:
            StorageError: When storage is not configured or the upload fails
        """
        if not self.configured:
            raise StorageError("Durable storage is not configured")

        params = {"folder": folder, "timestamp": str(int(time.time()))}
        form = {**params, "api_key": self.api_key, "signature": self._sign(params)}
        url = f"https://api.cloudinary.com/v1_1/{self.cloud_name}/{resource_type}/upload"

        try:
            async with AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, data=form, files={"file": (filename, data)})
                response.raise_for_status()
                body = response.json()
        except HTTPStatusError as e:
            logger.error(f"Storage upload returned {e.response.status_code}: {e.response.text}")
            raise StorageError(f"Upload failed with status {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Storage upload failed: {e}")
            raise StorageError(f"Upload failed: {e}") from e

        secure_url = body.get("secure_url") or body.get("url")
        if not secure_url:
            raise StorageError("Upload response did not include a URL")

        logger.info(f"Uploaded {len(data)} bytes to {folder}")
        return {"url": secure_url, "storage_id": body.get("public_id", "")}
