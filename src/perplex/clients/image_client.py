"""
Image generation client.
"""

import base64
import logging
from typing import Any, Dict, Optional

import openai
from openai import AsyncOpenAI

from src.perplex.config import get_settings

logger = logging.getLogger(__name__)


class OpenAIImageClient:
    """Generates images through the OpenAI images API."""

    def __init__(self, client: AsyncOpenAI, model: Optional[str] = None):
        self.client = client
        self.model = model or get_settings().image_model

    async def generate(self, prompt: str, size: str = "1024x1024", quality: str = "auto") -> Dict[str, Any]:
        """
        Generate one image.

        Returns:
            {image_bytes, revised_prompt} on success, {error, message} on failure
        """
        try:
            response = await self.client.images.generate(
                model=self.model,
                prompt=prompt,
                size=size,
                quality=quality,
                n=1,
            )
        except openai.OpenAIError as e:
            logger.error(f"Image generation failed: {e}")
            return {"error": "image_generation_failed", "message": str(e)}

        if not response.data:
            return {"error": "image_generation_failed", "message": "No image returned"}

        image = response.data[0]
        if not image.b64_json:
            return {"error": "image_generation_failed", "message": "Image payload missing"}

        return {
            "image_bytes": base64.b64decode(image.b64_json),
            "revised_prompt": getattr(image, "revised_prompt", None) or prompt,
        }
