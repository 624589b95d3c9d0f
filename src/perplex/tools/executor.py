"""
Tool executor.

Runs one model-issued tool call and returns a compact JSON payload for the
model context. Tool failures never raise: they come back as structured
error payloads so the model can explain the limitation.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from src.perplex.clients.storage_client import StorageError
from src.perplex.config import get_settings
from src.perplex.models import (
    GeneratedMedia,
    ImageEvent,
    ProgressEvent,
    ToolCallFragment,
    ToolResult,
)
from src.perplex.streaming.event_sink import EventSink
from src.perplex.tools.registry import GENERATE_IMAGE, IMAGE_QUALITIES, IMAGE_SIZES, WEB_SEARCH
from src.perplex.utils.metrics import metrics_collector

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_IMAGE_QUALITY = "auto"


class ToolExecutor:
    """Executes web search and image generation calls."""

    def __init__(self, search_client, image_client, storage_client, search_max_results: Optional[int] = None):
        """
        Args:
            search_client: Object with async search(query, max_results)
            image_client: Object with async generate(prompt, size, quality)
            storage_client: Object with async upload(data, folder, ...)
            search_max_results: Results requested per search
        """
        settings = get_settings()
        self.search_client = search_client
        self.image_client = image_client
        self.storage_client = storage_client
        self.search_max_results = search_max_results or settings.search_max_results
        self.generated_folder = settings.generated_folder

    async def execute(self, call: ToolCallFragment, sink: EventSink, fallback_query: str = "") -> ToolResult:
        """
        Execute one tool call.

        Args:
            call: Terminal tool-call fragment
            sink: Client channel for progress and image events
            fallback_query: Original user prompt, used when search arguments are unusable

        Returns:
            ToolResult carrying the payload for the model and any generated media
        """
        call_id = call.id or f"call_{call.index}"
        name = call.name or ""

        if name == WEB_SEARCH:
            payload = await self._web_search(call, sink, fallback_query)
            result = ToolResult(tool_call_id=call_id, name=name, payload=payload)
        elif name == GENERATE_IMAGE:
            payload, media = await self._generate_image(call_id, call.parsed_arguments(), sink)
            result = ToolResult(tool_call_id=call_id, name=name, payload=payload, media=media)
        else:
            logger.warning(f"Model requested unknown tool '{name}'")
            result = ToolResult(
                tool_call_id=call_id,
                name=name,
                payload={"error": "unknown_tool", "message": f"Tool '{name}' is not available"},
            )

        metrics_collector.record_tool_call(name or "unknown", result.succeeded)
        return result

    async def _web_search(self, call: ToolCallFragment, sink: EventSink, fallback_query: str) -> Dict[str, Any]:
        query = call.parsed_arguments().get("query")
        if not isinstance(query, str) or not query.strip():
            query = fallback_query
        query = query.strip()

        await sink.emit(ProgressEvent(message="Searching the web...", tool=WEB_SEARCH))

        try:
            return await self.search_client.search(query, self.search_max_results)
        except Exception as e:
            # The search client reports failures in-band; this covers anything it missed
            logger.error(f"Web search raised unexpectedly: {e}")
            return {"error": "search_failed", "message": str(e), "query": query}

    async def _generate_image(self, call_id: str, args: Dict[str, Any], sink: EventSink):
        prompt = args.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return {
                "success": False,
                "error": "invalid_arguments",
                "message": "An image prompt is required",
            }, None

        size = args.get("size") if args.get("size") in IMAGE_SIZES else DEFAULT_IMAGE_SIZE
        quality = args.get("quality") if args.get("quality") in IMAGE_QUALITIES else DEFAULT_IMAGE_QUALITY

        await sink.emit(ProgressEvent(message="Generating image...", tool=GENERATE_IMAGE))

        generated = await self.image_client.generate(prompt, size=size, quality=quality)
        if "error" in generated:
            return {
                "success": False,
                "error": generated["error"],
                "message": generated.get("message", "Image generation failed"),
            }, None

        revised_prompt = generated.get("revised_prompt") or prompt
        media = GeneratedMedia(id=uuid4().hex, revised_prompt=revised_prompt, tool_call_id=call_id)

        try:
            stored = await self.storage_client.upload(
                generated["image_bytes"],
                self.generated_folder,
                filename=f"{media.id}.png",
                resource_type="image",
            )
        except StorageError as e:
            logger.error(f"Generated image could not be stored: {e}")
            return {
                "success": False,
                "error": "storage_failed",
                "message": "The image was generated but could not be delivered",
                "revised_prompt": revised_prompt,
            }, media

        media.url = stored["url"]
        media.storage_id = stored.get("storage_id")

        await sink.emit(ImageEvent(url=media.url, revised_prompt=revised_prompt))

        return {
            "success": True,
            "message": "delivered",
            "revised_prompt": revised_prompt,
        }, media
