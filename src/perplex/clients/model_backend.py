"""
Model backend adapter.

Wraps streaming chat completions and normalizes raw chunks into the closed
event set (TextDelta, ToolCallDelta, ToolCallDone, StreamFinished) so the
orchestrator never inspects provider payload shapes.
"""

import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

from openai import AsyncOpenAI

from src.perplex.config import get_settings
from src.perplex.models import (
    ModelMessage,
    ModelStreamEvent,
    StreamFinished,
    TextDelta,
    ToolCallDelta,
    ToolCallDone,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)


def create_openai_client() -> AsyncOpenAI:
    """Build the shared async client from settings."""
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)


class OpenAIModelBackend:
    """Streams chat completions from an OpenAI-compatible API."""

    def __init__(self, client: AsyncOpenAI, max_output_tokens: Optional[int] = None):
        self.client = client
        self.max_output_tokens = max_output_tokens or get_settings().max_output_tokens

    def _build_request(
        self,
        model: str,
        messages: List[ModelMessage],
        tools: Optional[List[ToolDescriptor]],
        allow_tools: bool,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": model,
            "messages": [message.to_openai() for message in messages],
            "max_completion_tokens": self.max_output_tokens,
            "stream": True,
        }
        # No tools: omit the parameters entirely rather than sending tool_choice=none
        if tools:
            request["tools"] = [tool.to_openai() for tool in tools]
            request["tool_choice"] = "auto" if allow_tools else "none"
        return request

    async def stream_completion(
        self,
        model: str,
        messages: List[ModelMessage],
        tools: Optional[List[ToolDescriptor]] = None,
        allow_tools: bool = True,
    ) -> AsyncGenerator[ModelStreamEvent, None]:
        """
        Stream one model pass as normalized events.

        The last event is always a StreamFinished.
        """
        request = self._build_request(model, messages, tools, allow_tools)
        logger.debug(
            f"Starting completion model={model} messages={len(messages)} "
            f"tools={len(tools or [])} allow_tools={allow_tools}"
        )

        stream = await self.client.chat.completions.create(**request)
        open_calls: List[int] = []

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None:
                    if delta.content:
                        yield TextDelta(text=delta.content)

                    for call in delta.tool_calls or []:
                        if call.index not in open_calls:
                            open_calls.append(call.index)
                        function = call.function
                        yield ToolCallDelta(
                            index=call.index,
                            id=call.id,
                            name=function.name if function else None,
                            arguments=function.arguments if function else None,
                        )

                if choice.finish_reason:
                    for index in open_calls:
                        yield ToolCallDone(index=index)
                    yield StreamFinished(finish_reason=choice.finish_reason)
                    return
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        # Upstream closed without a finish reason
        for index in open_calls:
            yield ToolCallDone(index=index)
        yield StreamFinished(finish_reason="tool_calls" if open_calls else "stop")
