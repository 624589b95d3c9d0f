"""
Stream event types.

Two closed sets: the normalized events the model backend adapter yields,
and the events written to the client channel.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .exchange_models import GeneratedMedia


# Normalized model-stream events

class TextDelta(BaseModel):
    """A fragment of assistant text."""
    kind: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallDelta(BaseModel):
    """A fragment of a tool call, keyed by its position in the call list."""
    kind: Literal["tool_call_delta"] = "tool_call_delta"
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDone(BaseModel):
    """The model finished emitting the tool call at this index."""
    kind: Literal["tool_call_done"] = "tool_call_done"
    index: int


class StreamFinished(BaseModel):
    """Terminal signal of a model pass."""
    kind: Literal["stream_finished"] = "stream_finished"
    finish_reason: str = "stop"


ModelStreamEvent = Union[TextDelta, ToolCallDelta, ToolCallDone, StreamFinished]


# Client-facing events

class ClientEvent(BaseModel):
    """Base class for events written to the client channel."""

    type: str

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        """Format as a Server-Sent Events frame."""
        return f"event: {self.type}\ndata: {json.dumps(self.payload(), default=str)}\n\n"


class ConnectingEvent(ClientEvent):
    type: Literal["connecting"] = "connecting"
    session_id: str = Field(..., serialization_alias="sessionId")


class ConnectedEvent(ClientEvent):
    type: Literal["connected"] = "connected"
    conversation_id: str = Field(..., serialization_alias="conversationId")
    session_id: str = Field(..., serialization_alias="sessionId")


class ChunkEvent(ClientEvent):
    type: Literal["chunk"] = "chunk"
    content: str


class ProgressEvent(ClientEvent):
    type: Literal["progress"] = "progress"
    message: str
    tool: str


class ImageEvent(ClientEvent):
    type: Literal["image"] = "image"
    url: str
    revised_prompt: Optional[str] = Field(default=None, serialization_alias="revisedPrompt")


class DoneEvent(ClientEvent):
    type: Literal["done"] = "done"
    finish_reason: str = Field(..., serialization_alias="finishReason")
    full_response: str = Field(..., serialization_alias="fullResponse")
    generated_images: Optional[List[GeneratedMedia]] = Field(
        default=None,
        serialization_alias="generatedImages"
    )


class ErrorEvent(ClientEvent):
    type: Literal["error"] = "error"
    message: str
    status: Optional[int] = None
    code: Optional[str] = None
    category: Optional[str] = None


class CloseEvent(ClientEvent):
    type: Literal["close"] = "close"


KEEPALIVE_FRAME = ": keep-alive\n\n"
