"""
Data models for the Perplex chat streaming service.
"""

from .exchange_models import (
    DocumentAttachment,
    ExchangeRequest,
    ExchangeResult,
    GeneratedMedia,
    ImageAttachment,
    Mode,
    ModelMessage,
    SideEffect,
    StopRequest,
    StopResponse,
    ToolCallFragment,
    ToolDescriptor,
    ToolResult,
)
from .stream_events import (
    KEEPALIVE_FRAME,
    ChunkEvent,
    ClientEvent,
    CloseEvent,
    ConnectedEvent,
    ConnectingEvent,
    DoneEvent,
    ErrorEvent,
    ImageEvent,
    ModelStreamEvent,
    ProgressEvent,
    StreamFinished,
    TextDelta,
    ToolCallDelta,
    ToolCallDone,
)

__all__ = [
    # Exchange models
    "Mode",
    "ExchangeRequest",
    "ExchangeResult",
    "ImageAttachment",
    "DocumentAttachment",
    "ModelMessage",
    "ToolCallFragment",
    "ToolDescriptor",
    "ToolResult",
    "SideEffect",
    "GeneratedMedia",
    "StopRequest",
    "StopResponse",
    # Normalized model stream events
    "ModelStreamEvent",
    "TextDelta",
    "ToolCallDelta",
    "ToolCallDone",
    "StreamFinished",
    # Client events
    "KEEPALIVE_FRAME",
    "ClientEvent",
    "ConnectingEvent",
    "ConnectedEvent",
    "ChunkEvent",
    "ProgressEvent",
    "ImageEvent",
    "DoneEvent",
    "ErrorEvent",
    "CloseEvent",
]
