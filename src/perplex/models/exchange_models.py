"""
Exchange models for the streaming response orchestrator.

Requests, model-context messages, tool calls and generated media.
"""

import base64
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

Mode = Literal["quick", "think", "research"]


class ImageAttachment(BaseModel):
    """Raw image supplied alongside a user turn."""

    data: bytes = Field(..., description="Raw image bytes")
    mime_type: str = Field(..., description="Image MIME type, e.g. image/png")
    filename: Optional[str] = None

    @field_validator("mime_type")
    @classmethod
    def validate_mime_type(cls, v):
        if not v.startswith("image/"):
            raise ValueError(f"Unsupported image type: {v}")
        return v

    def to_data_url(self) -> str:
        """Inline data URL used in the multi-part user message."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class DocumentAttachment(BaseModel):
    """Document already reduced to text by the extraction collaborator."""

    text: str
    filename: str = "document"
    mime_type: str = "text/plain"
    extracted_length: int = 0


class ExchangeRequest(BaseModel):
    """Inputs to one orchestration run."""

    prompt: Optional[str] = Field(default=None, description="User prompt text")
    image: Optional[ImageAttachment] = Field(default=None, description="Optional image attachment")
    document: Optional[DocumentAttachment] = Field(
        default=None,
        description="Optional document, pre-extracted to text"
    )
    conversation_id: Optional[str] = Field(
        default=None,
        description="Existing conversation, or None to create one"
    )
    mode: Mode = Field(default="quick", description="quick, think or research")
    space_id: Optional[str] = Field(
        default=None,
        description="Scope supplying an additional system instruction"
    )

    @field_validator("prompt")
    @classmethod
    def normalize_prompt(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def require_some_input(self):
        has_document_text = bool(self.document and self.document.text.strip())
        if not (self.prompt or self.image or has_document_text):
            raise ValueError("Prompt, image or document is required")
        return self


class ToolCallFragment(BaseModel):
    """A tool call accumulated from streamed deltas."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""
    done: bool = False

    def merge(self, call_id: Optional[str], name: Optional[str], arguments: Optional[str]):
        """Merge one streamed delta. Arguments are concatenated, never replaced."""
        if call_id:
            self.id = call_id
        if name:
            self.name = name
        if arguments:
            self.arguments += arguments

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the argument string, returning {} when it is not a JSON object."""
        try:
            value = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id or f"call_{self.index}",
            "type": "function",
            "function": {"name": self.name or "", "arguments": self.arguments},
        }


class ModelMessage(BaseModel):
    """Role-tagged unit of model context."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    tool_calls: Optional[List[ToolCallFragment]] = None
    tool_call_id: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_openai() for call in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


class GeneratedMedia(BaseModel):
    """Media produced by a tool during the exchange."""

    id: str
    url: Optional[str] = Field(
        default=None,
        description="Durable URL, None when the upload failed"
    )
    revised_prompt: Optional[str] = None
    storage_id: Optional[str] = None
    tool_call_id: Optional[str] = None


class SideEffect(str, Enum):
    """Side-effect classification for a tool."""

    PURE_READONLY = "pure-readonly"
    PRODUCES_MEDIA = "produces-media"


class ToolDescriptor(BaseModel):
    """A callable tool as advertised to the model."""

    name: str
    description: str
    parameters: Dict[str, Any]
    side_effect: SideEffect

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolResult(BaseModel):
    """Outcome of one tool call, already shaped for the model context."""

    tool_call_id: str
    name: str
    payload: Dict[str, Any]
    media: Optional[GeneratedMedia] = None

    @property
    def succeeded(self) -> bool:
        return "error" not in self.payload and self.payload.get("success", True) is not False

    def to_message(self) -> ModelMessage:
        return ModelMessage(
            role="tool",
            tool_call_id=self.tool_call_id,
            content=json.dumps(self.payload),
        )


class StopRequest(BaseModel):
    """Client request to stop an in-flight session."""

    session_id: str


class StopResponse(BaseModel):
    """Synchronous acknowledgment of a stop request."""

    stopped: bool
    session_id: str
    partial_length: int = 0


class ExchangeResult(BaseModel):
    """Final state of a completed exchange, used by the non-streaming endpoint."""

    conversation_id: Optional[str]
    session_id: str
    response: str
    finish_reason: str
    generated_images: List[GeneratedMedia] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
