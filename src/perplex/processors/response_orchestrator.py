"""
Response Orchestrator.

Coordinates one exchange end to end:
- preflight validation and ownership checks (before the stream opens)
- model and tool selection from the request mode
- at most two model passes driven through a StreamSession
- background persistence after the client stream has closed
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from src.perplex.clients.storage_client import StorageError
from src.perplex.config import Settings, get_settings
from src.perplex.models import (
    CloseEvent,
    ConnectedEvent,
    ConnectingEvent,
    ErrorEvent,
    ExchangeRequest,
    ExchangeResult,
    ModelMessage,
    ToolDescriptor,
)
from src.perplex.processors.prompts import DEFAULT_IMAGE_PROMPT, frame_document, system_instructions
from src.perplex.services.conversation_store import PersistenceError
from src.perplex.services.session_registry import CancelResult, SessionRegistry, new_session_id
from src.perplex.streaming.event_sink import CollectingEventSink, EventSink
from src.perplex.streaming.stream_session import SessionState, StreamSession
from src.perplex.tools.executor import ToolExecutor
from src.perplex.tools.registry import ToolRegistry
from src.perplex.utils.error_handler import (
    ChatErrorHandler,
    ErrorCategory,
    ServiceError,
    authorization_error,
    not_found_error,
    validation_error,
)
from src.perplex.utils.metrics import metrics_collector
from src.perplex.utils.structured_logging import ExchangeLogContext, log_exchange_completed, log_exchange_error

logger = logging.getLogger(__name__)


class PreparedExchange(BaseModel):
    """A request that passed preflight, with everything resolved for the stream."""

    request: ExchangeRequest
    user_id: str
    model: str
    tools: List[ToolDescriptor] = Field(default_factory=list)
    conversation: Optional[Dict[str, Any]] = None
    space: Optional[Dict[str, Any]] = None
    history_window: int = 10

    @property
    def is_new_conversation(self) -> bool:
        return self.conversation is None

    @property
    def history(self) -> List[Dict[str, Any]]:
        if not self.conversation:
            return []
        return self.conversation.get("recent_messages", [])[-self.history_window:]


class ResponseOrchestrator:
    """
    Top-level coordinator for streamed exchanges.

    The session registry is injected by the application's composition root and
    is the only state shared between concurrent exchanges.
    """

    def __init__(
        self,
        backend,
        tool_registry: ToolRegistry,
        tool_executor: ToolExecutor,
        session_registry: SessionRegistry,
        conversation_store,
        storage_client,
        settings: Optional[Settings] = None
    ):
        """
        Args:
            backend: Model backend with stream_completion(model, messages, tools, allow_tools)
            tool_registry: Tool selection policy
            tool_executor: Runs model-issued tool calls
            session_registry: Registry of in-flight sessions
            conversation_store: Conversation, space and search-history persistence
            storage_client: Durable storage for user attachments
            settings: Override settings for testing
        """
        self.backend = backend
        self.tool_registry = tool_registry
        self.tool_executor = tool_executor
        self.session_registry = session_registry
        self.conversation_store = conversation_store
        self.storage_client = storage_client
        self.settings = settings or get_settings()
        self._pending: Set[asyncio.Task] = set()

    # Selection

    def select_model(self, mode: str, has_image: bool = False) -> str:
        if mode == "think":
            return self.settings.think_model
        if mode == "research":
            return self.settings.research_model
        return self.settings.vision_model if has_image else self.settings.quick_model

    def history_window(self, mode: str) -> int:
        if mode == "quick":
            return self.settings.quick_history_window
        return self.settings.deep_history_window

    # Preflight

    async def prepare(self, request: ExchangeRequest, user_id: str) -> PreparedExchange:
        """
        Validate a request and resolve its conversation and space.

        Lookups run concurrently. Every failure here is raised as a
        ServiceError so the caller can answer with a plain HTTP error.
        """
        if request.prompt and len(request.prompt) > self.settings.max_prompt_length:
            raise validation_error(
                f"Prompt exceeds {self.settings.max_prompt_length} characters",
                length=len(request.prompt)
            )
        if request.image and len(request.image.data) > self.settings.max_image_bytes:
            raise validation_error("Image attachment is too large", size=len(request.image.data))

        window = self.history_window(request.mode)
        conversation, space = await asyncio.gather(
            self._load_conversation(request.conversation_id, user_id, window),
            self._load_space(request.space_id, user_id),
        )

        return PreparedExchange(
            request=request,
            user_id=user_id,
            model=self.select_model(request.mode, has_image=request.image is not None),
            tools=self.tool_registry.tools_for(request.mode, request.prompt),
            conversation=conversation,
            space=space,
            history_window=window,
        )

    async def _load_conversation(
        self,
        conversation_id: Optional[str],
        user_id: str,
        window: int
    ) -> Optional[Dict[str, Any]]:
        if not conversation_id:
            return None
        try:
            conversation = await self.conversation_store.find_conversation(conversation_id, recent_limit=window)
        except PersistenceError as e:
            raise ServiceError(str(e), ErrorCategory.PERSISTENCE, details={"conversation_id": conversation_id})

        if conversation is None:
            raise not_found_error("Conversation not found", conversation_id=conversation_id)
        if conversation["owner_user_id"] != user_id:
            raise authorization_error("Access denied to this conversation", conversation_id=conversation_id)
        return conversation

    async def _load_space(self, space_id: Optional[str], user_id: str) -> Optional[Dict[str, Any]]:
        if not space_id:
            return None
        try:
            space = await self.conversation_store.find_space(space_id)
        except PersistenceError as e:
            raise ServiceError(str(e), ErrorCategory.PERSISTENCE, details={"space_id": space_id})

        if space is None:
            raise not_found_error("Space not found", space_id=space_id)
        if space["owner_user_id"] != user_id:
            raise authorization_error("Access denied to this space", space_id=space_id)
        return space

    # Context

    def build_messages(self, prepared: PreparedExchange) -> List[ModelMessage]:
        """
        Ordered model context: space instruction, mode instruction, bounded
        history, then the current turn.
        """
        request = prepared.request
        messages: List[ModelMessage] = []

        if prepared.space and prepared.space.get("default_prompt"):
            messages.append(ModelMessage(role="system", content=prepared.space["default_prompt"]))
        messages.append(ModelMessage(role="system", content=system_instructions(request.mode)))

        for turn in prepared.history:
            if turn.get("role") in ("user", "assistant") and turn.get("content"):
                messages.append(ModelMessage(role=turn["role"], content=turn["content"]))

        parts = [request.prompt] if request.prompt else []
        if request.document and request.document.text.strip():
            parts.append(frame_document(request.document.filename, request.document.text))
        text = "\n\n".join(parts)

        if request.image:
            messages.append(ModelMessage(
                role="user",
                content=[
                    {"type": "text", "text": text or DEFAULT_IMAGE_PROMPT},
                    {"type": "image_url", "image_url": {"url": request.image.to_data_url()}},
                ],
            ))
        else:
            messages.append(ModelMessage(role="user", content=text))

        return messages

    # Streaming

    def open_session(
        self,
        prepared: PreparedExchange,
        sink: EventSink,
        session_id: Optional[str] = None
    ) -> StreamSession:
        """Create and register a session so it can be stopped before it starts."""
        session = StreamSession(session_id or new_session_id(), prepared.user_id, sink)
        self.session_registry.register(session.id, session.handle)
        return session

    def start(
        self,
        prepared: PreparedExchange,
        sink: EventSink,
        session_id: Optional[str] = None
    ) -> asyncio.Task:
        """Register the session, then drive it in a new task."""
        session = self.open_session(prepared, sink, session_id)
        return asyncio.create_task(self.drive(session, prepared))

    async def run(
        self,
        prepared: PreparedExchange,
        sink: EventSink,
        session_id: Optional[str] = None
    ) -> StreamSession:
        """Register and drive one exchange in the current task."""
        return await self.drive(self.open_session(prepared, sink, session_id), prepared)

    async def drive(self, session: StreamSession, prepared: PreparedExchange) -> StreamSession:
        """
        Drive a registered session to a terminal event on its sink.

        Always ends the channel with done or error followed by close.
        Persistence is scheduled in the background and never delays close.
        """
        sink = session.sink
        mode = prepared.request.mode
        start_time = time.monotonic()
        attachment: Optional[Dict[str, Any]] = None

        with ExchangeLogContext(session.id, prepared.user_id, mode) as log_context, \
                metrics_collector.track_stream():
            try:
                await sink.emit(ConnectingEvent(session_id=session.id))

                async with session.keepalive(self.settings.keepalive_interval_seconds):
                    session.conversation_id = await self._resolve_conversation(prepared)
                    log_context.bind_conversation(session.conversation_id)
                    attachment = await self._upload_attachment(prepared)
                    await sink.emit(ConnectedEvent(
                        conversation_id=session.conversation_id,
                        session_id=session.id,
                    ))
                    await self._run_passes(session, prepared)

                await sink.emit(session.done_event())

            except asyncio.CancelledError:
                session.abort()
                raise
            except Exception as e:
                if isinstance(e, PersistenceError):
                    service_error = ServiceError(str(e), ErrorCategory.PERSISTENCE)
                else:
                    service_error = ChatErrorHandler.handle_model_error(e)
                session.error = service_error
                session.fail()

                log_exchange_error(
                    e,
                    stage="stream",
                    category=service_error.category.value,
                    recoverable=service_error.recoverable,
                    partial_length=session.output_length(),
                    state=session.state.value,
                )
                metrics_collector.record_error(service_error.category.value)
                await sink.emit(ErrorEvent(**ChatErrorHandler.to_stream_payload(service_error)))

            finally:
                self.session_registry.remove(session.id)
                await sink.emit(CloseEvent())

                duration = time.monotonic() - start_time
                metrics_collector.record_exchange(mode, session.finish_reason or "stopped", duration)
                log_exchange_completed(
                    state=session.state.value,
                    finish_reason=session.finish_reason,
                    duration_ms=int(duration * 1000),
                    output_length=session.output_length(),
                    model=prepared.model,
                    tool_calls=len(session.tool_calls),
                    generated_images=len(session.media),
                )
                self._schedule_finalize(session, prepared, attachment)

        return session

    async def _run_passes(self, session: StreamSession, prepared: PreparedExchange):
        """Primary pass, then at most one tool round and one secondary pass."""
        if session.cancelled:
            session.abort()
            return

        messages = self.build_messages(prepared)
        tools = prepared.tools or None

        await session.stream_pass(self.backend.stream_completion(
            prepared.model, messages, tools=tools, allow_tools=True
        ))
        if not session.needs_tool_round:
            return

        calls = session.tool_calls
        messages.append(ModelMessage(role="assistant", content=session.text or None, tool_calls=calls))

        for call in calls:
            if session.cancelled:
                session.abort()
                return
            result = await self.tool_executor.execute(call, session.sink, fallback_query=prepared.request.prompt or "")
            if result.media is not None:
                session.media.append(result.media)
            messages.append(result.to_message())
            logger.info(f"Tool {result.name} finished for session {session.id} (success={result.succeeded})")

        if session.cancelled:
            session.abort()
            return

        await session.stream_pass(self.backend.stream_completion(
            prepared.model, messages, tools=tools, allow_tools=False
        ))

    async def _resolve_conversation(self, prepared: PreparedExchange) -> str:
        if prepared.conversation is not None:
            return prepared.conversation["id"]
        conversation = await self.conversation_store.create_conversation(
            prepared.user_id,
            space_id=prepared.request.space_id,
        )
        return conversation["id"]

    async def _upload_attachment(self, prepared: PreparedExchange) -> Optional[Dict[str, Any]]:
        """Store the user's image. Failure is recorded, never raised."""
        image = prepared.request.image
        if image is None:
            return None
        try:
            stored = await self.storage_client.upload(
                image.data,
                self.settings.upload_folder,
                filename=image.filename or "upload",
                resource_type="image",
            )
        except StorageError as e:
            logger.warning(f"Attachment upload failed: {e}")
            return {"upload_failed": True, "error": str(e), "mime_type": image.mime_type}
        return {"url": stored["url"], "storage_id": stored.get("storage_id"), "mime_type": image.mime_type}

    # Cancellation

    def stop(self, session_id: str, user_id: str) -> CancelResult:
        """Owner-checked stop request."""
        return self.session_registry.cancel(session_id, user_id)

    def abort(self, session_id: str) -> bool:
        """Signal cancellation after the client went away; no ownership check."""
        handle = self.session_registry.get(session_id)
        if handle is None or not handle.cancel():
            return False
        logger.info(f"Client disconnected, aborting session {session_id}")
        return True

    # Non-streaming

    async def ask(self, prepared: PreparedExchange) -> ExchangeResult:
        """
        Run an exchange without a client stream.

        Raises:
            ServiceError: When the exchange ended in error
        """
        sink = CollectingEventSink()
        session = await self.run(prepared, sink)
        if session.error is not None:
            raise session.error
        return ExchangeResult(
            conversation_id=session.conversation_id,
            session_id=session.id,
            response=session.text,
            finish_reason=session.finish_reason or "stop",
            generated_images=session.media,
        )

    # Finalization

    def _schedule_finalize(self, session: StreamSession, prepared: PreparedExchange, attachment):
        task = asyncio.create_task(self._finalize(session, prepared, attachment))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_pending(self):
        """Wait for outstanding background persistence."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _finalize(self, session: StreamSession, prepared: PreparedExchange, attachment):
        """
        Persist the exchange. Best-effort: failures are logged only, the
        client already has the content.
        """
        request = prepared.request
        conversation_id = session.conversation_id
        persisted = False

        if conversation_id:
            user_metadata: Dict[str, Any] = {"mode": request.mode, "session_id": session.id}
            if attachment:
                user_metadata["image"] = attachment
            if request.document:
                user_metadata["document"] = {
                    "filename": request.document.filename,
                    "mime_type": request.document.mime_type,
                    "extracted_length": request.document.extracted_length,
                }

            try:
                await self.conversation_store.append_message(
                    conversation_id, "user", request.prompt or "", user_metadata
                )
                if session.text or session.state is not SessionState.FAILED:
                    await self.conversation_store.append_message(
                        conversation_id,
                        "assistant",
                        session.text,
                        {
                            "model": prepared.model,
                            "mode": request.mode,
                            "finish_reason": session.finish_reason,
                            "generated_images": [media.model_dump() for media in session.media],
                        },
                    )
                persisted = True
            except Exception as e:
                log_exchange_error(e, stage="persist_exchange")

        history_entry = request.prompt or ("[image]" if request.image else "[document]")
        try:
            await self.conversation_store.add_to_search_history(prepared.user_id, history_entry)
        except Exception as e:
            log_exchange_error(e, stage="search_history")

        if persisted and prepared.is_new_conversation:
            try:
                await self.conversation_store.auto_generate_title(conversation_id)
            except Exception as e:
                log_exchange_error(e, stage="auto_title")
