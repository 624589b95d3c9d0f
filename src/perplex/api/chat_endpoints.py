"""
Chat API endpoints.

Streaming exchanges over Server-Sent Events, a non-streaming variant,
cooperative stop, and per-user search history.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from src.perplex.api.auth import get_current_user
from src.perplex.models import (
    ExchangeRequest,
    ExchangeResult,
    ImageAttachment,
    StopRequest,
    StopResponse,
)
from src.perplex.processors.response_orchestrator import ResponseOrchestrator
from src.perplex.services.conversation_store import PersistenceError
from src.perplex.services.document_parser import extract_text, to_attachment
from src.perplex.services.session_registry import CancelOutcome, new_session_id
from src.perplex.streaming.event_sink import QueueEventSink
from src.perplex.utils.error_handler import ChatErrorHandler, ServiceError, validation_error

logger = logging.getLogger(__name__)

# Injected by the application lifespan
_orchestrator: Optional[ResponseOrchestrator] = None

# Driving tasks outlive the response generator after a disconnect
_stream_tasks: Set[asyncio.Task] = set()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"  # Disable nginx buffering
}


def get_orchestrator() -> ResponseOrchestrator:
    """Get orchestrator instance."""
    if _orchestrator is None:
        raise RuntimeError("Response orchestrator not initialized")
    return _orchestrator


router = APIRouter(
    prefix="/v1/chat",
    tags=["chat-v1"]
)


async def _build_exchange_request(
    prompt: Optional[str],
    mode: str,
    conversation_id: Optional[str],
    space_id: Optional[str],
    image: Optional[UploadFile],
    document: Optional[UploadFile],
) -> ExchangeRequest:
    """Turn form fields and uploads into a validated ExchangeRequest."""
    image_attachment = None
    if image is not None and image.filename:
        content_type = image.content_type or ""
        if not content_type.startswith("image/"):
            raise validation_error(f"Unsupported image type: {content_type}")
        image_attachment = ImageAttachment(
            data=await image.read(),
            mime_type=content_type,
            filename=image.filename,
        )

    document_attachment = None
    if document is not None and document.filename:
        extracted = extract_text(await document.read(), document.content_type or "", document.filename)
        document_attachment = to_attachment(extracted)

    try:
        return ExchangeRequest(
            prompt=prompt,
            mode=mode,
            conversation_id=conversation_id or None,
            space_id=space_id or None,
            image=image_attachment,
            document=document_attachment,
        )
    except ValidationError as e:
        message = e.errors()[0]["msg"].removeprefix("Value error, ")
        raise validation_error(message)


async def _prepare(orchestrator: ResponseOrchestrator, user_id: str, **form):
    try:
        exchange = await _build_exchange_request(**form)
        return await orchestrator.prepare(exchange, user_id)
    except ServiceError as e:
        logger.warning(f"Rejected exchange for user {user_id}: {e.message}")
        raise ChatErrorHandler.to_http_exception(e)


@router.post("/stream")
async def stream_chat(
    prompt: Optional[str] = Form(None),
    mode: str = Form("quick"),
    conversation_id: Optional[str] = Form(None),
    space_id: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    document: Optional[UploadFile] = File(None),
    user_id: str = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
):
    """
    Stream an exchange as Server-Sent Events.

    Events: connecting, connected, chunk, progress, image, then done or
    error, then close. Validation and ownership failures are returned as
    plain HTTP errors before the stream opens.
    """
    prepared = await _prepare(
        orchestrator,
        user_id,
        prompt=prompt,
        mode=mode,
        conversation_id=conversation_id,
        space_id=space_id,
        image=image,
        document=document,
    )

    session_id = new_session_id()
    sink = QueueEventSink()
    task = orchestrator.start(prepared, sink, session_id=session_id)
    _stream_tasks.add(task)
    task.add_done_callback(_stream_tasks.discard)

    async def generate():
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            if not task.done():
                orchestrator.abort(session_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers=SSE_HEADERS
    )


@router.post("/ask", response_model=ExchangeResult)
async def ask_chat(
    prompt: Optional[str] = Form(None),
    mode: str = Form("quick"),
    conversation_id: Optional[str] = Form(None),
    space_id: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    document: Optional[UploadFile] = File(None),
    user_id: str = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
) -> ExchangeResult:
    """Run an exchange and return the full response as JSON."""
    prepared = await _prepare(
        orchestrator,
        user_id,
        prompt=prompt,
        mode=mode,
        conversation_id=conversation_id,
        space_id=space_id,
        image=image,
        document=document,
    )

    try:
        return await orchestrator.ask(prepared)
    except ServiceError as e:
        raise ChatErrorHandler.to_http_exception(e)


@router.post("/stop", response_model=StopResponse)
async def stop_stream(
    body: StopRequest,
    user_id: str = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
) -> StopResponse:
    """Stop an in-flight stream owned by the caller."""
    result = orchestrator.stop(body.session_id, user_id)

    if result.outcome is CancelOutcome.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found or already completed"
        )
    if result.outcome is CancelOutcome.NOT_AUTHORIZED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to stop this session"
        )

    return StopResponse(stopped=True, session_id=body.session_id, partial_length=result.partial_length)


@router.get("/history")
async def get_search_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    user_id: str = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Paginated search history, newest first."""
    try:
        return await orchestrator.conversation_store.get_search_history(user_id, page=page, limit=limit)
    except PersistenceError as e:
        logger.error(f"Failed to load search history: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="History unavailable")


@router.delete("/history")
async def clear_search_history(
    user_id: str = Depends(get_current_user),
    orchestrator: ResponseOrchestrator = Depends(get_orchestrator)
) -> Dict[str, Any]:
    """Delete the caller's search history."""
    try:
        await orchestrator.conversation_store.clear_search_history(user_id)
    except PersistenceError as e:
        logger.error(f"Failed to clear search history: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="History unavailable")
    return {"cleared": True}
