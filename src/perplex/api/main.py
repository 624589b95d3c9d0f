"""
Main FastAPI application for the Perplex chat streaming service.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from src.perplex.api import chat_endpoints
from src.perplex.api.chat_endpoints import router as chat_router
from src.perplex.clients import (
    CloudinaryStorageClient,
    OpenAIImageClient,
    OpenAIModelBackend,
    TavilySearchClient,
    create_openai_client,
)
from src.perplex.config import get_settings
from src.perplex.processors.response_orchestrator import ResponseOrchestrator
from src.perplex.services import PersistenceError, RedisConversationStore, SessionRegistry
from src.perplex.tools.executor import ToolExecutor
from src.perplex.tools.registry import ToolRegistry
from src.perplex.utils.metrics import metrics_collector
from src.perplex.utils.structured_logging import setup_structured_logging

logger = logging.getLogger(__name__)


def build_orchestrator() -> ResponseOrchestrator:
    """Composition root: wire collaborators into one orchestrator."""
    settings = get_settings()

    openai_client = create_openai_client()
    storage_client = CloudinaryStorageClient()
    tool_executor = ToolExecutor(
        search_client=TavilySearchClient(),
        image_client=OpenAIImageClient(openai_client),
        storage_client=storage_client,
    )

    return ResponseOrchestrator(
        backend=OpenAIModelBackend(openai_client),
        tool_registry=ToolRegistry(),
        tool_executor=tool_executor,
        session_registry=SessionRegistry(),
        conversation_store=RedisConversationStore(settings.redis_url),
        storage_client=storage_client,
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Setup on startup, drain background persistence on shutdown."""
    settings = get_settings()
    setup_structured_logging(settings.log_level, settings.log_format)

    logger.info("Starting Perplex chat service...")

    try:
        chat_endpoints._orchestrator = build_orchestrator()
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    yield

    logger.info("Shutting down Perplex chat service...")

    orchestrator = chat_endpoints._orchestrator
    try:
        await orchestrator.wait_for_pending()
        await orchestrator.conversation_store.close()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")
    chat_endpoints._orchestrator = None


app = FastAPI(
    title="Perplex Chat",
    description="Streaming chat with web search and image generation",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add request processing time to headers."""
    start_time = time.time()

    response = await call_next(request)

    process_time = (time.time() - start_time) * 1000
    response.headers["X-Process-Time"] = f"{process_time:.2f}ms"
    return response


@app.get("/health")
async def health_check():
    """Reports unhealthy when Redis is unreachable."""
    orchestrator = chat_endpoints._orchestrator
    if orchestrator is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": "Service not initialized"}
        )

    try:
        await orchestrator.conversation_store.ping()
    except PersistenceError as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "redis": "unavailable", "error": str(e)}
        )

    return {
        "status": "healthy",
        "redis": "ok",
        "active_sessions": len(orchestrator.session_registry),
    }


@app.get("/metrics")
async def get_metrics():
    """Prometheus metrics."""
    body, content_type = metrics_collector.render()
    return Response(content=body, media_type=content_type)


app.include_router(chat_router)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Perplex Chat",
        "version": "1.0.0",
        "status": "online",
        "endpoints": {
            "chat_stream": "/v1/chat/stream",
            "chat": "/v1/chat/ask",
            "stop": "/v1/chat/stop",
            "history": "/v1/chat/history",
            "health": "/health",
            "metrics": "/metrics",
            "docs": "/docs"
        }
    }


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc):
    """Handle 500 errors."""
    logger.error(f"Internal error: {exc}")
    metrics_collector.record_error("internal")

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_id": str(time.time())
        }
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
