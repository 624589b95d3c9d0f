"""
Output channels for client events.

The orchestrator writes typed events to a sink; the sink owns the transport.
"""

import asyncio
import logging
from typing import AsyncGenerator, List, Optional

from src.perplex.models import KEEPALIVE_FRAME, ClientEvent, CloseEvent

logger = logging.getLogger(__name__)


class EventSink:
    """Base output channel. Subclasses decide how frames reach the client."""

    def __init__(self):
        self.closed = False

    async def emit(self, event: ClientEvent):
        """Write one event. Writes after close are dropped."""
        if self.closed:
            logger.debug(f"Dropping {event.type} event on closed sink")
            return
        await self._write(event)
        if isinstance(event, CloseEvent):
            self.closed = True
            await self._finish()

    async def keepalive(self):
        """Best-effort idle frame; transport errors are ignored."""
        if self.closed:
            return
        try:
            await self._write_keepalive()
        except Exception as e:
            logger.debug(f"Keep-alive write failed: {e}")

    async def _write(self, event: ClientEvent):
        raise NotImplementedError

    async def _write_keepalive(self):
        pass

    async def _finish(self):
        pass


class QueueEventSink(EventSink):
    """
    SSE sink backed by an asyncio queue.

    The driving task emits; the HTTP response iterates frames().
    """

    def __init__(self):
        super().__init__()
        self._queue: asyncio.Queue = asyncio.Queue()

    async def _write(self, event: ClientEvent):
        self._queue.put_nowait(event.to_sse())

    async def _write_keepalive(self):
        self._queue.put_nowait(KEEPALIVE_FRAME)

    async def _finish(self):
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncGenerator[str, None]:
        """Yield SSE frames until the close sentinel."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            yield frame


class CollectingEventSink(EventSink):
    """Records events in memory. Used by the non-streaming endpoint."""

    def __init__(self):
        super().__init__()
        self.events: List[ClientEvent] = []
        self.keepalives = 0

    async def _write(self, event: ClientEvent):
        self.events.append(event)

    async def _write_keepalive(self):
        self.keepalives += 1

    @property
    def types(self) -> List[str]:
        return [event.type for event in self.events]

    def first(self, event_type: str) -> Optional[ClientEvent]:
        for event in self.events:
            if event.type == event_type:
                return event
        return None
