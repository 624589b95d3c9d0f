"""
State machine for one streamed exchange.

CONNECTING -> STREAMING_PRIMARY -> [TOOLS_PENDING -> STREAMING_SECONDARY] -> DONE
with ABORTED (client stop or disconnect) and FAILED (upstream error) reachable
from any non-terminal state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from src.perplex.models import (
    ChunkEvent,
    DoneEvent,
    GeneratedMedia,
    ModelStreamEvent,
    StreamFinished,
    TextDelta,
    ToolCallDelta,
    ToolCallDone,
    ToolCallFragment,
)
from src.perplex.services.session_registry import SessionHandle
from src.perplex.streaming.event_sink import EventSink

logger = logging.getLogger(__name__)

FINISH_STOPPED = "stopped"
FINISH_TOOL_CALLS = "tool_calls"


class SessionState(Enum):
    CONNECTING = "connecting"
    STREAMING_PRIMARY = "streaming_primary"
    TOOLS_PENDING = "tools_pending"
    STREAMING_SECONDARY = "streaming_secondary"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {SessionState.DONE, SessionState.ABORTED, SessionState.FAILED}

ALLOWED_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.STREAMING_PRIMARY},
    SessionState.STREAMING_PRIMARY: {SessionState.TOOLS_PENDING, SessionState.DONE},
    SessionState.TOOLS_PENDING: {SessionState.STREAMING_SECONDARY},
    SessionState.STREAMING_SECONDARY: {SessionState.DONE},
}


class InvalidTransition(Exception):
    """Raised on a state change the machine does not allow."""
    pass


class StreamSession:
    """
    Live state of one exchange.

    Mutated only by the task driving the model stream. The registry holds a
    SessionHandle onto it and can only raise the cancellation signal.
    """

    def __init__(self, session_id: str, user_id: str, sink: EventSink):
        self.id = session_id
        self.user_id = user_id
        self.conversation_id: Optional[str] = None
        self.sink = sink
        self.state = SessionState.CONNECTING
        self.created_at = datetime.utcnow()
        self.finish_reason: Optional[str] = None
        self.media: List[GeneratedMedia] = []
        self.error = None

        self._chunks: List[str] = []
        self._length = 0
        self._fragments: Dict[int, ToolCallFragment] = {}
        self._fragments_frozen = False
        self.handle = SessionHandle(session_id, user_id, self.output_length)

    # Output buffer

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def output_length(self) -> int:
        return self._length

    def _append(self, text: str):
        self._chunks.append(text)
        self._length += len(text)

    # Tool-call fragments

    def merge_tool_call(self, delta: ToolCallDelta):
        """Merge a delta into the fragment at its index, concatenating arguments."""
        if self._fragments_frozen:
            logger.warning(f"Session {self.id}: ignoring tool call delta after freeze")
            return
        fragment = self._fragments.get(delta.index)
        if fragment is None:
            fragment = ToolCallFragment(index=delta.index)
            self._fragments[delta.index] = fragment
        fragment.merge(delta.id, delta.name, delta.arguments)

    def complete_tool_call(self, index: int):
        fragment = self._fragments.get(index)
        if fragment is not None:
            fragment.done = True

    @property
    def tool_calls(self) -> List[ToolCallFragment]:
        """Fragments in index order."""
        return [self._fragments[index] for index in sorted(self._fragments)]

    def _freeze_tool_calls(self):
        for fragment in self._fragments.values():
            fragment.done = True
        self._fragments_frozen = True

    # State machine

    @property
    def cancelled(self) -> bool:
        return self.handle.cancelled

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def needs_tool_round(self) -> bool:
        return self.state is SessionState.TOOLS_PENDING

    def transition(self, new_state: SessionState):
        if self.terminal:
            raise InvalidTransition(f"Session {self.id} already {self.state.value}")
        allowed = ALLOWED_TRANSITIONS.get(self.state, set())
        if new_state not in allowed and new_state not in (SessionState.ABORTED, SessionState.FAILED):
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(f"Session {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state in TERMINAL_STATES:
            # Later stop requests must report NOT_FOUND
            self.handle.close()

    def abort(self):
        """Stop at this checkpoint; partial output is kept."""
        if not self.terminal:
            self.transition(SessionState.ABORTED)
            self.finish_reason = FINISH_STOPPED

    def fail(self):
        if not self.terminal:
            self.transition(SessionState.FAILED)
            self.finish_reason = "error"

    async def stream_pass(self, events: AsyncIterator[ModelStreamEvent]) -> str:
        """
        Consume one model pass, forwarding text to the client in arrival order.

        Cancellation is polled before and after every event. Returns the
        pass's finish reason, or "stopped" when the session was cancelled.
        """
        secondary = self.state is SessionState.TOOLS_PENDING
        self.transition(SessionState.STREAMING_SECONDARY if secondary else SessionState.STREAMING_PRIMARY)

        finish_reason = None
        try:
            async for event in events:
                if self.cancelled:
                    break

                if isinstance(event, TextDelta):
                    if event.text:
                        self._append(event.text)
                        await self.sink.emit(ChunkEvent(content=event.text))
                elif isinstance(event, ToolCallDelta):
                    self.merge_tool_call(event)
                elif isinstance(event, ToolCallDone):
                    self.complete_tool_call(event.index)
                elif isinstance(event, StreamFinished):
                    finish_reason = event.finish_reason
                    break

                if self.cancelled:
                    break
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.cancelled:
            self.abort()
            return FINISH_STOPPED

        finish_reason = finish_reason or "stop"

        if not secondary and finish_reason == FINISH_TOOL_CALLS and self._fragments:
            self._freeze_tool_calls()
            self.transition(SessionState.TOOLS_PENDING)
        else:
            if not self.handle.close():
                self.abort()
                return FINISH_STOPPED
            if secondary and finish_reason == FINISH_TOOL_CALLS:
                logger.warning(f"Session {self.id}: tool calls requested on final pass, ignoring")
                finish_reason = "stop"
            self.transition(SessionState.DONE)
            self.finish_reason = finish_reason

        return finish_reason

    def done_event(self) -> DoneEvent:
        return DoneEvent(
            finish_reason=self.finish_reason or "stop",
            full_response=self.text,
            generated_images=list(self.media) or None,
        )

    @asynccontextmanager
    async def keepalive(self, interval_seconds: float):
        """Write keep-alive frames while the block runs; torn down on exit."""

        async def _beat():
            while True:
                await asyncio.sleep(interval_seconds)
                await self.sink.keepalive()

        task = asyncio.create_task(_beat())
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
