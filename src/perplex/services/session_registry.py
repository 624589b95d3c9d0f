"""
Registry of in-flight streaming sessions.

Maps an opaque session id to a cancellation handle so a separate request can
stop a stream. The registry only signals; the driving task applies the stop
at its next checkpoint.
"""

import logging
import secrets
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    """Opaque, unguessable session identifier."""
    return secrets.token_urlsafe(24)


class CancelOutcome(Enum):
    """Result of a stop request."""
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    NOT_AUTHORIZED = "not_authorized"


class CancelResult:
    """Outcome plus the partial-response length observed at cancellation."""

    def __init__(self, outcome: CancelOutcome, partial_length: int = 0):
        self.outcome = outcome
        self.partial_length = partial_length

    @property
    def cancelled(self) -> bool:
        return self.outcome is CancelOutcome.CANCELLED


class SessionHandle:
    """
    Lookup-only view of a live session.

    Holds the owner and a cancellation signal; reads the session's output
    length through a callable and never mutates session state. Cancel and
    close are mutually exclusive: whichever lands first wins.
    """

    def __init__(self, session_id: str, user_id: str, output_length: Callable[[], int]):
        self.session_id = session_id
        self.user_id = user_id
        self.created_at = datetime.utcnow()
        self._output_length = output_length
        self._cancelled = False
        self._closed = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    def cancel(self) -> bool:
        """Raise the signal. False when the session already reached a terminal state."""
        with self._lock:
            if self._closed:
                return False
            self._cancelled = True
            return True

    def close(self) -> bool:
        """Mark the session terminal. False when a cancellation landed first."""
        with self._lock:
            if self._cancelled:
                return False
            self._closed = True
            return True

    @property
    def partial_length(self) -> int:
        return self._output_length()


class SessionRegistry:
    """
    Concurrency-safe map of session id to handle.

    The lock is never held across an await.
    """

    def __init__(self):
        self._handles: Dict[str, SessionHandle] = {}
        self._lock = threading.Lock()

    def register(self, session_id: str, handle: SessionHandle):
        with self._lock:
            if session_id in self._handles:
                raise ValueError(f"Session {session_id} already registered")
            self._handles[session_id] = handle
        logger.info(f"Registered session {session_id}")

    def cancel(self, session_id: str, requester_user_id: str) -> CancelResult:
        """
        Signal cancellation if the requester owns the session.

        Unknown and already-finished sessions both report NOT_FOUND, including
        a session that reached its terminal state but is not yet removed. The
        handle is removed on success so a second stop reports NOT_FOUND.
        """
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is None:
                return CancelResult(CancelOutcome.NOT_FOUND)
            if handle.user_id != requester_user_id:
                logger.warning(f"User {requester_user_id} tried to stop session {session_id} it does not own")
                return CancelResult(CancelOutcome.NOT_AUTHORIZED)
            del self._handles[session_id]
            if not handle.cancel():
                logger.info(f"Stop for session {session_id} arrived after it finished")
                return CancelResult(CancelOutcome.NOT_FOUND)
            partial_length = handle.partial_length

        logger.info(f"Cancelled session {session_id} at {partial_length} chars")
        return CancelResult(CancelOutcome.CANCELLED, partial_length)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            removed = self._handles.pop(session_id, None) is not None
        if removed:
            logger.info(f"Removed session {session_id}")
        return removed

    def get(self, session_id: str) -> Optional[SessionHandle]:
        with self._lock:
            return self._handles.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._handles
