"""
Service layer implementations.
"""

from .conversation_store import PersistenceError, RedisConversationStore
from .session_registry import CancelOutcome, CancelResult, SessionHandle, SessionRegistry, new_session_id

__all__ = [
    "RedisConversationStore",
    "PersistenceError",
    "SessionRegistry",
    "SessionHandle",
    "CancelOutcome",
    "CancelResult",
    "new_session_id",
]
