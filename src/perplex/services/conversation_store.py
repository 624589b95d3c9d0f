"""
Redis Conversation Store.

Persistence collaborator for conversations, messages, spaces and per-user
search history. Values are JSON documents under `chat:` keys:

- chat:conversation:{id}            conversation document
- chat:conversation:{id}:messages   list of message documents, oldest first
- chat:space:{id}                   space document
- chat:user:{user_id}:search        list of search entries, newest first
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from src.perplex.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 50
SEARCH_HISTORY_LIMIT = 50
DEFAULT_RECENT_MESSAGES = 20


class PersistenceError(Exception):
    """Raised when the backing store is unavailable or rejects an operation."""
    pass


def generate_title(first_message: str) -> str:
    """Title from the first user message: newlines flattened, long text clipped."""
    cleaned = first_message.replace("\n", " ").strip()
    if len(cleaned) > TITLE_MAX_LENGTH:
        return cleaned[:47] + "..."
    return cleaned


class RedisConversationStore:
    """
    Conversation persistence on Redis.

    Single lazily-created connection; every Redis failure surfaces as
    PersistenceError.
    """

    def __init__(self, redis_url: Optional[str] = None):
        """
        Initialize conversation store.

        Args:
            redis_url: Override Redis URL for testing
        """
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )
                await self._redis.ping()
                logger.info("Redis connection established")
            except Exception as e:
                self._redis = None
                logger.error(f"Failed to connect to Redis: {e}")
                raise PersistenceError(f"Redis connection failed: {e}")

        return self._redis

    @staticmethod
    def _conversation_key(conversation_id: str) -> str:
        return f"chat:conversation:{conversation_id}"

    @staticmethod
    def _messages_key(conversation_id: str) -> str:
        return f"chat:conversation:{conversation_id}:messages"

    @staticmethod
    def _space_key(space_id: str) -> str:
        return f"chat:space:{space_id}"

    @staticmethod
    def _search_key(user_id: str) -> str:
        return f"chat:user:{user_id}:search"

    async def ping(self) -> bool:
        client = await self._get_redis()
        try:
            return bool(await client.ping())
        except RedisError as e:
            raise PersistenceError(f"Redis ping failed: {e}")

    # Conversations

    async def create_conversation(
        self,
        user_id: str,
        space_id: Optional[str] = None,
        title: str = DEFAULT_TITLE
    ) -> Dict[str, Any]:
        """
        Create an empty conversation owned by user_id.

        Returns:
            The stored conversation document
        """
        now = datetime.utcnow().isoformat()
        conversation = {
            "id": uuid4().hex,
            "user_id": user_id,
            "space_id": space_id,
            "title": title,
            "created_at": now,
            "updated_at": now,
        }

        client = await self._get_redis()
        try:
            await client.set(self._conversation_key(conversation["id"]), json.dumps(conversation))
        except RedisError as e:
            logger.error(f"Redis error creating conversation: {e}")
            raise PersistenceError(f"Failed to create conversation: {e}")

        logger.info(f"Created conversation {conversation['id']} for user {user_id}")
        return conversation

    async def find_conversation(
        self,
        conversation_id: str,
        recent_limit: int = DEFAULT_RECENT_MESSAGES
    ) -> Optional[Dict[str, Any]]:
        """
        Look up a conversation with its most recent messages.

        Returns:
            {id, owner_user_id, space_id, title, recent_messages} or None
        """
        client = await self._get_redis()
        try:
            data = await client.get(self._conversation_key(conversation_id))
            if not data:
                return None
            raw_messages = await client.lrange(self._messages_key(conversation_id), -recent_limit, -1)
        except RedisError as e:
            logger.error(f"Redis error loading conversation {conversation_id}: {e}")
            raise PersistenceError(f"Failed to load conversation: {e}")

        conversation = json.loads(data)
        return {
            "id": conversation["id"],
            "owner_user_id": conversation["user_id"],
            "space_id": conversation.get("space_id"),
            "title": conversation.get("title", DEFAULT_TITLE),
            "recent_messages": [json.loads(message) for message in raw_messages],
        }

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Append a message and bump the conversation's updated_at.

        Raises:
            PersistenceError: If the conversation is missing or Redis fails
        """
        now = datetime.utcnow().isoformat()
        message = {
            "id": uuid4().hex,
            "role": role,
            "content": content,
            "metadata": metadata or {},
            "created_at": now,
        }

        client = await self._get_redis()
        key = self._conversation_key(conversation_id)
        try:
            data = await client.get(key)
            if not data:
                raise PersistenceError(f"Conversation {conversation_id} not found")
            conversation = json.loads(data)
            conversation["updated_at"] = now

            await client.rpush(self._messages_key(conversation_id), json.dumps(message))
            await client.set(key, json.dumps(conversation))
        except RedisError as e:
            logger.error(f"Redis error appending message to {conversation_id}: {e}")
            raise PersistenceError(f"Failed to append message: {e}")

        return message

    async def auto_generate_title(self, conversation_id: str) -> Optional[str]:
        """
        Title a conversation from its first user message.

        Returns:
            The new title, or None when there is no user message yet
        """
        client = await self._get_redis()
        key = self._conversation_key(conversation_id)
        try:
            data = await client.get(key)
            if not data:
                return None
            raw_messages = await client.lrange(self._messages_key(conversation_id), 0, -1)

            first_user = next(
                (m for m in map(json.loads, raw_messages) if m.get("role") == "user"),
                None
            )
            if first_user is None or not first_user.get("content"):
                return None

            conversation = json.loads(data)
            conversation["title"] = generate_title(first_user["content"])
            conversation["updated_at"] = datetime.utcnow().isoformat()
            await client.set(key, json.dumps(conversation))
        except RedisError as e:
            logger.error(f"Redis error titling conversation {conversation_id}: {e}")
            raise PersistenceError(f"Failed to generate title: {e}")

        logger.info(f"Titled conversation {conversation_id}: {conversation['title']}")
        return conversation["title"]

    # Spaces

    async def find_space(self, space_id: str) -> Optional[Dict[str, Any]]:
        """
        Returns:
            {id, owner_user_id, default_prompt} or None
        """
        client = await self._get_redis()
        try:
            data = await client.get(self._space_key(space_id))
        except RedisError as e:
            logger.error(f"Redis error loading space {space_id}: {e}")
            raise PersistenceError(f"Failed to load space: {e}")

        if not data:
            return None
        space = json.loads(data)
        return {
            "id": space["id"],
            "owner_user_id": space["user_id"],
            "default_prompt": space.get("default_prompt"),
        }

    # Search history

    async def add_to_search_history(self, user_id: str, query: str) -> None:
        entry = {"query": query, "timestamp": datetime.utcnow().isoformat()}
        client = await self._get_redis()
        key = self._search_key(user_id)
        try:
            await client.lpush(key, json.dumps(entry))
            await client.ltrim(key, 0, SEARCH_HISTORY_LIMIT - 1)
        except RedisError as e:
            logger.error(f"Redis error updating search history for {user_id}: {e}")
            raise PersistenceError(f"Failed to update search history: {e}")

    async def get_search_history(self, user_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """
        One page of search history, newest first.

        Returns:
            {history, pagination: {page, limit, total, pages}}
        """
        page = max(page, 1)
        limit = max(limit, 1)
        start = (page - 1) * limit

        client = await self._get_redis()
        key = self._search_key(user_id)
        try:
            total = await client.llen(key)
            raw_entries = await client.lrange(key, start, start + limit - 1)
        except RedisError as e:
            logger.error(f"Redis error reading search history for {user_id}: {e}")
            raise PersistenceError(f"Failed to read search history: {e}")

        return {
            "history": [json.loads(entry) for entry in raw_entries],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def clear_search_history(self, user_id: str) -> None:
        client = await self._get_redis()
        try:
            await client.delete(self._search_key(user_id))
        except RedisError as e:
            raise PersistenceError(f"Failed to clear search history: {e}")
        logger.info(f"Cleared search history for user {user_id}")

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Redis connection closed")
