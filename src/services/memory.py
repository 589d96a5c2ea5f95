"""Redis-backed conversation log, one list per user.

Not a cache in the eviction sense: each key holds an append-only list of
``{"role", "content"}`` JSON entries whose 24-hour expiry is reset on
every write.  The agent bridge reads the tail of the list to seed the LLM
context, and the notification dispatcher appends the reminders it sends
so the next agent turn knows what the user is answering.

Ordering: ``load`` always returns entries oldest-first.
"""

from __future__ import annotations

import logging
from typing import Literal

import redis
from pydantic import BaseModel, ValidationError

from src.config import CONVERSATION_HISTORY_LIMIT, CONVERSATION_TTL_SECONDS, REDIS_URL
from src.services.session_keys import IdentityBundle, derive_key

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["user", "agent"]
    content: str


class ConversationMemory:
    """Append/load/clear operations over ``chat:*`` Redis lists."""

    def __init__(
        self,
        url: str | None = None,
        *,
        ttl_seconds: int = CONVERSATION_TTL_SECONDS,
        client: redis.Redis | None = None,
    ) -> None:
        self._ttl = ttl_seconds
        # The connection pool is created lazily by redis-py on first command
        self._client = client or redis.Redis.from_url(url or REDIS_URL, decode_responses=True)

    @staticmethod
    def key_for(identity: IdentityBundle | str) -> str:
        """Resolve *identity* to its Redis key.

        A plain string is treated as a thread id, so already-canonical
        ``chat:`` keys pass through untouched.
        """
        if isinstance(identity, str):
            identity = IdentityBundle(thread_id=identity)
        return derive_key(identity)

    def append(self, identity: IdentityBundle | str, messages: list[ChatMessage]) -> str:
        """Append *messages* to the tail of the list and reset its TTL.

        RPUSH and EXPIRE go out in one MULTI/EXEC so no entry is ever left
        without a live expiry.  Returns the key written.
        """
        key = self.key_for(identity)
        if not messages:
            return key

        payload = [m.model_dump_json() for m in messages]
        with self._client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, *payload)
            pipe.expire(key, self._ttl)
            pipe.execute()

        logger.debug("Appended %d message(s) to %s", len(messages), key)
        return key

    def load(
        self,
        identity: IdentityBundle | str,
        limit: int = CONVERSATION_HISTORY_LIMIT,
    ) -> list[ChatMessage]:
        """Return the last *limit* messages, oldest first."""
        if limit <= 0:
            return []
        key = self.key_for(identity)
        raw = self._client.lrange(key, -limit, -1)

        messages: list[ChatMessage] = []
        for item in raw:
            try:
                messages.append(ChatMessage.model_validate_json(item))
            except ValidationError:
                logger.warning("Skipping malformed history entry in %s", key)
        logger.debug("Loaded %d message(s) from %s", len(messages), key)
        return messages

    def clear(self, identity: IdentityBundle | str) -> bool:
        """Delete the whole history.  Returns ``True`` if the key existed."""
        return bool(self._client.delete(self.key_for(identity)))

    def ttl(self, identity: IdentityBundle | str) -> int:
        """Remaining lifetime in seconds (-2 missing key, -1 no expiry)."""
        return int(self._client.ttl(self.key_for(identity)))

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()
