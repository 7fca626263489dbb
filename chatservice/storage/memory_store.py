"""
In-memory conversation store.
Keeps the serialized form of each conversation so callers never share a
live instance.
"""

from __future__ import annotations

import asyncio
import logging

from chatservice.errors import ConcurrentUpdateError, ConversationNotFound, PersistenceError
from chatservice.models import Conversation
from chatservice.storage.base import ConversationStore

logger = logging.getLogger(__name__)


class MemoryStore(ConversationStore):
    """Process-local store. Contents are lost on restart."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def find(self, conversation_id: str) -> Conversation:
        data = self._data.get(conversation_id)
        if data is None:
            raise ConversationNotFound(conversation_id)
        return Conversation.from_dict(data)

    async def create(self, conversation: Conversation) -> None:
        async with self._lock:
            if conversation.id in self._data:
                raise PersistenceError(f"Conversation already exists: {conversation.id}")
            conversation.version = 1
            self._data[conversation.id] = conversation.to_dict()
        logger.debug("Created conversation %s", conversation.id)

    async def save(self, conversation: Conversation) -> None:
        async with self._lock:
            current = self._data.get(conversation.id)
            if current is None:
                raise ConversationNotFound(conversation.id)
            if current["version"] != conversation.version:
                raise ConcurrentUpdateError(
                    f"Conversation {conversation.id} changed since load "
                    f"(stored v{current['version']}, loaded v{conversation.version})"
                )
            conversation.version += 1
            self._data[conversation.id] = conversation.to_dict()
        logger.debug("Saved conversation %s (v%d)", conversation.id, conversation.version)

    def __len__(self) -> int:
        return len(self._data)
