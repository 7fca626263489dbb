"""
Abstract conversation store.

The store is the synchronization boundary between completion rounds:
each round loads a conversation, mutates it in memory and saves it back.
Implementations must raise ConversationNotFound from find() for unknown
ids and ConcurrentUpdateError from save() when the stored version is not
the version the conversation was loaded at.
"""

from __future__ import annotations

import abc

from chatservice.models import Conversation


class ConversationStore(abc.ABC):

    @abc.abstractmethod
    async def find(self, conversation_id: str) -> Conversation:
        """Load a conversation. Raises ConversationNotFound."""
        ...

    @abc.abstractmethod
    async def create(self, conversation: Conversation) -> None:
        """Persist a new conversation."""
        ...

    @abc.abstractmethod
    async def save(self, conversation: Conversation) -> None:
        """Persist changes and bump conversation.version."""
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None
