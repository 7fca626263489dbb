"""
Conversation store factory.

Usage:
    from chatservice.storage import make_store
    store = make_store("sqlite", sqlite_path="./data/chatservice.db")
"""

from chatservice.storage.base import ConversationStore
from chatservice.storage.memory_store import MemoryStore
from chatservice.storage.sqlite_store import SQLiteStore


def make_store(store_type: str, **kwargs) -> ConversationStore:
    """
    Instantiate a conversation store by name.

    Raises:
        ValueError: If the store type is unknown.
    """
    if store_type == "sqlite":
        return SQLiteStore(kwargs.get("sqlite_path", "./data/chatservice.db"))
    if store_type == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown conversation store: '{store_type}'. Available: sqlite, memory")


__all__ = ["ConversationStore", "MemoryStore", "SQLiteStore", "make_store"]
