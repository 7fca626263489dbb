"""
SQLite storage for conversations.
Single portable file. Query with SQL.

Each conversation row carries its config and a version number; messages
are stored with their position and an erased flag so the active window
and the eviction history round-trip exactly. Blocking sqlite3 calls run
in a worker thread.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

from chatservice.errors import ConcurrentUpdateError, ConversationNotFound
from chatservice.models import Conversation
from chatservice.storage.base import ConversationStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    token_usage INTEGER NOT NULL DEFAULT 0,
    config_json TEXT NOT NULL,
    system_message_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    erased INTEGER NOT NULL DEFAULT 0,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    model TEXT DEFAULT '',
    token_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, id),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, erased, position);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id);
"""


class SQLiteStore(ConversationStore):
    """SQLite-backed conversation store with optimistic versioning."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # ConversationStore
    # ------------------------------------------------------------------

    async def find(self, conversation_id: str) -> Conversation:
        return await asyncio.to_thread(self._find, conversation_id)

    async def create(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._create, conversation)

    async def save(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._save, conversation)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _find(self, conversation_id: str) -> Conversation:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                raise ConversationNotFound(conversation_id)
            msg_rows = conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY erased, position""",
                (conversation_id,),
            ).fetchall()

        active, erased, system = [], [], None
        for r in msg_rows:
            msg = {
                "id": r["id"],
                "role": r["role"],
                "content": r["content"],
                "model": r["model"],
                "token_count": r["token_count"],
                "created_at": r["created_at"],
            }
            if r["id"] == row["system_message_id"]:
                system = msg
            (erased if r["erased"] else active).append(msg)

        if system is None:
            raise ValueError(f"Conversation {conversation_id} has no system message row")

        return Conversation.from_dict({
            "id": row["id"],
            "user_id": row["user_id"],
            "status": row["status"],
            "version": row["version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "config": json.loads(row["config_json"]),
            "initial_system_message": system,
            "messages": active,
            "erased_messages": erased,
        })

    def _insert_messages(self, conn, conversation: Conversation):
        rows = []
        for erased, messages in ((0, conversation.messages), (1, conversation.erased_messages)):
            for position, m in enumerate(messages):
                rows.append((
                    m.id, conversation.id, position, erased, m.role.value,
                    m.content, m.model, m.token_count, m.created_at,
                ))
        conn.executemany(
            """INSERT INTO messages
               (id, conversation_id, position, erased, role, content, model, token_count, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )

    def _create(self, conversation: Conversation):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations
                   (id, user_id, status, version, token_usage, config_json,
                    system_message_id, created_at, updated_at)
                   VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?)""",
                (
                    conversation.id, conversation.user_id, conversation.status.value,
                    conversation.token_usage, json.dumps(conversation.config.to_dict()),
                    conversation.initial_system_message.id,
                    conversation.created_at, conversation.updated_at,
                ),
            )
            self._insert_messages(conn, conversation)
        conversation.version = 1
        logger.debug("Created conversation %s", conversation.id)

    def _save(self, conversation: Conversation):
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE conversations
                   SET status = ?, token_usage = ?, updated_at = ?, version = version + 1
                   WHERE id = ? AND version = ?""",
                (
                    conversation.status.value, conversation.token_usage,
                    conversation.updated_at, conversation.id, conversation.version,
                ),
            )
            if cur.rowcount == 0:
                exists = conn.execute(
                    "SELECT version FROM conversations WHERE id = ?", (conversation.id,)
                ).fetchone()
                if exists is None:
                    raise ConversationNotFound(conversation.id)
                raise ConcurrentUpdateError(
                    f"Conversation {conversation.id} changed since load "
                    f"(stored v{exists['version']}, loaded v{conversation.version})"
                )
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation.id,))
            self._insert_messages(conn, conversation)
        conversation.version += 1
        logger.debug("Saved conversation %s (v%d)", conversation.id, conversation.version)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def get_recent_conversations(self, limit: int = 20) -> list[dict]:
        """Most recently updated conversations with their active message count."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT c.id, c.user_id, c.status, c.token_usage, c.updated_at,
                          (SELECT COUNT(*) FROM messages m
                           WHERE m.conversation_id = c.id AND m.erased = 0) as message_count
                   FROM conversations c
                   ORDER BY c.updated_at DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]
