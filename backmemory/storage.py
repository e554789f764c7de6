"""Persistent storage for conversations, turns, memory entries, and summaries."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from .errors import ForbiddenError, NotFoundError
from .schemas import Conversation, RollingSummary, utcnow

logger = logging.getLogger(__name__)


class ChatDatabase:
    """Small SQLite wrapper that owns the schema, the connection, and the write lock.

    Every write goes through :meth:`transaction`, which serialises writers on a
    re-entrant lock and wraps the statements in ``BEGIN IMMEDIATE`` so a
    failure rolls the whole operation back.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.connection = sqlite3.connect(db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        self.connection.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            cur = self.connection.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    persona_id TEXT,
                    summary TEXT NOT NULL DEFAULT '',
                    auto_summarize INTEGER NOT NULL DEFAULT 1,
                    summary_embedding BLOB,
                    summary_updated_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('user', 'model')),
                    turn_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    version INTEGER,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
                )
                """
            )
            cur.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_turn_version
                ON messages(turn_id, version)
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, seq)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS memory_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    conversation_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    keywords TEXT NOT NULL DEFAULT '[]',
                    embedding BLOB,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_applied_at TEXT,
                    FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_memory_entries_conversation
                ON memory_entries(conversation_id)
                """
            )
            self.connection.commit()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run the enclosed statements as one atomic write.

        Nested calls on the same thread join the outer transaction.
        """

        with self._lock:
            cur = self.connection.cursor()
            if self.connection.in_transaction:
                yield cur
                return
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                self.connection.rollback()
                logger.debug("Transaction rolled back", exc_info=True)
                raise
            else:
                self.connection.commit()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchone()

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _serialize_vector(vector: Optional[Sequence[float]]) -> Optional[bytes]:
        if vector is None:
            return None
        return json.dumps([float(x) for x in vector]).encode("utf-8")

    @staticmethod
    def _deserialize_vector(blob: Optional[bytes]) -> Optional[List[float]]:
        if blob is None:
            return None
        return [float(x) for x in json.loads(blob.decode("utf-8"))]

    @staticmethod
    def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
        if not vec1 or not vec2:
            return 0.0
        dot = sum(a * b for a, b in zip(vec1, vec2))
        norm1 = sum(a * a for a in vec1) ** 0.5
        norm2 = sum(b * b for b in vec2) ** 0.5
        if norm1 == 0 or norm2 == 0:
            return 0.0
        return dot / (norm1 * norm2)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    def create_conversation(
        self, *, user_id: str, persona_id: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=conversation_id or self.new_id(),
            user_id=user_id,
            persona_id=persona_id,
            created_at=now,
            updated_at=now,
        )
        with self.transaction() as cur:
            cur.execute(
                """
                INSERT INTO conversations(id, user_id, persona_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (conversation.id, user_id, persona_id, now, now),
            )
        logger.info("Created conversation %s for user %s", conversation.id, user_id)
        return conversation

    def fetch_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = self.query_one("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            persona_id=row["persona_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def require_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Conversation:
        """Return the conversation or raise NotFound / Forbidden for ``user_id``."""

        conversation = self.fetch_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} does not exist")
        if user_id is not None and conversation.user_id != user_id:
            raise ForbiddenError(f"Conversation {conversation_id} is not owned by {user_id}")
        return conversation

    def touch_conversation(self, conversation_id: str) -> None:
        with self.transaction() as cur:
            cur.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utcnow(), conversation_id),
            )

    # ------------------------------------------------------------------
    # Rolling summary columns
    # ------------------------------------------------------------------
    def fetch_summary(self, conversation_id: str) -> RollingSummary:
        row = self.query_one(
            """
            SELECT id, summary, auto_summarize, summary_updated_at, summary_embedding
            FROM conversations WHERE id = ?
            """,
            (conversation_id,),
        )
        if row is None:
            raise NotFoundError(f"Conversation {conversation_id} does not exist")
        return RollingSummary(
            conversation_id=row["id"],
            content=row["summary"] or "",
            auto_summarize=bool(row["auto_summarize"]),
            updated_at=row["summary_updated_at"],
            embedding=self._deserialize_vector(row["summary_embedding"]),
        )

    def write_summary(
        self,
        *,
        conversation_id: str,
        content: Optional[str] = None,
        auto_summarize: Optional[bool] = None,
    ) -> None:
        """Replace the summary text and/or the auto flag.

        Replacing the text drops the old embedding; the caller schedules a new one.
        """

        now = utcnow()
        with self.transaction() as cur:
            if content is not None:
                cur.execute(
                    """
                    UPDATE conversations
                    SET summary = ?, summary_embedding = NULL, summary_updated_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (content, now, now, conversation_id),
                )
            if auto_summarize is not None:
                cur.execute(
                    "UPDATE conversations SET auto_summarize = ? WHERE id = ?",
                    (int(auto_summarize), conversation_id),
                )

    # ------------------------------------------------------------------
    # Embedding writes
    # ------------------------------------------------------------------
    def store_embedding(
        self, *, kind: str, record_id: str, source_text: str, embedding: Sequence[float]
    ) -> bool:
        """Attach ``embedding`` if the record still holds ``source_text``.

        Returns False when the record was deleted or its text changed since the
        job was scheduled; the write is then skipped.
        """

        blob = self._serialize_vector(embedding)
        with self.transaction() as cur:
            if kind == "memory":
                cur.execute(
                    "UPDATE memory_entries SET embedding = ? WHERE id = ? AND content = ?",
                    (blob, record_id, source_text),
                )
            elif kind == "summary":
                cur.execute(
                    "UPDATE conversations SET summary_embedding = ? WHERE id = ? AND summary = ?",
                    (blob, record_id, source_text),
                )
            else:
                raise ValueError(f"Unknown embedding target '{kind}'")
            return cur.rowcount > 0


__all__ = ["ChatDatabase"]
