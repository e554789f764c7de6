"""Long-term memory entries: storage, chunking, and per-call selection."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .clients import embed_text
from .embedding import EmbeddingWorker
from .errors import ForbiddenError, NotFoundError, ValidationError
from .keywords import extract_keywords, matches_keywords
from .schemas import MemoryEntry, SelectedMemory, utcnow
from .storage import ChatDatabase

logger = logging.getLogger(__name__)

MAX_MEMORY_LENGTH = 2000
SELECTION_CAP = 3


def split_segments(text: str, size: int = MAX_MEMORY_LENGTH) -> List[str]:
    """Cut ``text`` into ``size``-char pieces; only the last may be shorter."""

    segments: List[str] = []
    remaining = text
    while len(remaining) > size:
        segments.append(remaining[:size])
        remaining = remaining[size:]
    if remaining:
        segments.append(remaining)
    return segments


class MemoryStore:
    """CRUD over memory entries. Embeddings are attached later by the worker."""

    def __init__(self, db: ChatDatabase, worker: EmbeddingWorker) -> None:
        self.db = db
        self.worker = worker

    def _row_to_entry(self, row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            conversation_id=row["conversation_id"],
            content=row["content"],
            keywords=json.loads(row["keywords"]) if row["keywords"] else [],
            embedding=self.db._deserialize_vector(row["embedding"]),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_applied_at=row["last_applied_at"],
        )

    @staticmethod
    def _clean_content(content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Memory content must not be empty")
        if len(text) > MAX_MEMORY_LENGTH:
            raise ValidationError(
                f"Memory content must be at most {MAX_MEMORY_LENGTH} characters (got {len(text)})"
            )
        return text

    def _insert(
        self,
        cur: sqlite3.Cursor,
        conversation_id: str,
        content: str,
        keywords: Sequence[str],
        metadata: Mapping[str, Any],
    ) -> MemoryEntry:
        now = utcnow()
        entry = MemoryEntry(
            id=self.db.new_id(),
            conversation_id=conversation_id,
            content=content,
            keywords=list(keywords),
            metadata=dict(metadata),
            created_at=now,
            updated_at=now,
        )
        cur.execute(
            """
            INSERT INTO memory_entries(
                id, conversation_id, content, keywords, embedding, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, NULL, ?, ?, ?)
            """,
            (
                entry.id,
                conversation_id,
                content,
                json.dumps(entry.keywords, ensure_ascii=False),
                json.dumps(entry.metadata, ensure_ascii=False),
                now,
                now,
            ),
        )
        return entry

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def create(
        self,
        conversation_id: str,
        content: str,
        keywords: Optional[Sequence[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> MemoryEntry:
        text = self._clean_content(content)
        self.db.require_conversation(conversation_id)
        if keywords is None:
            keywords = extract_keywords(text)
        payload_metadata = {"source": "user", **dict(metadata or {})}
        with self.db.transaction() as cur:
            entry = self._insert(cur, conversation_id, text, keywords, payload_metadata)
        self.worker.schedule("memory", entry.id, entry.content)
        logger.debug("Created memory %s in conversation %s", entry.id, conversation_id)
        return entry

    def create_segments(
        self,
        conversation_id: str,
        text: str,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        schedule: bool = True,
    ) -> List[MemoryEntry]:
        """Persist ``text`` as one entry per 2000-char segment.

        Called inside a caller-held transaction the inserts join it; with
        ``schedule=False`` the caller queues the embeddings after its commit.
        """

        pieces = split_segments(text.strip())
        if not pieces:
            raise ValidationError("Memory content must not be empty")
        base = {"source": "summary", **dict(metadata or {})}
        entries: List[MemoryEntry] = []
        with self.db.transaction() as cur:
            for index, piece in enumerate(pieces):
                entries.append(
                    self._insert(
                        cur,
                        conversation_id,
                        piece,
                        extract_keywords(piece),
                        {**base, "segment": index},
                    )
                )
        if schedule:
            self.schedule_embeddings(entries)
        return entries

    def schedule_embeddings(self, entries: Sequence[MemoryEntry]) -> None:
        for entry in entries:
            self.worker.schedule("memory", entry.id, entry.content)

    def get(self, entry_id: str, *, conversation_id: Optional[str] = None) -> MemoryEntry:
        row = self.db.query_one("SELECT * FROM memory_entries WHERE id = ?", (entry_id,))
        if row is None:
            raise NotFoundError(f"Memory {entry_id} does not exist")
        if conversation_id is not None and row["conversation_id"] != conversation_id:
            raise ForbiddenError(f"Memory {entry_id} belongs to another conversation")
        return self._row_to_entry(row)

    def update(
        self,
        entry_id: str,
        content: str,
        keywords: Optional[Sequence[str]] = None,
        *,
        conversation_id: Optional[str] = None,
    ) -> MemoryEntry:
        """Replace the content and queue a fresh embedding.

        The previous embedding stays in place until the new one lands.
        """

        text = self._clean_content(content)
        now = utcnow()
        with self.db.transaction() as cur:
            entry = self.get(entry_id, conversation_id=conversation_id)
            if keywords is not None:
                entry.keywords = list(keywords)
            cur.execute(
                """
                UPDATE memory_entries SET content = ?, keywords = ?, updated_at = ?
                WHERE id = ?
                """,
                (text, json.dumps(entry.keywords, ensure_ascii=False), now, entry_id),
            )
        entry.content = text
        entry.updated_at = now
        self.worker.schedule("memory", entry.id, text)
        return entry

    def delete(self, entry_id: str, *, conversation_id: Optional[str] = None) -> None:
        with self.db.transaction() as cur:
            self.get(entry_id, conversation_id=conversation_id)
            cur.execute("DELETE FROM memory_entries WHERE id = ?", (entry_id,))
        logger.debug("Deleted memory %s", entry_id)

    def delete_by_source(self, conversation_id: str, source: str) -> List[str]:
        """Delete every entry of the conversation whose metadata source is ``source``."""

        with self.db.transaction() as cur:
            rows = cur.execute(
                "SELECT id, metadata FROM memory_entries WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchall()
            doomed = [
                row["id"]
                for row in rows
                if (json.loads(row["metadata"]) if row["metadata"] else {}).get("source", "user") == source
            ]
            cur.executemany("DELETE FROM memory_entries WHERE id = ?", [(entry_id,) for entry_id in doomed])
        if doomed:
            logger.debug("Retired %s %s memories in %s", len(doomed), source, conversation_id)
        return doomed

    def list(self, conversation_id: str) -> List[MemoryEntry]:
        """Every entry of the conversation, most recent first."""

        rows = self.db.query(
            "SELECT * FROM memory_entries WHERE conversation_id = ? ORDER BY seq DESC",
            (conversation_id,),
        )
        return [self._row_to_entry(row) for row in rows]


@dataclass
class _Candidate:
    entry: MemoryEntry
    similarity: Optional[float]
    keyword_match: bool

    def sort_key(self) -> tuple:
        similarity = self.similarity if self.similarity is not None else float("-inf")
        # never-applied entries ("") sort before any timestamp
        return (not self.keyword_match, -similarity, self.entry.last_applied_at or "")


class MemorySelector:
    """Pick at most three memories for one generation call.

    Keyword matches come first, then cosine similarity, then the least
    recently applied entry. The returned entries are stamped with
    ``last_applied_at``; nothing else is written.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedding_client: Any,
        *,
        cap: int = SELECTION_CAP,
        min_similarity: Optional[float] = None,
        clock: Callable[[], str] = utcnow,
    ) -> None:
        self.store = store
        self.embedding_client = embedding_client
        self.cap = cap
        self.min_similarity = min_similarity
        self.clock = clock

    def _query_embedding(self, text: str) -> Optional[List[float]]:
        try:
            return embed_text(self.embedding_client, text)
        except Exception:
            logger.warning("Query embedding unavailable, ranking by keywords only", exc_info=True)
            return None

    def rank(self, entries: Sequence[MemoryEntry], candidate_text: str) -> List[_Candidate]:
        query = self._query_embedding(candidate_text) if entries else None
        ranked: List[_Candidate] = []
        for entry in entries:
            similarity = None
            if query is not None and entry.embedding is not None:
                similarity = self.store.db.cosine_similarity(query, entry.embedding)
                if self.min_similarity is not None and similarity < self.min_similarity:
                    similarity = None
            keyword_match = matches_keywords(entry.keywords, candidate_text)
            if similarity is None and not keyword_match:
                continue
            ranked.append(_Candidate(entry=entry, similarity=similarity, keyword_match=keyword_match))
        ranked.sort(key=_Candidate.sort_key)
        return ranked

    def select(self, conversation_id: str, candidate_text: str) -> List[SelectedMemory]:
        entries = self.store.list(conversation_id)
        chosen = self.rank(entries, candidate_text)[: self.cap]
        if not chosen:
            return []
        now = self.clock()
        with self.store.db.transaction() as cur:
            cur.executemany(
                "UPDATE memory_entries SET last_applied_at = ? WHERE id = ?",
                [(now, item.entry.id) for item in chosen],
            )
        for item in chosen:
            item.entry.last_applied_at = now
        logger.debug(
            "Applied %s memories to conversation %s: %s",
            len(chosen),
            conversation_id,
            [item.entry.id for item in chosen],
        )
        return [
            SelectedMemory(entry=item.entry, similarity=item.similarity, keyword_match=item.keyword_match)
            for item in chosen
        ]


__all__ = [
    "MAX_MEMORY_LENGTH",
    "MemorySelector",
    "MemoryStore",
    "SELECTION_CAP",
    "split_segments",
]
