"""Rolling "back memory" summary: cadence, regeneration, and manual edits."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Sequence, Set

from .errors import ConflictError, GenerationError, ValidationError
from .memories import MemoryStore
from .prompts import SPEAKER_LABELS, SUMMARY_PROMPT
from .schemas import Message, RollingSummary, SummaryResult
from .storage import ChatDatabase
from .turns import TurnLog

logger = logging.getLogger(__name__)

MAX_MANUAL_SUMMARY_LENGTH = 3000
SUMMARY_WINDOW = 20
EVERY_MESSAGE_UNTIL = 10
CADENCE = 5


def should_resummarize(active_messages: int) -> bool:
    """Every message while the conversation is short, then every fifth one."""

    if active_messages <= 0:
        return False
    if active_messages <= EVERY_MESSAGE_UNTIL:
        return True
    return active_messages % CADENCE == 0


def render_transcript(messages: Sequence[Message]) -> str:
    return "\n".join(
        f"{SPEAKER_LABELS.get(message.role, message.role)}: {message.content}" for message in messages
    )


class RollingSummarizer:
    """Maintain one bounded digest per conversation.

    A regenerated digest replaces the summary and is also filed into the
    memory store as 2000-char segments so older context stays retrievable.
    The segments of the previous digest are removed in the same transaction;
    only the latest digest is ever held as ``source="summary"`` entries.
    """

    def __init__(
        self,
        db: ChatDatabase,
        turns: TurnLog,
        memories: MemoryStore,
        llm_client: Any,
        *,
        window: int = SUMMARY_WINDOW,
    ) -> None:
        self.db = db
        self.turns = turns
        self.memories = memories
        self.llm_client = llm_client
        self.window = window
        self._running: Set[str] = set()
        self._running_lock = threading.Lock()

    def get(self, conversation_id: str) -> RollingSummary:
        return self.db.fetch_summary(conversation_id)

    def update(
        self,
        conversation_id: str,
        content: Optional[str] = None,
        auto_summarize: Optional[bool] = None,
    ) -> RollingSummary:
        """Manual edit path: replace the digest outright, no chunking."""

        if content is not None and len(content) > MAX_MANUAL_SUMMARY_LENGTH:
            raise ValidationError(
                f"Summary must be at most {MAX_MANUAL_SUMMARY_LENGTH} characters (got {len(content)})"
            )
        self.db.require_conversation(conversation_id)
        self.db.write_summary(
            conversation_id=conversation_id, content=content, auto_summarize=auto_summarize
        )
        if content and content.strip():
            self.memories.worker.schedule("summary", conversation_id, content)
        return self.get(conversation_id)

    def resummarize(self, conversation_id: str) -> SummaryResult:
        self.db.require_conversation(conversation_id)
        with self._running_lock:
            if conversation_id in self._running:
                raise ConflictError(
                    "Summarization is already running", entity="conversation", entity_id=conversation_id
                )
            self._running.add(conversation_id)
        try:
            return self._resummarize(conversation_id)
        finally:
            with self._running_lock:
                self._running.discard(conversation_id)

    def _resummarize(self, conversation_id: str) -> SummaryResult:
        total = self.turns.count_active(conversation_id)
        recent = self.turns.history(conversation_id, limit=self.window)
        if not recent:
            raise ValidationError("There is no conversation to summarize yet")

        messages = [
            {"role": "system", "content": SUMMARY_PROMPT},
            {"role": "user", "content": render_transcript(recent)},
        ]
        try:
            raw = self.llm_client.chat(messages)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Summarization failed: {exc}") from exc
        summary_text = (raw or "").strip()
        if not summary_text:
            raise GenerationError("Summarization returned no text")

        metadata = {"message_range": [total - len(recent) + 1, total]}
        with self.db.transaction():
            self.db.write_summary(conversation_id=conversation_id, content=summary_text)
            retired = self.memories.delete_by_source(conversation_id, "summary")
            segments = self.memories.create_segments(
                conversation_id, summary_text, metadata, schedule=False
            )
        self.memories.worker.schedule("summary", conversation_id, summary_text)
        self.memories.schedule_embeddings(segments)
        logger.info(
            "Rewrote back memory for %s (%s chars, %s segments, %s retired)",
            conversation_id,
            len(summary_text),
            len(segments),
            len(retired),
        )
        return SummaryResult(summary=self.get(conversation_id), segments=segments)


__all__ = [
    "MAX_MANUAL_SUMMARY_LENGTH",
    "RollingSummarizer",
    "render_transcript",
    "should_resummarize",
]
