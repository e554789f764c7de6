"""High-level orchestration: prompt assembly, reply generation, owner-scoped API."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .embedding import EmbeddingWorker
from .errors import BackMemoryError, ConflictError, GenerationError
from .memories import MemorySelector, MemoryStore
from .prompts import LENGTH_DIRECTIVE, MEMORY_BLOCK_HEADER, PROFILE_BLOCK, SUMMARY_BLOCK
from .schemas import (
    Conversation,
    GenerationSettings,
    MemoryEntry,
    Message,
    ModelReply,
    Persona,
    ReplyResult,
    RollingSummary,
    SelectedMemory,
    SummaryResult,
    UserMessage,
    UserProfile,
)
from .storage import ChatDatabase
from .summarizer import RollingSummarizer, should_resummarize
from .turns import TurnLog

logger = logging.getLogger(__name__)


@runtime_checkable
class PointsLedger(Protocol):
    """Contract of the external points ledger.

    ``reserve`` holds ``amount`` points before generation (raising
    :class:`~backmemory.errors.InsufficientPointsError` when it cannot),
    ``commit`` finalises the hold after success and ``refund`` returns it.
    """

    def reserve(self, user_id: str, amount: int) -> str:
        ...

    def commit(self, reservation_id: str) -> None:
        ...

    def refund(self, reservation_id: str) -> None:
        ...


class UnmeteredLedger:
    """Ledger used when generation is not billed."""

    def reserve(self, user_id: str, amount: int) -> str:
        return str(uuid.uuid4())

    def commit(self, reservation_id: str) -> None:
        return None

    def refund(self, reservation_id: str) -> None:
        return None


@dataclass
class ConversationOrchestrator:
    """Glue between the turn log, the memory selector, the summarizer, and the LLM."""

    db: ChatDatabase
    llm_client: Any
    embedding_client: Any
    ledger: PointsLedger = field(default_factory=UnmeteredLedger)
    history_window: int = 30
    summary_window: int = 20
    promote_on_delete: bool = True
    background_summaries: bool = False
    embedding_workers: int = 2
    worker: Optional[EmbeddingWorker] = None

    def __post_init__(self) -> None:
        if self.worker is None:
            self.worker = EmbeddingWorker(
                self.db, self.embedding_client, max_workers=self.embedding_workers
            )
        self.turns = TurnLog(self.db, promote_on_delete=self.promote_on_delete)
        self.memories = MemoryStore(self.db, self.worker)
        self.selector = MemorySelector(self.memories, self.embedding_client)
        self.summarizer = RollingSummarizer(
            self.db, self.turns, self.memories, self.llm_client, window=self.summary_window
        )

    # ------------------------------------------------------------------
    # Prompt helpers
    # ------------------------------------------------------------------
    @staticmethod
    def build_system_instruction(
        persona: Persona,
        profile: Optional[UserProfile] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> str:
        profile = profile or UserProfile()
        settings = settings or GenerationSettings()
        parts = [
            persona.template.replace("{{char}}", persona.name).replace("{{user}}", profile.nickname),
            PROFILE_BLOCK.format(
                nickname=profile.nickname,
                age=profile.age or "not set",
                gender=profile.gender or "not set",
                description=(profile.description or "not set").replace("{{user}}", profile.nickname),
            ),
        ]
        if settings.length_multiplier != 1.0:
            parts.append(
                LENGTH_DIRECTIVE.format(
                    target_length=settings.target_length,
                    multiplier=settings.length_multiplier,
                )
            )
        return "\n\n".join(parts)

    def build_messages(
        self,
        *,
        persona: Persona,
        profile: Optional[UserProfile],
        settings: GenerationSettings,
        summary: RollingSummary,
        memories: Sequence[SelectedMemory],
        history: Sequence[Message],
    ) -> List[Mapping[str, str]]:
        nickname = (profile or UserProfile()).nickname
        system_parts = [self.build_system_instruction(persona, profile, settings)]
        if persona.first_message and len(history) <= 1:
            system_parts.append(f"# Opening\n{persona.first_message.replace('{{user}}', nickname)}")
        if summary.content.strip():
            system_parts.append(SUMMARY_BLOCK.format(summary=summary.content.strip()))
        if memories:
            lines = [MEMORY_BLOCK_HEADER]
            lines.extend(
                f"- Memory {index}: {memory.entry.content}"
                for index, memory in enumerate(memories, start=1)
            )
            system_parts.append("\n".join(lines))

        messages: List[Mapping[str, str]] = [{"role": "system", "content": "\n\n".join(system_parts)}]
        for message in history:
            messages.append(
                {
                    "role": "user" if message.role == "user" else "assistant",
                    "content": message.content.replace("{{user}}", nickname),
                }
            )
        return messages

    def _call_llm(self, messages: Sequence[Mapping[str, str]], settings: GenerationSettings) -> str:
        try:
            raw = self.llm_client.chat(
                messages,
                model=settings.model,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
            )
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Reply generation failed: {exc}") from exc
        text = (raw or "").strip()
        if not text:
            raise GenerationError("The model returned an empty reply")
        return text

    def _store_reply(self, turn_id: str, content: str, conversation_id: str) -> ModelReply:
        try:
            return self.turns.append_model_reply(turn_id, content, conversation_id=conversation_id)
        except ConflictError:
            logger.warning("Version race on turn %s, retrying once", turn_id)
            return self.turns.append_model_reply(turn_id, content, conversation_id=conversation_id)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def _generate_for_turn(
        self,
        *,
        conversation_id: str,
        turn: UserMessage,
        history: Sequence[Message],
        persona: Persona,
        profile: Optional[UserProfile],
        settings: GenerationSettings,
    ) -> tuple[ModelReply, List[SelectedMemory]]:
        memories = self.selector.select(conversation_id, turn.content)
        messages = self.build_messages(
            persona=persona,
            profile=profile,
            settings=settings,
            summary=self.summarizer.get(conversation_id),
            memories=memories,
            history=history,
        )
        text = self._call_llm(messages, settings)
        reply = self._store_reply(turn.id, text, conversation_id)
        return reply, memories

    def _refund(self, reservation_id: str, user_id: str) -> None:
        try:
            self.ledger.refund(reservation_id)
        except Exception:
            logger.exception("Refund of reservation %s for %s failed", reservation_id, user_id)
        else:
            logger.warning("Refunded reservation %s for %s", reservation_id, user_id)

    def generate_reply(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        persona: Persona,
        profile: Optional[UserProfile] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> ReplyResult:
        """Run one user turn end to end and return the stored reply.

        Points are reserved before anything is written and refunded if any
        later step fails; the user message stays so the turn can be regenerated.
        """

        self.authorize(conversation_id, user_id)
        settings = settings or GenerationSettings()
        reservation = self.ledger.reserve(user_id, settings.point_cost)
        try:
            user_message = self.turns.append_user_message(conversation_id, content)
            history = self.turns.history(conversation_id, limit=self.history_window)
            reply, memories = self._generate_for_turn(
                conversation_id=conversation_id,
                turn=user_message,
                history=history,
                persona=persona,
                profile=profile,
                settings=settings,
            )
            self.ledger.commit(reservation)
        except Exception:
            self._refund(reservation, user_id)
            raise
        logger.info("Generated reply v%s for turn %s", reply.version, reply.turn_id)
        summarized = self._maybe_resummarize(conversation_id)
        return ReplyResult(
            user_message=user_message, reply=reply, memories=memories, summarized=summarized
        )

    def regenerate_reply(
        self,
        conversation_id: str,
        user_id: str,
        turn_id: str,
        persona: Persona,
        profile: Optional[UserProfile] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> ReplyResult:
        """Produce a new active version for an existing turn."""

        self.authorize(conversation_id, user_id)
        turn = self.turns.get_turn(turn_id, conversation_id=conversation_id)
        settings = settings or GenerationSettings()
        reservation = self.ledger.reserve(user_id, settings.point_cost)
        try:
            history = self.turns.history(conversation_id, before_turn=turn_id)
            history = (history + [turn])[-self.history_window :]
            while isinstance(history[0], ModelReply):
                history.pop(0)
            reply, memories = self._generate_for_turn(
                conversation_id=conversation_id,
                turn=turn,
                history=history,
                persona=persona,
                profile=profile,
                settings=settings,
            )
            self.ledger.commit(reservation)
        except Exception:
            self._refund(reservation, user_id)
            raise
        logger.info("Regenerated turn %s as v%s", turn_id, reply.version)
        return ReplyResult(user_message=None, reply=reply, memories=memories)

    def _maybe_resummarize(self, conversation_id: str) -> bool:
        if not self.summarizer.get(conversation_id).auto_summarize:
            return False
        if not should_resummarize(self.turns.count_active(conversation_id)):
            return False
        if self.background_summaries:
            self.worker.submit(self._resummarize_quietly, conversation_id)
            return True
        return self._resummarize_quietly(conversation_id)

    def _resummarize_quietly(self, conversation_id: str) -> bool:
        try:
            self.summarizer.resummarize(conversation_id)
        except BackMemoryError as exc:
            logger.warning("Back memory for %s left unchanged: %s", conversation_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Owner-scoped surface
    # ------------------------------------------------------------------
    def start_conversation(self, user_id: str, persona_id: Optional[str] = None) -> Conversation:
        return self.db.create_conversation(user_id=user_id, persona_id=persona_id)

    def authorize(self, conversation_id: str, user_id: str) -> Conversation:
        return self.db.require_conversation(conversation_id, user_id)

    def history(self, conversation_id: str, user_id: str, before: Optional[str] = None) -> List[Message]:
        self.authorize(conversation_id, user_id)
        return self.turns.history(conversation_id, before=before)

    def switch_version(self, conversation_id: str, user_id: str, turn_id: str, message_id: str) -> ModelReply:
        self.authorize(conversation_id, user_id)
        return self.turns.switch_active_version(turn_id, message_id, conversation_id=conversation_id)

    def edit_message(self, conversation_id: str, user_id: str, message_id: str, content: str) -> Message:
        self.authorize(conversation_id, user_id)
        return self.turns.edit_message_content(message_id, content, conversation_id=conversation_id)

    def delete_message(self, conversation_id: str, user_id: str, message_id: str) -> List[str]:
        self.authorize(conversation_id, user_id)
        return self.turns.delete_message(message_id, conversation_id=conversation_id)

    def list_memories(self, conversation_id: str, user_id: str) -> List[MemoryEntry]:
        self.authorize(conversation_id, user_id)
        return self.memories.list(conversation_id)

    def create_memory(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        keywords: Optional[Sequence[str]] = None,
    ) -> MemoryEntry:
        self.authorize(conversation_id, user_id)
        return self.memories.create(conversation_id, content, keywords)

    def update_memory(
        self,
        conversation_id: str,
        user_id: str,
        entry_id: str,
        content: str,
        keywords: Optional[Sequence[str]] = None,
    ) -> MemoryEntry:
        self.authorize(conversation_id, user_id)
        return self.memories.update(entry_id, content, keywords, conversation_id=conversation_id)

    def delete_memory(self, conversation_id: str, user_id: str, entry_id: str) -> None:
        self.authorize(conversation_id, user_id)
        self.memories.delete(entry_id, conversation_id=conversation_id)

    def get_summary(self, conversation_id: str, user_id: str) -> RollingSummary:
        self.authorize(conversation_id, user_id)
        return self.summarizer.get(conversation_id)

    def update_summary(
        self,
        conversation_id: str,
        user_id: str,
        content: Optional[str] = None,
        auto_summarize: Optional[bool] = None,
    ) -> RollingSummary:
        self.authorize(conversation_id, user_id)
        return self.summarizer.update(conversation_id, content, auto_summarize)

    def resummarize_now(self, conversation_id: str, user_id: str) -> SummaryResult:
        self.authorize(conversation_id, user_id)
        return self.summarizer.resummarize(conversation_id)

    def close(self) -> None:
        self.worker.shutdown()


__all__ = ["ConversationOrchestrator", "PointsLedger", "UnmeteredLedger"]
