"""Typed data structures used by the long-session chat memory system."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Mapping, MutableMapping, Optional, Union


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Conversation:
    """A chat between one user and one persona. Owns turns and memories."""

    id: str
    user_id: str
    persona_id: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_payload(self) -> Mapping[str, Any]:
        return asdict(self)


@dataclass
class UserMessage:
    """A user-authored message. It opens a turn whose id is its own id."""

    role: ClassVar[str] = "user"

    id: str
    conversation_id: str
    content: str
    created_at: str = field(default_factory=utcnow)

    @property
    def turn_id(self) -> str:
        return self.id

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "turn_id": self.turn_id,
            "content": self.content,
            "created_at": self.created_at,
        }


@dataclass
class ModelReply:
    """One version of the persona's reply to a turn."""

    role: ClassVar[str] = "model"

    id: str
    conversation_id: str
    turn_id: str
    content: str
    version: int
    is_active: bool
    created_at: str = field(default_factory=utcnow)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "turn_id": self.turn_id,
            "content": self.content,
            "version": self.version,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


Message = Union[UserMessage, ModelReply]


@dataclass
class MemoryEntry:
    """A discrete, independently retrievable fact tied to a conversation."""

    id: str
    conversation_id: str
    content: str
    keywords: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    metadata: MutableMapping[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    last_applied_at: Optional[str] = None

    @property
    def source(self) -> str:
        return str(self.metadata.get("source", "user"))

    def to_payload(self) -> Mapping[str, Any]:
        data = asdict(self)
        # vectors are an index detail, callers only need to know one exists
        data.pop("embedding")
        data["embedded"] = self.embedding is not None
        return data


@dataclass
class SelectedMemory:
    entry: MemoryEntry
    similarity: Optional[float] = None
    keyword_match: bool = False

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "memory_id": self.entry.id,
            "content": self.entry.content,
            "similarity": self.similarity,
            "keyword_match": self.keyword_match,
        }


@dataclass
class RollingSummary:
    """The single evolving digest ("back memory") of a conversation."""

    conversation_id: str
    content: str = ""
    auto_summarize: bool = True
    updated_at: Optional[str] = None
    embedding: Optional[List[float]] = None

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "content": self.content,
            "auto_summarize": self.auto_summarize,
            "updated_at": self.updated_at,
        }


@dataclass
class SummaryResult:
    summary: RollingSummary
    segments: List[MemoryEntry] = field(default_factory=list)

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "summary": self.summary.to_payload(),
            "segments": [segment.to_payload() for segment in self.segments],
        }


@dataclass
class Persona:
    """The character the model plays. ``template`` may use {{char}} and {{user}}."""

    name: str
    template: str
    first_message: Optional[str] = None


@dataclass
class UserProfile:
    nickname: str = "User"
    age: Optional[str] = None
    gender: Optional[str] = None
    description: Optional[str] = None


@dataclass
class GenerationSettings:
    """Per-call generation knobs, passed explicitly into the orchestrator."""

    model: Optional[str] = None
    length_multiplier: float = 1.0
    temperature: float = 0.75
    max_tokens: int = 4096

    BOOST_COSTS: ClassVar[Dict[float, int]] = {1.5: 1, 3.0: 2, 5.0: 4}

    @property
    def point_cost(self) -> int:
        return 1 + self.BOOST_COSTS.get(self.length_multiplier, 0)

    @property
    def target_length(self) -> int:
        return round(1000 * self.length_multiplier)


@dataclass
class ReplyResult:
    user_message: Optional[UserMessage]
    reply: ModelReply
    memories: List[SelectedMemory] = field(default_factory=list)
    summarized: bool = False

    def to_payload(self) -> Mapping[str, Any]:
        return {
            "user_message": self.user_message.to_payload() if self.user_message else None,
            "reply": self.reply.to_payload(),
            "memories": [memory.to_payload() for memory in self.memories],
            "summarized": self.summarized,
        }


def dumps_payload(data: Mapping[str, Any]) -> str:
    """Render ``data`` as formatted JSON for CLI output."""

    return json.dumps(data, ensure_ascii=False, indent=2)


__all__ = [
    "Conversation",
    "GenerationSettings",
    "MemoryEntry",
    "Message",
    "ModelReply",
    "Persona",
    "ReplyResult",
    "RollingSummary",
    "SelectedMemory",
    "SummaryResult",
    "UserMessage",
    "UserProfile",
    "dumps_payload",
    "utcnow",
]
