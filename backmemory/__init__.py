"""Long-session chat memory: turn versions, memory entries, and back memory.

The package exposes a high-level orchestrator that keeps long role-play
conversations coherent. It wires together

* a turn/version log that keeps every regenerated reply and one active pick,
* a memory store whose entries are selected (at most three) per generation,
* a rolling summarizer that rewrites the conversation's "back memory", and
* OpenAI-compatible chat / embedding clients for a locally hosted model.
"""

from .clients import LLMClient
from .errors import (
    BackMemoryError,
    ConflictError,
    ForbiddenError,
    GenerationError,
    InsufficientPointsError,
    NotFoundError,
    ValidationError,
    user_message,
)
from .manager import ConversationOrchestrator, PointsLedger, UnmeteredLedger
from .memories import MemorySelector, MemoryStore
from .runtime import ChatRuntime, main as runtime_main
from .schemas import (
    Conversation,
    GenerationSettings,
    MemoryEntry,
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
from .summarizer import RollingSummarizer
from .turns import TurnLog

__all__ = [
    "BackMemoryError",
    "ChatDatabase",
    "ChatRuntime",
    "ConflictError",
    "Conversation",
    "ConversationOrchestrator",
    "ForbiddenError",
    "GenerationError",
    "GenerationSettings",
    "InsufficientPointsError",
    "LLMClient",
    "MemoryEntry",
    "MemorySelector",
    "MemoryStore",
    "ModelReply",
    "NotFoundError",
    "Persona",
    "PointsLedger",
    "ReplyResult",
    "RollingSummarizer",
    "RollingSummary",
    "SelectedMemory",
    "SummaryResult",
    "TurnLog",
    "UnmeteredLedger",
    "UserMessage",
    "UserProfile",
    "ValidationError",
    "runtime_main",
    "user_message",
]
