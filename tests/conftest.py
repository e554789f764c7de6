from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Sequence, Union

import pytest

from backmemory.embedding import EmbeddingWorker
from backmemory.errors import GenerationError, InsufficientPointsError
from backmemory.manager import ConversationOrchestrator
from backmemory.memories import MemoryStore
from backmemory.storage import ChatDatabase
from backmemory.turns import TurnLog


class FakeLLMClient:
    """Returns queued replies in order; an Exception in the queue is raised."""

    def __init__(self, responses: Optional[Sequence[Union[str, Exception]]] = None) -> None:
        self.responses: List[Union[str, Exception]] = list(responses or [])
        self.calls: List[Mapping[str, Any]] = []

    def queue(self, *responses: Union[str, Exception]) -> None:
        self.responses.extend(responses)

    def chat(self, messages: Sequence[Mapping[str, Any]], **kwargs: Any) -> str:
        self.calls.append({"messages": list(messages), **kwargs})
        if not self.responses:
            raise AssertionError("No response queued for chat call")
        reply = self.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeEmbeddingClient:
    """Maps texts to vectors by the first configured word they contain."""

    def __init__(
        self,
        vectors: Optional[Mapping[str, List[float]]] = None,
        default: Optional[List[float]] = None,
    ) -> None:
        self.vectors = dict(vectors or {})
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.fail = False
        self.calls: List[str] = []

    def vector_for(self, text: str) -> List[float]:
        lowered = text.lower()
        for word, vector in self.vectors.items():
            if word in lowered:
                return list(vector)
        return list(self.default)

    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = list(texts)
        self.calls.extend(items)
        if self.fail:
            raise GenerationError("embedding service unavailable")
        return [self.vector_for(text) for text in items]


class RecordingLedger:
    def __init__(self, balance: int = 100) -> None:
        self.balance = balance
        self.reserved: List[tuple] = []
        self.committed: List[str] = []
        self.refunded: List[str] = []

    def reserve(self, user_id: str, amount: int) -> str:
        if amount > self.balance:
            raise InsufficientPointsError(f"{user_id} needs {amount} points")
        self.balance -= amount
        reservation = f"res-{len(self.reserved) + 1}"
        self.reserved.append((reservation, user_id, amount))
        return reservation

    def commit(self, reservation_id: str) -> None:
        self.committed.append(reservation_id)

    def refund(self, reservation_id: str) -> None:
        for reservation, _, amount in self.reserved:
            if reservation == reservation_id:
                self.balance += amount
        self.refunded.append(reservation_id)


@pytest.fixture
def db() -> ChatDatabase:
    return ChatDatabase(":memory:")


@pytest.fixture
def embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def ledger() -> RecordingLedger:
    return RecordingLedger()


@pytest.fixture
def worker(db: ChatDatabase, embedder: FakeEmbeddingClient) -> Iterator[EmbeddingWorker]:
    embedding_worker = EmbeddingWorker(db, embedder)
    yield embedding_worker
    embedding_worker.shutdown()


@pytest.fixture
def turns(db: ChatDatabase) -> TurnLog:
    return TurnLog(db)


@pytest.fixture
def store(db: ChatDatabase, worker: EmbeddingWorker) -> MemoryStore:
    return MemoryStore(db, worker)


@pytest.fixture
def conversation_id(db: ChatDatabase) -> str:
    return db.create_conversation(user_id="user-1").id


@pytest.fixture
def make_orchestrator(
    db: ChatDatabase, llm: FakeLLMClient, embedder: FakeEmbeddingClient
) -> Iterator[Callable[..., ConversationOrchestrator]]:
    created: List[ConversationOrchestrator] = []

    def _make(**kwargs: Any) -> ConversationOrchestrator:
        orchestrator = ConversationOrchestrator(
            db=db, llm_client=llm, embedding_client=embedder, **kwargs
        )
        created.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in created:
        orchestrator.close()
