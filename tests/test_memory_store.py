from __future__ import annotations

import itertools
import threading
from typing import Iterable, List

import pytest

from backmemory.embedding import EmbeddingWorker
from backmemory.errors import ForbiddenError, NotFoundError, ValidationError
from backmemory.keywords import extract_keywords, matches_keywords
from backmemory.memories import MemorySelector, MemoryStore
from backmemory.storage import ChatDatabase

STAMP = "2026-01-01T12:00:00+00:00"


class _GatedEmbeddingClient:
    """Blocks every embed call until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        self.release.wait(timeout=5)
        return [[1.0, 0.0, 0.0] for _ in texts]


def test_extract_keywords_orders_by_frequency_and_drops_noise() -> None:
    text = "The dragon and the Dragon's fire! Fire, fire, 2024 ok"

    assert extract_keywords(text) == ["fire", "dragon"]
    assert extract_keywords("apple banana cherry banana apple") == ["apple", "banana", "cherry"]
    assert extract_keywords("one two three four", limit=2) == ["one", "two"]
    assert extract_keywords("") == []


def test_matches_keywords_is_case_insensitive_substring() -> None:
    assert matches_keywords(["Dragon"], "the dragons are coming")
    assert not matches_keywords(["wyrm"], "the dragons are coming")
    assert not matches_keywords([], "anything")


def test_create_list_and_update(store: MemoryStore, conversation_id: str) -> None:
    first = store.create(conversation_id, "  The castle gate is guarded by twin knights.  ")
    second = store.create(conversation_id, "Mira owes the innkeeper three silver coins.", ["mira", "debt"])

    assert first.content == "The castle gate is guarded by twin knights."
    assert "castle" in first.keywords
    assert first.source == "user"
    assert second.keywords == ["mira", "debt"]
    assert [entry.id for entry in store.list(conversation_id)] == [second.id, first.id]

    updated = store.update(second.id, "Mira repaid the innkeeper.", conversation_id=conversation_id)
    assert updated.content == "Mira repaid the innkeeper."
    assert updated.keywords == ["mira", "debt"]
    assert store.get(second.id).content == "Mira repaid the innkeeper."


def test_content_length_limits(store: MemoryStore, conversation_id: str) -> None:
    assert len(store.create(conversation_id, "x" * 2000).content) == 2000
    with pytest.raises(ValidationError):
        store.create(conversation_id, "x" * 2001)
    with pytest.raises(ValidationError):
        store.create(conversation_id, "   ")


def test_foreign_and_unknown_entries(db: ChatDatabase, store: MemoryStore, conversation_id: str) -> None:
    other = db.create_conversation(user_id="user-2").id
    entry = store.create(conversation_id, "A secret passage behind the library shelf.")

    with pytest.raises(ForbiddenError):
        store.update(entry.id, "changed", conversation_id=other)
    with pytest.raises(ForbiddenError):
        store.delete(entry.id, conversation_id=other)
    with pytest.raises(NotFoundError):
        store.get("missing")

    store.delete(entry.id, conversation_id=conversation_id)
    assert store.list(conversation_id) == []


def test_embedding_is_attached_in_background(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    embedder.vectors["lantern"] = [0.0, 1.0, 0.0]
    entry = store.create(conversation_id, "The lantern never goes out.")

    assert entry.embedding is None
    worker.drain()

    stored = store.get(entry.id)
    assert stored.embedding == [0.0, 1.0, 0.0]
    assert stored.to_payload()["embedded"] is True


def test_updating_same_content_twice_gives_same_embedding(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    embedder.vectors["harbor"] = [0.5, 0.5, 0.0]
    entry = store.create(conversation_id, "The ship waits in the harbor.")
    worker.drain()

    store.update(entry.id, "The ship left the harbor at dawn.")
    worker.drain()
    once = store.get(entry.id).embedding

    store.update(entry.id, "The ship left the harbor at dawn.")
    worker.drain()

    assert store.get(entry.id).embedding == once == [0.5, 0.5, 0.0]


def test_embedding_write_is_dropped_for_deleted_or_changed_entries(
    db: ChatDatabase, conversation_id: str
) -> None:
    gated = _GatedEmbeddingClient()
    worker = EmbeddingWorker(db, gated)
    store = MemoryStore(db, worker)
    try:
        deleted = store.create(conversation_id, "This entry will be deleted.")
        changed = store.create(conversation_id, "This entry will change.")
        store.delete(deleted.id)
        store.update(changed.id, "This entry has changed.")

        stale = worker.schedule("memory", changed.id, "This entry will change.")
        gone = worker.schedule("memory", deleted.id, "This entry will be deleted.")
        gated.release.set()
        worker.drain()

        assert stale.result() is False
        assert gone.result() is False
        assert store.get(changed.id).embedding == [1.0, 0.0, 0.0]
        assert db.query_one("SELECT id FROM memory_entries WHERE id = ?", (deleted.id,)) is None
    finally:
        gated.release.set()
        worker.shutdown()


def test_embedding_failure_leaves_entry_usable(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    embedder.fail = True
    entry = store.create(conversation_id, "The old well is cursed.")
    worker.drain()

    assert store.get(entry.id).embedding is None
    selector = MemorySelector(store, embedder, clock=lambda: STAMP)
    selected = selector.select(conversation_id, "Nobody drinks from the cursed well.")
    assert [memory.entry.id for memory in selected] == [entry.id]
    assert selected[0].similarity is None


def test_selector_prefers_keywords_then_similarity(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    embedder.vectors.update(
        {
            "dragon": [1.0, 0.0, 0.0],
            "wyrm": [0.9, 0.1, 0.0],
            "serpent": [0.8, 0.2, 0.0],
            "drake": [0.7, 0.3, 0.0],
        }
    )
    burned = store.create(conversation_id, "A dragon burned the mill last winter.", ["dragon"])
    hoard = store.create(conversation_id, "The dragon hoards gold in the caves.", ["dragon", "gold"])
    wyrm = store.create(conversation_id, "A wyrm sleeps under the hill.", ["wyrm"])
    serpent = store.create(conversation_id, "A serpent coils in the moat.", ["serpent"])
    drake = store.create(conversation_id, "A drake nests by the lake.", ["drake"])
    worker.drain()

    selector = MemorySelector(store, embedder, clock=lambda: STAMP)
    selected = selector.select(conversation_id, "The dragon circles the tower at dusk.")

    assert len(selected) == 3
    assert {memory.entry.id for memory in selected[:2]} == {burned.id, hoard.id}
    assert all(memory.keyword_match for memory in selected[:2])
    assert selected[2].entry.id == wyrm.id
    assert selected[2].keyword_match is False
    assert selected[2].similarity == pytest.approx(0.9 / (0.82 ** 0.5))

    for entry in (burned, hoard, wyrm):
        assert store.get(entry.id).last_applied_at == STAMP
    for entry in (serpent, drake):
        assert store.get(entry.id).last_applied_at is None


def test_selector_caps_and_rotates_least_recently_applied(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    entries = [store.create(conversation_id, f"Fact number {idx} about the moon.", ["moon"]) for idx in range(6)]
    worker.drain()
    ticks = itertools.count(1)
    selector = MemorySelector(store, embedder, clock=lambda: f"2026-01-01T00:00:0{next(ticks)}+00:00")

    first = selector.select(conversation_id, "Look at the moon tonight.")
    second = selector.select(conversation_id, "The moon is full.")

    assert len(first) == 3 and len(second) == 3
    first_ids = {memory.entry.id for memory in first}
    second_ids = {memory.entry.id for memory in second}
    assert first_ids.isdisjoint(second_ids)
    assert first_ids | second_ids == {entry.id for entry in entries}
    assert all(memory.entry.last_applied_at == "2026-01-01T00:00:01+00:00" for memory in first)
    assert all(memory.entry.last_applied_at == "2026-01-01T00:00:02+00:00" for memory in second)


def test_selector_falls_back_to_keywords_when_query_embedding_fails(
    store: MemoryStore, worker: EmbeddingWorker, embedder, conversation_id: str
) -> None:
    matched = store.create(conversation_id, "The blacksmith forged a silver blade.", ["blacksmith"])
    store.create(conversation_id, "Rain floods the lower district.", ["rain"])
    worker.drain()

    embedder.fail = True
    selector = MemorySelector(store, embedder, clock=lambda: STAMP)
    selected = selector.select(conversation_id, "Visit the blacksmith again.")

    assert [memory.entry.id for memory in selected] == [matched.id]
    assert selected[0].keyword_match is True
    assert selected[0].similarity is None


def test_selector_without_entries_writes_nothing(store: MemoryStore, embedder, conversation_id: str) -> None:
    selector = MemorySelector(store, embedder, clock=lambda: STAMP)

    assert selector.select(conversation_id, "anything at all") == []
    assert embedder.calls == []
