"""Fire-and-forget embedding jobs for memory entries and rolling summaries."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, List, Optional

from .clients import embed_text
from .storage import ChatDatabase

logger = logging.getLogger(__name__)


class EmbeddingWorker:
    """Compute embeddings off the request path and attach them when they land.

    Jobs have no caller-visible error channel: failures are logged and the
    record simply stays unembedded (keyword-only ranking) until the next update.
    """

    def __init__(
        self,
        db: ChatDatabase,
        embedding_client: Any,
        *,
        max_workers: int = 2,
        executor: Optional[Executor] = None,
    ) -> None:
        self.db = db
        self.embedding_client = embedding_client
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="embedding"
        )
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def schedule(self, kind: str, record_id: str, text: str) -> Future:
        """Queue an embedding for ``record_id``; ``kind`` is ``memory`` or ``summary``."""

        return self.submit(self._embed_and_store, kind, record_id, text)

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Run any background callable on the worker pool and track it."""

        future = self._executor.submit(fn, *args)
        with self._lock:
            self._pending = [item for item in self._pending if not item.done()]
            self._pending.append(future)
        return future

    def _embed_and_store(self, kind: str, record_id: str, text: str) -> bool:
        try:
            vector = embed_text(self.embedding_client, text)
        except Exception:
            logger.warning("Embedding failed for %s %s", kind, record_id, exc_info=True)
            return False
        stored = self.db.store_embedding(
            kind=kind, record_id=record_id, source_text=text, embedding=vector
        )
        if not stored:
            logger.debug("Discarded embedding for %s %s: record gone or changed", kind, record_id)
        return stored

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every job queued so far has finished."""

        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self.drain()
        self._executor.shutdown(wait=True)


__all__ = ["EmbeddingWorker"]
