"""Unified OpenAI-compatible clients for chat completions and embeddings."""

from __future__ import annotations

import logging
import os
from copy import deepcopy
from typing import Any, Iterable, List, Mapping, MutableMapping, Optional, Sequence

import openai
from openai import OpenAI

from .errors import GenerationError

logger = logging.getLogger(__name__)


DEFAULT_EXTRA_BODY: Mapping[str, Any] = {
    "extra_body": {"chat_template_kwargs": {"enable_thinking": False}}
}

DEFAULT_TIMEOUT = 60.0


class LLMClient:
    """Thin wrapper over :class:`openai.OpenAI` with provider defaults.

    Every request is bounded by ``timeout`` seconds. Transport failures and
    timeouts surface as :class:`~backmemory.errors.GenerationError`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        provider: str = "vllm",
        api_key: str | None = None,
        api_key_env: str | None = None,
        default_extra_body: Mapping[str, Any] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = 0,
    ) -> None:
        provider_key = provider.lower()
        if provider_key not in {"vllm", "deepseek", "openai"}:
            raise ValueError(f"Unsupported provider '{provider}'")

        if api_key is None:
            env_name = api_key_env or (
                "DEEPSEEK_API_KEY" if provider_key == "deepseek" else "OPENAI_API_KEY"
            )
            api_key = os.environ.get(env_name) or ""

        extra = default_extra_body
        if extra is None and provider_key == "vllm":
            extra = DEFAULT_EXTRA_BODY

        self._client = OpenAI(
            base_url=base_url, api_key=api_key, timeout=timeout, max_retries=max_retries
        )
        self.model = model
        self.provider = provider_key
        self.timeout = timeout
        self.default_extra_body = dict(extra or {})

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------
    def chat(
        self,
        messages: Sequence[Mapping[str, object]],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        extra_body: Mapping[str, Any] | None = None,
    ) -> str:
        payload: MutableMapping[str, Any] = {
            "model": model or self.model,
            "messages": list(messages),
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        merged = self._merge_extra(extra_body)
        if merged:
            payload.update(merged)

        logger.debug("Dispatching chat request: %s", payload)
        try:
            response = self._client.chat.completions.create(**payload)
        except openai.APITimeoutError as exc:
            raise GenerationError(f"Chat request timed out after {self.timeout}s") from exc
        except openai.OpenAIError as exc:
            raise GenerationError(f"Chat request failed: {exc}") from exc
        logger.debug("Chat raw response: %s", response)
        if not response.choices:
            return ""
        choice = response.choices[0].message
        return getattr(choice, "content", "") or ""

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------
    def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = [text.replace("\n", " ").strip() for text in texts]
        if not items:
            return []

        payload: MutableMapping[str, Any] = {"model": self.model, "input": items}
        logger.debug("Dispatching embedding request: %s", payload)
        try:
            response = self._client.embeddings.create(**payload)
        except openai.APITimeoutError as exc:
            raise GenerationError(f"Embedding request timed out after {self.timeout}s") from exc
        except openai.OpenAIError as exc:
            raise GenerationError(f"Embedding request failed: {exc}") from exc
        logger.debug("Embedding raw response: %s", response)
        vectors: List[List[float]] = []
        for entry in response.data:
            vector = getattr(entry, "embedding", None)
            if vector is None:
                continue
            vectors.append([float(x) for x in vector])
        if len(vectors) != len(items):
            logger.warning(
                "Embedding count mismatch: expected %s, received %s", len(items), len(vectors)
            )
        return vectors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _merge_extra(
        self, extra_body: Mapping[str, Any] | None
    ) -> MutableMapping[str, Any] | None:
        if not self.default_extra_body and not extra_body:
            return None
        merged: MutableMapping[str, Any] = deepcopy(self.default_extra_body)
        if extra_body:
            for key, value in extra_body.items():
                if (
                    key in merged
                    and isinstance(merged[key], MutableMapping)
                    and isinstance(value, Mapping)
                ):
                    merged[key].update(value)  # type: ignore[arg-type]
                else:
                    merged[key] = deepcopy(value) if isinstance(value, Mapping) else value
        return merged


def embed_text(client: Any, text: str) -> List[float]:
    """Embed a single text through any client exposing ``embed(texts)``."""

    vectors = client.embed([text])
    if not vectors or not vectors[0]:
        raise GenerationError("Embedding service returned no vector")
    return vectors[0]


__all__ = ["DEFAULT_TIMEOUT", "LLMClient", "embed_text"]
