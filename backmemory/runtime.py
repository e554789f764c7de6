"""Runtime helpers for deploying the long-session chat memory system."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .clients import DEFAULT_TIMEOUT, LLMClient
from .errors import BackMemoryError, user_message
from .manager import ConversationOrchestrator
from .schemas import GenerationSettings, Persona, UserProfile, dumps_payload
from .storage import ChatDatabase

logger = logging.getLogger(__name__)

DEFAULT_PERSONA_TEMPLATE = (
    "You are {{char}}, a character in an ongoing story with {{user}}. "
    "Stay in character and continue the story naturally."
)


@dataclass
class ChatRuntime:
    """High level runtime that wires the database, clients, and orchestrator."""

    db_path: str = "backmemory.sqlite"
    llm_url: str = "http://localhost:1109"
    llm_model: str = "Qwen3-8B"
    llm_provider: str = "vllm"
    embed_url: str = "http://localhost:1108"
    embed_model: str = "Qwen3-Embedding-8B"
    embed_provider: str = "vllm"
    timeout: float = DEFAULT_TIMEOUT
    history_window: int = 30
    summary_window: int = 20
    promote_on_delete: bool = True
    background_summaries: bool = False
    embedding_workers: int = 2
    user_id: str = "local-user"
    persona: Persona = field(
        default_factory=lambda: Persona(name="Assistant", template=DEFAULT_PERSONA_TEMPLATE)
    )
    profile: UserProfile = field(default_factory=UserProfile)

    def __post_init__(self) -> None:
        if self.db_path != ":memory:":
            db_parent = Path(self.db_path).expanduser().resolve().parent
            db_parent.mkdir(parents=True, exist_ok=True)
            self.database = ChatDatabase(str(Path(self.db_path).expanduser()))
        else:
            self.database = ChatDatabase(self.db_path)

        self.llm_client = LLMClient(
            base_url=self.llm_url,
            model=self.llm_model,
            provider=self.llm_provider,
            timeout=self.timeout,
        )
        self.embedding_client = LLMClient(
            base_url=self.embed_url,
            model=self.embed_model,
            provider=self.embed_provider,
            default_extra_body={},
            timeout=self.timeout,
        )

        self.orchestrator = ConversationOrchestrator(
            db=self.database,
            llm_client=self.llm_client,
            embedding_client=self.embedding_client,
            history_window=self.history_window,
            summary_window=self.summary_window,
            promote_on_delete=self.promote_on_delete,
            background_summaries=self.background_summaries,
            embedding_workers=self.embedding_workers,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ensure_conversation(self, conv_id: str, user_id: str) -> str:
        if self.database.fetch_conversation(conv_id) is None:
            self.database.create_conversation(user_id=user_id, conversation_id=conv_id)
        return conv_id

    def handle_event(self, event: Mapping[str, Any]) -> Mapping[str, object]:
        """Apply one JSONL event and return a JSON-serialisable result."""

        action = str(event.get("action") or "say")
        user_id = str(event.get("user_id") or self.user_id)
        conv_id = self.ensure_conversation(str(event.get("conv_id") or "session-1"), user_id)
        settings = GenerationSettings(
            length_multiplier=float(event.get("length_multiplier") or 1.0),
        )
        try:
            if action == "say":
                result = self.orchestrator.generate_reply(
                    conv_id, user_id, str(event["content"]), self.persona, self.profile, settings
                )
                return result.to_payload()
            if action == "regenerate":
                result = self.orchestrator.regenerate_reply(
                    conv_id, user_id, str(event["turn_id"]), self.persona, self.profile, settings
                )
                return result.to_payload()
            if action == "resummarize":
                return self.orchestrator.resummarize_now(conv_id, user_id).to_payload()
            if action == "memories":
                return {
                    "memories": [
                        entry.to_payload()
                        for entry in self.orchestrator.list_memories(conv_id, user_id)
                    ]
                }
        except BackMemoryError as exc:
            logger.warning("Event %s failed: %s", action, exc)
            return {"action": action, "error": type(exc).__name__, "message": user_message(exc)}
        return {"action": action, "error": "ValidationError", "message": f"Unknown action '{action}'"}

    def close(self) -> None:
        self.orchestrator.close()


def _iter_events(stream: Iterable[str]) -> Iterable[Mapping[str, object]]:
    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:  # pragma: no cover - CLI guard
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(event, Mapping):
            logger.error("Each line must be a JSON object: %s", line)
            raise SystemExit(1)
        action = event.get("action") or "say"
        if action == "say" and "content" not in event:
            logger.error("'say' events must include a 'content' field: %s", line)
            raise SystemExit(1)
        if action == "regenerate" and "turn_id" not in event:
            logger.error("'regenerate' events must include a 'turn_id' field: %s", line)
            raise SystemExit(1)
        yield event


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run long chat sessions with back memory")
    parser.add_argument("--db", default="backmemory.sqlite", help="SQLite file for conversations and memories")
    parser.add_argument("--llm-url", default="http://localhost:1109", help="Base URL of the LLM server")
    parser.add_argument("--llm-model", default="Qwen3-8B", help="LLM model name exposed by the server")
    parser.add_argument(
        "--llm-provider",
        choices=["vllm", "deepseek", "openai"],
        default="vllm",
        help="LLM provider type",
    )
    parser.add_argument("--embed-url", default="http://localhost:1108", help="Base URL of the embedding server")
    parser.add_argument(
        "--embed-model",
        default="Qwen3-Embedding-8B",
        help="Embedding model name exposed by the server",
    )
    parser.add_argument(
        "--embed-provider",
        choices=["vllm", "deepseek", "openai"],
        default="vllm",
        help="Embedding provider type",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="Seconds before an LLM or embedding request is abandoned",
    )
    parser.add_argument("--history-window", type=int, default=30, help="Messages sent with each reply request")
    parser.add_argument("--summary-window", type=int, default=20, help="Messages read by each resummarize")
    parser.add_argument(
        "--no-promote-on-delete",
        action="store_true",
        help="Leave a turn without an active reply when its active reply is deleted",
    )
    parser.add_argument(
        "--background-summaries",
        action="store_true",
        help="Run cadence-triggered summarization off the request path",
    )
    parser.add_argument("--persona-name", default="Assistant", help="Name substituted for {{char}}")
    parser.add_argument("--persona-template", default=DEFAULT_PERSONA_TEMPLATE, help="Persona system template")
    parser.add_argument("--nickname", default="User", help="Name substituted for {{user}}")
    parser.add_argument("--user-id", default="local-user", help="Owner id used for new conversations")
    parser.add_argument(
        "--input",
        type=Path,
        help="Optional path to a JSONL file. Defaults to reading from standard input.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    runtime = ChatRuntime(
        db_path=str(args.db),
        llm_url=args.llm_url,
        llm_model=args.llm_model,
        llm_provider=args.llm_provider,
        embed_url=args.embed_url,
        embed_model=args.embed_model,
        embed_provider=args.embed_provider,
        timeout=args.timeout,
        history_window=args.history_window,
        summary_window=args.summary_window,
        promote_on_delete=not args.no_promote_on_delete,
        background_summaries=args.background_summaries,
        user_id=args.user_id,
        persona=Persona(name=args.persona_name, template=args.persona_template),
        profile=UserProfile(nickname=args.nickname),
    )

    def _run_stream(stream: Iterable[str]) -> None:
        for event in _iter_events(stream):
            print(dumps_payload(runtime.handle_event(event)))

    try:
        if args.input:
            with args.input.open("r", encoding="utf-8") as fh:
                _run_stream(fh)
        else:
            _run_stream(sys.stdin)
    finally:
        runtime.close()

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
