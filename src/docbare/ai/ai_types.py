"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class MemoryProvider(Protocol):
    """Collaborator returning prior conversation/reasoning text for a session."""

    async def memory_context(self, session_id: str, user_id: str, query: str) -> str:
        ...


class KnowledgeRetriever(Protocol):
    """Collaborator returning ordered knowledge-base text chunks for a query."""

    async def retrieve(self, query: str, limit: int) -> Sequence[str]:
        ...


class AnswerSink(Protocol):
    """Persistence collaborator invoked once an answer finished streaming."""

    async def store_answer(self, session_id: str, user_id: str, content: str) -> None:
        ...


class QueryMode(str, Enum):
    """Product mode selecting the system prompt."""

    ASSISTANT = "A"
    DRAFTING = "B"


@dataclass(slots=True)
class QueryRequest:
    """Validated request crossing from the HTTP boundary into the core."""

    query: str
    session_id: str
    user_id: str
    mode: QueryMode = QueryMode.ASSISTANT
    document_content: str | None = None
    document_name: str | None = None
    memory_context: str | None = None
    knowledge_chunks: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def has_document(self) -> bool:
        return bool(self.document_content and self.document_content.strip())

    def as_log_payload(self) -> dict[str, Any]:
        preview = self.query[:100] + ("..." if len(self.query) > 100 else "")
        return {
            "query": preview,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "mode": self.mode.value,
            "has_document": self.has_document,
            "knowledge_chunks": len(self.knowledge_chunks),
        }


__all__ = [
    "AnswerSink",
    "KnowledgeRetriever",
    "MemoryProvider",
    "QueryMode",
    "QueryRequest",
    "TokenCounterProtocol",
]
