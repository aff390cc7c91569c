"""Chat message data models for streamed assistant answers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


ChatRole = Literal["user", "assistant", "system"]


class ConsumerPhase(Enum):
    """Where the consumer is within one tagged stream."""

    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    REASONING = "reasoning"
    FINAL = "final"


_PHASE_TRANSITIONS: dict[ConsumerPhase, frozenset[ConsumerPhase]] = {
    ConsumerPhase.AWAITING_FIRST_TOKEN: frozenset({ConsumerPhase.REASONING, ConsumerPhase.FINAL}),
    ConsumerPhase.REASONING: frozenset({ConsumerPhase.FINAL}),
    ConsumerPhase.FINAL: frozenset(),
}


class MessageStatus(Enum):
    """Lifecycle status of an assistant message."""

    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.STREAMING


@dataclass(slots=True)
class StreamingMessage:
    """Client-side state of one in-flight assistant answer.

    A cancelled message keeps whatever text arrived before the cancel and is
    rendered with its own terminal state. A failed message is meant to be
    discarded by the caller.
    """

    message_id: str = field(default_factory=new_message_id)
    session_id: Optional[str] = None
    phase: ConsumerPhase = ConsumerPhase.AWAITING_FIRST_TOKEN
    status: MessageStatus = MessageStatus.STREAMING
    answer: str = ""
    reasoning: str = ""
    loading: bool = True
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None

    def advance(self, target: ConsumerPhase) -> bool:
        """Move to ``target``; returns ``False`` when already there or past it."""

        if target is self.phase:
            return False
        if target not in _PHASE_TRANSITIONS[self.phase]:
            return False
        self.phase = target
        return True

    def finish(self, status: MessageStatus, *, error: str | None = None) -> bool:
        """Enter a terminal status once; later calls are ignored."""

        if self.status.is_terminal:
            return False
        self.status = status
        self.loading = False
        self.error = error
        self.finished_at = _utcnow()
        return True

    @property
    def is_cancelled(self) -> bool:
        return self.status is MessageStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for persistence or UI snapshots."""

        payload: Dict[str, Any] = {
            "message_id": self.message_id,
            "session_id": self.session_id,
            "role": "assistant",
            "phase": self.phase.value,
            "status": self.status.value,
            "content": self.answer,
            "reasoning": self.reasoning,
            "loading": self.loading,
            "created_at": self.created_at.isoformat(),
        }
        if self.finished_at is not None:
            payload["finished_at"] = self.finished_at.isoformat()
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ChatMessage:
    """Represents a row inside the chat history list."""

    role: ChatRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


__all__ = [
    "ChatMessage",
    "ChatRole",
    "ConsumerPhase",
    "MessageStatus",
    "StreamingMessage",
    "new_message_id",
]
