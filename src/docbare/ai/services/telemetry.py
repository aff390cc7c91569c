"""Telemetry utilities for token budget instrumentation."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenUsageEvent:
    """Represents one request's allocated versus consumed output tokens."""

    query_length: int
    allocated_tokens: int
    actual_tokens: int
    reasoning_tokens: int = 0
    session_id: str | None = None
    model: str | None = None
    cancelled: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def efficiency(self) -> float:
        if self.allocated_tokens <= 0:
            return 0.0
        return self.actual_tokens / self.allocated_tokens * 100

    @property
    def was_efficient(self) -> bool:
        return self.actual_tokens <= self.allocated_tokens

    def as_payload(self) -> dict[str, object]:
        return {
            "query_length": self.query_length,
            "allocated_tokens": self.allocated_tokens,
            "actual_tokens": self.actual_tokens,
            "reasoning_tokens": self.reasoning_tokens,
            "efficiency": f"{self.efficiency:.2f}%",
            "was_efficient": self.was_efficient,
            "session_id": self.session_id,
            "model": self.model,
            "cancelled": self.cancelled,
            "timestamp": self.timestamp,
        }


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: TokenUsageEvent) -> None:
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TokenUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TokenUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[TokenUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


_DEFAULT_SINK = InMemoryTelemetrySink()


def log_token_usage(
    query: str,
    max_tokens: int,
    actual_tokens: int,
    *,
    sink: TelemetrySink | None = None,
    **extra: object,
) -> TokenUsageEvent:
    """Record how much of the allocated output budget a request consumed."""

    event = TokenUsageEvent(
        query_length=len(query or ""),
        allocated_tokens=int(max_tokens),
        actual_tokens=int(actual_tokens),
        **extra,  # type: ignore[arg-type]
    )
    target = sink if sink is not None else _DEFAULT_SINK
    target.record(event)
    LOGGER.info(
        "Token usage tracking: allocated=%s actual=%s efficiency=%.2f%% efficient=%s",
        event.allocated_tokens,
        event.actual_tokens,
        event.efficiency,
        event.was_efficient,
    )
    return event


__all__ = [
    "InMemoryTelemetrySink",
    "TelemetrySink",
    "TokenUsageEvent",
    "log_token_usage",
]
