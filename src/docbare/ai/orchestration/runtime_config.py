"""Runtime configuration classes for the streaming pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from .records import DEFAULT_MAX_BUFFER_BYTES


@dataclass(slots=True)
class TranscoderConfig:
    """Settings governing reasoning flushes and record buffering."""

    flush_min_chars: int = 20
    flush_markers: tuple[str, ...] = (".", "\n", "**")
    max_record_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES

    def should_flush(self, reasoning: str) -> bool:
        """Return ``True`` when the pending reasoning text is worth emitting."""

        if not reasoning:
            return False
        if len(reasoning) > self.flush_min_chars:
            return True
        return any(marker in reasoning for marker in self.flush_markers)


@dataclass(slots=True)
class ConsumerConfig:
    """Timers used by the client-side stream consumer."""

    loading_fallback_seconds: float = 8.0
    read_timeout_seconds: float | None = None


__all__ = [
    "ConsumerConfig",
    "TranscoderConfig",
]
