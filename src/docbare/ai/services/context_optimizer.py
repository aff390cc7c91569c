"""Context window optimization for the upstream prompt.

The optimizer trims the five prompt blocks so the request fits the model
window. It works block by block in a fixed priority order and only touches
blocks that exceed their own ceiling; it never moves budget between blocks,
so the total can remain above ``max_total_tokens`` when every block is
individually within its ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Iterator, Mapping

from ..utils.tokens import chars_for_tokens, estimate_tokens

LOGGER = logging.getLogger(__name__)

TRUNCATION_NOTICE = "[Content truncated due to length limits]"
# Characters given up below the block allowance to make room for the notice.
_NOTICE_RESERVE_CHARS = 100


@dataclass(frozen=True, slots=True)
class ContextCeilings:
    """Per-block and total token ceilings for the prompt."""

    max_total_tokens: int = 32_000
    max_system_prompt_tokens: int = 4_000
    max_memory_tokens: int = 8_000
    max_document_tokens: int = 12_000
    max_knowledge_base_tokens: int = 4_000
    max_query_tokens: int = 2_000

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any] | None = None) -> "ContextCeilings":
        """Build ceilings from a partial mapping, ignoring unknown or empty keys."""

        if not overrides:
            return cls()
        allowed = {item.name for item in fields(cls)}
        filtered = {key: int(value) for key, value in overrides.items() if key in allowed and value is not None}
        return cls(**filtered)


@dataclass(frozen=True, slots=True)
class ContextBundle:
    """The five named text blocks sent to the model."""

    system_prompt: str = ""
    memory_context: str = ""
    document_context: str = ""
    knowledge_base_context: str = ""
    query: str = ""

    def token_counts(self) -> dict[str, int]:
        return {item.name: estimate_tokens(getattr(self, item.name)) for item in fields(self)}

    @property
    def total_tokens(self) -> int:
        return sum(self.token_counts().values())


@dataclass(frozen=True, slots=True)
class OptimizedContext:
    """Result of :func:`optimize`."""

    bundle: ContextBundle
    total_tokens: int
    was_truncated: bool
    original_tokens: int = 0

    @property
    def tokens_saved(self) -> int:
        return max(0, self.original_tokens - self.total_tokens)

    def __iter__(self) -> Iterator[Any]:
        # Unpacks as (bundle, total_tokens, was_truncated).
        return iter((self.bundle, self.total_tokens, self.was_truncated))


# Fixed truncation order: (block, ceiling attribute, keep the start of the text).
_TRUNCATION_PLAN: tuple[tuple[str, str, bool], ...] = (
    ("document_context", "max_document_tokens", True),
    ("memory_context", "max_memory_tokens", False),
    ("knowledge_base_context", "max_knowledge_base_tokens", True),
    ("system_prompt", "max_system_prompt_tokens", True),
    ("query", "max_query_tokens", True),
)


def truncate_text(text: str, max_tokens: int, *, preserve_start: bool = True) -> str:
    """Cut ``text`` down to ``max_tokens`` and mark the cut with a notice.

    ``preserve_start`` keeps the prefix and appends the notice; otherwise the
    suffix (most recent content) is kept and the notice is prepended.
    """

    if estimate_tokens(text) <= max_tokens:
        return text
    keep = max(0, chars_for_tokens(max_tokens) - _NOTICE_RESERVE_CHARS)
    if preserve_start:
        return text[:keep] + "\n\n" + TRUNCATION_NOTICE
    tail = text[len(text) - keep:] if keep else ""
    return TRUNCATION_NOTICE + "\n\n" + tail


def optimize(bundle: ContextBundle, ceilings: ContextCeilings | None = None) -> OptimizedContext:
    """Fit ``bundle`` into ``ceilings``; falls back to the unmodified bundle on error."""

    limits = ceilings or ContextCeilings()
    try:
        return _optimize(bundle, limits)
    except Exception:
        LOGGER.exception("Context optimization failed; using unmodified context")
        total = _safe_total(bundle)
        return OptimizedContext(bundle=bundle, total_tokens=total, was_truncated=False, original_tokens=total)


def context_stats(bundle: ContextBundle, ceilings: ContextCeilings | None = None) -> dict[str, Any]:
    """Return per-block token usage, percentage shares and a limit check."""

    limits = ceilings or ContextCeilings()
    tokens = bundle.token_counts()
    total = sum(tokens.values())
    percentages = {name: (round(count / total * 100) if total else 0) for name, count in tokens.items()}
    return {
        "tokens": tokens,
        "total_tokens": total,
        "percentages": percentages,
        "is_within_limits": total <= limits.max_total_tokens,
    }


def _optimize(bundle: ContextBundle, limits: ContextCeilings) -> OptimizedContext:
    current = bundle.token_counts()
    total_current = sum(current.values())
    LOGGER.info(
        "Context optimization analysis: total=%s max=%s needs_optimization=%s",
        total_current,
        limits.max_total_tokens,
        total_current > limits.max_total_tokens,
    )
    if total_current <= limits.max_total_tokens:
        return OptimizedContext(
            bundle=bundle,
            total_tokens=total_current,
            was_truncated=False,
            original_tokens=total_current,
        )

    updates: dict[str, str] = {}
    for block, ceiling_name, preserve_start in _TRUNCATION_PLAN:
        ceiling = getattr(limits, ceiling_name)
        if current[block] <= ceiling:
            continue
        truncated = truncate_text(getattr(bundle, block), ceiling, preserve_start=preserve_start)
        updates[block] = truncated
        LOGGER.warning(
            "Context block %s truncated: %s -> %s tokens",
            block,
            current[block],
            estimate_tokens(truncated),
        )

    optimized = replace(bundle, **updates) if updates else bundle
    total_final = optimized.total_tokens
    if total_final > limits.max_total_tokens:
        LOGGER.warning(
            "Context still exceeds total budget after per-block truncation: %s > %s",
            total_final,
            limits.max_total_tokens,
        )
    LOGGER.info(
        "Context optimization completed: %s -> %s tokens (truncated=%s)",
        total_current,
        total_final,
        bool(updates),
    )
    return OptimizedContext(
        bundle=optimized,
        total_tokens=total_final,
        was_truncated=bool(updates),
        original_tokens=total_current,
    )


def _safe_total(bundle: Any) -> int:
    try:
        return int(bundle.total_tokens)
    except Exception:
        LOGGER.debug("Unable to estimate tokens for unoptimized bundle", exc_info=True)
        return 0


__all__ = [
    "ContextBundle",
    "ContextCeilings",
    "OptimizedContext",
    "TRUNCATION_NOTICE",
    "context_stats",
    "optimize",
    "truncate_text",
]
