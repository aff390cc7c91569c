"""Token estimation utilities for AI operations."""

from __future__ import annotations

import math

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in a text string.

    Uses a simple character-based heuristic of ~4 characters per token,
    rounded up. Empty text costs nothing.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def chars_for_tokens(tokens: int) -> int:
    """Return the character allowance matching ``tokens`` under the estimate."""

    return max(0, int(tokens)) * CHARS_PER_TOKEN


__all__ = ["CHARS_PER_TOKEN", "estimate_tokens", "chars_for_tokens"]
