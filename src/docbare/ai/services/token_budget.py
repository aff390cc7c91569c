"""Dynamic output-token budgeting based on query complexity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

LOGGER = logging.getLogger(__name__)

MIN_TOKENS = 500
MAX_TOKENS = 12_000
FALLBACK_TOKENS = 4_000

QUERY_LENGTH_WEIGHT = 0.3
LEGAL_KEYWORDS_WEIGHT = 0.4
DOCUMENT_PRESENCE_WEIGHT = 0.2
QUERY_TYPE_WEIGHT = 0.1

LEGAL_KEYWORDS: tuple[str, ...] = (
    "contract",
    "agreement",
    "liability",
    "jurisdiction",
    "compliance",
    "breach",
    "termination",
    "amendment",
    "clause",
    "provision",
    "party",
    "obligation",
    "enforcement",
    "dispute",
    "arbitration",
    "litigation",
    "settlement",
    "damages",
    "indemnification",
    "warranty",
    "intellectual property",
    "data privacy",
    "pdpb",
    "competition law",
    "shareholder rights",
    "regulatory compliance",
    "corporate law",
    "employment contract",
    "legal risks",
    "labor law",
    "legal opinion",
    "merger agreement",
    "nda",
    "non-disclosure agreement",
)

# Ordered (upper bound inclusive, ceiling); scores above the last bound map to MAX_TOKENS.
SCORE_BREAKPOINTS: tuple[tuple[float, int], ...] = (
    (10.0, 1_000),
    (25.0, 3_000),
    (40.0, 6_000),
    (55.0, 9_000),
)


class QueryType(Enum):
    """Coarse query classes, each carrying its score multiplier."""

    SIMPLE_QUESTION = 0.5
    ANALYSIS_REQUEST = 2.0
    DRAFTING_REQUEST = 3.0
    COMPLEX_ANALYSIS = 4.0

    @property
    def multiplier(self) -> float:
        return float(self.value)


# Checked in order; the first class with a matching keyword wins.
_QUERY_TYPE_KEYWORDS: tuple[tuple[QueryType, tuple[str, ...]], ...] = (
    (QueryType.DRAFTING_REQUEST, ("draft", "create", "prepare")),
    (QueryType.ANALYSIS_REQUEST, ("analyze", "review", "examine")),
    (QueryType.COMPLEX_ANALYSIS, ("complex", "comprehensive", "detailed")),
)


@dataclass(frozen=True, slots=True)
class ComplexityAnalysis:
    """Breakdown of a complexity score, used for debugging and the CLI."""

    query_preview: str
    query_length: int
    legal_keywords: int
    document_presence: int
    query_type: QueryType
    complexity_score: float
    max_tokens: int

    @property
    def query_length_score(self) -> float:
        return self.query_length * QUERY_LENGTH_WEIGHT

    @property
    def legal_keywords_score(self) -> float:
        return self.legal_keywords * LEGAL_KEYWORDS_WEIGHT

    @property
    def document_presence_score(self) -> float:
        return self.document_presence * DOCUMENT_PRESENCE_WEIGHT

    @property
    def query_type_score(self) -> float:
        return self.query_type.multiplier * QUERY_TYPE_WEIGHT

    def as_payload(self) -> dict[str, object]:
        return {
            "query": self.query_preview,
            "query_length": self.query_length,
            "legal_keywords": self.legal_keywords,
            "document_presence": self.document_presence,
            "query_type": self.query_type.name.lower(),
            "query_type_multiplier": self.query_type.multiplier,
            "complexity_score": round(self.complexity_score, 2),
            "max_tokens": self.max_tokens,
            "analysis": {
                "query_length_score": self.query_length_score,
                "legal_keywords_score": self.legal_keywords_score,
                "document_presence_score": self.document_presence_score,
                "query_type_score": self.query_type_score,
            },
        }


def count_legal_keywords(query: str, keywords: Sequence[str] = LEGAL_KEYWORDS) -> int:
    """Return how many dictionary terms appear in ``query`` (each counted once)."""

    lowered = query.lower()
    return sum(1 for keyword in keywords if keyword.lower() in lowered)


def classify_query_type(query: str) -> QueryType:
    """Classify ``query`` by substring match priority."""

    lowered = query.lower()
    for query_type, keywords in _QUERY_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return query_type
    return QueryType.SIMPLE_QUESTION


def complexity_score(query: str, has_document: bool = False) -> float:
    """Weighted sum of query length, keyword count, document presence and type."""

    return (
        len(query) * QUERY_LENGTH_WEIGHT
        + count_legal_keywords(query) * LEGAL_KEYWORDS_WEIGHT
        + (1 if has_document else 0) * DOCUMENT_PRESENCE_WEIGHT
        + classify_query_type(query).multiplier * QUERY_TYPE_WEIGHT
    )


def score_to_tokens(score: float) -> int:
    """Map a complexity score onto the token staircase, clamped to bounds."""

    for upper_bound, ceiling in SCORE_BREAKPOINTS:
        if score <= upper_bound:
            return _clamp(ceiling)
    return _clamp(MAX_TOKENS)


def calculate_max_tokens(query: str, has_document: bool = False) -> int:
    """Return the output-token ceiling for ``query``.

    Never raises: any internal failure is logged and the fixed fallback
    budget is returned instead.
    """

    try:
        score = complexity_score(query, has_document)
        max_tokens = score_to_tokens(score)
    except Exception:
        LOGGER.exception("Error calculating max tokens, using fallback of %s", FALLBACK_TOKENS)
        return FALLBACK_TOKENS
    LOGGER.info(
        "Dynamic token allocation calculated: score=%.2f max_tokens=%s has_document=%s type=%s",
        score,
        max_tokens,
        has_document,
        classify_query_type(query).name.lower(),
    )
    return max_tokens


def complexity_analysis(query: str, has_document: bool = False) -> ComplexityAnalysis:
    """Return every component of the complexity score for ``query``."""

    return ComplexityAnalysis(
        query_preview=query[:100],
        query_length=len(query),
        legal_keywords=count_legal_keywords(query),
        document_presence=1 if has_document else 0,
        query_type=classify_query_type(query),
        complexity_score=complexity_score(query, has_document),
        max_tokens=calculate_max_tokens(query, has_document),
    )


def _clamp(tokens: int) -> int:
    return max(MIN_TOKENS, min(int(tokens), MAX_TOKENS))


__all__ = [
    "ComplexityAnalysis",
    "FALLBACK_TOKENS",
    "LEGAL_KEYWORDS",
    "MAX_TOKENS",
    "MIN_TOKENS",
    "QueryType",
    "SCORE_BREAKPOINTS",
    "calculate_max_tokens",
    "classify_query_type",
    "complexity_analysis",
    "complexity_score",
    "count_legal_keywords",
    "score_to_tokens",
]
