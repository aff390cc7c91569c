"""CLI helper to inspect the output budget and context usage for a query."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

from ..ai.client import ApproxCharCounter, TiktokenCounter
from ..ai.services.context_optimizer import ContextBundle, context_stats, optimize
from ..ai.services.token_budget import complexity_analysis


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect the token budget DocBare would allocate for a query.")
    parser.add_argument("query", nargs="?", help="Query text. Reads stdin when omitted.")
    parser.add_argument("--document", type=Path, help="Optional document file attached to the query.")
    parser.add_argument("--memory", type=Path, help="Optional file holding memory context.")
    parser.add_argument("--model", default="deepseek-reasoner", help="Model identifier used for precise counts.")
    parser.add_argument(
        "--estimate-only",
        action="store_true",
        help="Skip tiktoken lookups and use the character estimator.",
    )
    parser.add_argument("--json", action="store_true", help="Emit a JSON report instead of text.")
    args = parser.parse_args(argv)

    query = (args.query or sys.stdin.read()).strip()
    if not query:
        print("No query provided.", file=sys.stderr)
        return 1
    document = _read_optional(args.document)
    memory = _read_optional(args.memory)

    analysis = complexity_analysis(query, bool(document.strip()))
    bundle = ContextBundle(memory_context=memory, document_context=document, query=query)
    optimized = optimize(bundle)
    counter = _build_counter(args.model, estimate_only=args.estimate_only)
    report = {
        "budget": analysis.as_payload(),
        "context": context_stats(bundle),
        "optimized": {
            "total_tokens": optimized.total_tokens,
            "was_truncated": optimized.was_truncated,
            "tokens_saved": optimized.tokens_saved,
        },
        "query_tokens_precise": counter.count(query),
    }

    if args.json:
        json.dump(report, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return 0

    print(f"query type: {analysis.query_type.name.lower()} (x{analysis.query_type.multiplier})")
    print(f"legal keywords: {analysis.legal_keywords}")
    print(f"complexity score: {analysis.complexity_score:.2f}")
    print(f"max tokens: {analysis.max_tokens}")
    print(f"context tokens: {report['context']['total_tokens']} -> {optimized.total_tokens}")
    print(f"truncated: {optimized.was_truncated}")
    print(f"query tokens ({args.model}): {report['query_tokens_precise']}")
    return 0


def _read_optional(path: Path | None) -> str:
    if path is None:
        return ""
    return path.read_text(encoding="utf-8")


def _build_counter(model: str, *, estimate_only: bool) -> ApproxCharCounter | TiktokenCounter:
    if estimate_only:
        return ApproxCharCounter(model_name=model)
    try:
        return TiktokenCounter(model)
    except Exception:
        return ApproxCharCounter(model_name=model)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
