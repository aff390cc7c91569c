"""Budgeting and telemetry services used ahead of the upstream call."""

from .context_optimizer import ContextBundle, ContextCeilings, OptimizedContext, optimize
from .token_budget import calculate_max_tokens, complexity_analysis

__all__ = [
    "ContextBundle",
    "ContextCeilings",
    "OptimizedContext",
    "calculate_max_tokens",
    "complexity_analysis",
    "optimize",
]
