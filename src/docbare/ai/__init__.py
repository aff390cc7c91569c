"""AI client, budgeting and stream transcoding."""

from .client import AIClient, ApproxCharCounter, ClientSettings, TiktokenCounter

__all__ = ["AIClient", "ApproxCharCounter", "ClientSettings", "TiktokenCounter"]
