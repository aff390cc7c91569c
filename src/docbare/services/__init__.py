"""Service layer: settings persistence and the HTTP query endpoint."""

from .settings import Settings, SettingsStore

__all__ = ["Settings", "SettingsStore"]
