"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from docbare.ai.services.telemetry import InMemoryTelemetrySink


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    import os

    for name in list(os.environ):
        if name.startswith("DOCBARE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def telemetry_sink() -> InMemoryTelemetrySink:
    return InMemoryTelemetrySink(capacity=20)
