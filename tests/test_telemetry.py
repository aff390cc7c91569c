"""Tests for token usage telemetry."""

from __future__ import annotations

import pytest

from docbare.ai.services import telemetry
from docbare.ai.services.telemetry import InMemoryTelemetrySink, TokenUsageEvent, log_token_usage


def test_log_token_usage_records_event(telemetry_sink: InMemoryTelemetrySink) -> None:
    event = log_token_usage("What is bail?", 1_000, 250, sink=telemetry_sink, session_id="s-1", model="m")

    assert telemetry_sink.tail() == [event]
    assert event.query_length == 13
    assert event.efficiency == pytest.approx(25.0)
    assert event.was_efficient is True
    payload = event.as_payload()
    assert payload["efficiency"] == "25.00%"
    assert payload["session_id"] == "s-1"


def test_over_budget_usage_is_flagged() -> None:
    event = TokenUsageEvent(query_length=1, allocated_tokens=100, actual_tokens=150)

    assert event.was_efficient is False
    assert TokenUsageEvent(query_length=1, allocated_tokens=0, actual_tokens=5).efficiency == 0.0


def test_sink_is_bounded() -> None:
    sink = InMemoryTelemetrySink(capacity=1)
    for index in range(15):
        log_token_usage("q", 100, index, sink=sink)

    assert sink.capacity == 10
    assert len(sink) == 10
    assert [event.actual_tokens for event in sink.tail(2)] == [13, 14]
    assert len(sink.tail(50)) == 10


def test_module_sink_used_without_explicit_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    fallback = InMemoryTelemetrySink()
    monkeypatch.setattr(telemetry, "_DEFAULT_SINK", fallback)

    event = log_token_usage("q", 100, 10)

    assert fallback.tail() == [event]
