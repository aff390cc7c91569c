"""Tests for the HTTP chat stream client."""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from docbare.ai.ai_types import QueryMode, QueryRequest
from docbare.ai.errors import QueryRequestFailed
from docbare.chat.message_model import MessageStatus
from docbare.chat.stream_client import ChatStreamClient, request_body


class _Sink:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, str, str]] = []

    async def store_answer(self, session_id: str, user_id: str, content: str) -> None:
        self.calls.append((session_id, user_id, content))
        if len(self.calls) <= self.failures:
            raise ConnectionError("store unavailable")


class _TruncatedBody(httpx.AsyncByteStream):
    """Response body that breaks off after the given chunks."""

    def __init__(self, *chunks: bytes) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        raise httpx.ReadError("peer closed connection without sending complete message body")


def _request(**overrides) -> QueryRequest:
    values = {"query": "What is bail?", "session_id": "s-1", "user_id": "u-1"}
    values.update(overrides)
    return QueryRequest(**values)


def _client(handler, *, sink=None, attempts: int = 3) -> ChatStreamClient:
    transport = httpx.MockTransport(handler)
    return ChatStreamClient(
        "http://docbare.test/",
        http_client=httpx.AsyncClient(transport=transport),
        answer_sink=sink,
        persist_attempts=attempts,
        persist_min_seconds=0,
        persist_max_seconds=0,
    )


def test_request_body_uses_endpoint_field_names() -> None:
    request = _request(
        mode=QueryMode.DRAFTING,
        document_content="Lease text",
        document_name="lease.txt",
        knowledge_chunks=("a", "b"),
    )

    assert request_body(request) == {
        "query": "What is bail?",
        "sessionId": "s-1",
        "userId": "u-1",
        "mode": "B",
        "documentContent": "Lease text",
        "documentName": "lease.txt",
        "knowledgeChunks": ["a", "b"],
    }


@pytest.mark.asyncio
async def test_ask_streams_answer_and_persists_it() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"THINKING:Considering.FINAL:  Bail is release.  ")

    sink = _Sink()
    client = _client(handler, sink=sink)

    message = await client.ask(_request())

    assert message.status is MessageStatus.COMPLETED
    assert message.reasoning == "Considering."
    assert seen[0].url.path == "/api/query"
    assert json.loads(seen[0].content)["sessionId"] == "s-1"
    assert sink.calls == [("s-1", "u-1", "Bail is release.")]
    assert [entry.role for entry in client.history] == ["user", "assistant"]
    await client.aclose()


@pytest.mark.asyncio
async def test_error_status_raises_with_endpoint_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"error": "insufficient_balance", "message": "Insufficient Balance"})

    client = _client(handler)
    consumer = client.new_consumer(_request())

    with pytest.raises(QueryRequestFailed) as excinfo:
        await client.ask(_request(), consumer=consumer)

    assert excinfo.value.status_code == 402
    assert excinfo.value.message == "Insufficient Balance"
    assert consumer.message.status is MessageStatus.FAILED
    assert client.history == []


@pytest.mark.asyncio
async def test_connection_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)

    with pytest.raises(QueryRequestFailed) as excinfo:
        await client.ask(_request())

    assert excinfo.value.status_code == 0


@pytest.mark.asyncio
async def test_body_cut_off_mid_answer_fails_without_saving() -> None:
    sink = _Sink()
    client = _client(
        lambda request: httpx.Response(200, stream=_TruncatedBody(b"THINKING:Step 1. ", b"FINAL:Partial answ")),
        sink=sink,
    )
    consumer = client.new_consumer(_request())

    with pytest.raises(QueryRequestFailed) as excinfo:
        await client.ask(_request(), consumer=consumer)

    assert excinfo.value.status_code == 0
    assert consumer.message.status is MessageStatus.FAILED
    assert sink.calls == []
    assert client.history == []


@pytest.mark.asyncio
async def test_persistence_is_retried() -> None:
    sink = _Sink(failures=2)
    client = _client(lambda request: httpx.Response(200, content=b"FINAL:ok"), sink=sink)

    await client.ask(_request())

    assert len(sink.calls) == 3


@pytest.mark.asyncio
async def test_persistence_failure_is_only_logged(caplog: pytest.LogCaptureFixture) -> None:
    sink = _Sink(failures=10)
    client = _client(lambda request: httpx.Response(200, content=b"FINAL:ok"), sink=sink, attempts=2)

    with caplog.at_level(logging.WARNING, logger="docbare.chat.stream_client"):
        message = await client.ask(_request())

    assert message.status is MessageStatus.COMPLETED
    assert len(sink.calls) == 2
    assert "Failed to persist answer" in caplog.text


@pytest.mark.asyncio
async def test_cancelled_consumer_skips_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=b"FINAL:ok")

    client = _client(handler)
    consumer = client.new_consumer(_request())
    consumer.cancel()

    message = await client.ask(_request(), consumer=consumer)

    assert message.status is MessageStatus.CANCELLED
    assert calls == []
