"""Tests for the ``POST /api/query`` endpoint."""

from __future__ import annotations

import httpx
import openai
import pytest

from docbare.ai.ai_types import QueryRequest
from docbare.ai.client import ApproxCharCounter
from docbare.ai.errors import ErrorCode, OperationCancelled, UpstreamConnectionError, UpstreamStatusError
from docbare.chat.message_model import MessageStatus
from docbare.chat.stream_client import ChatStreamClient
from docbare.services.query_api import create_app, error_status
from docbare.services.settings import Settings
from tests.helpers import DONE_RECORD, content_record, make_ai_client, reasoning_record

UPSTREAM_URL = "http://upstream.local/v1/chat/completions"
SCENARIO = [reasoning_record("Step"), reasoning_record(" 1. "), content_record("Hello"), DONE_RECORD]
BODY = {"query": "What is a contract?", "sessionId": "s-1", "userId": "u-1"}


class _AnswerStore:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    async def store_answer(self, session_id: str, user_id: str, content: str) -> None:
        self.calls.append((session_id, user_id, content))


class _Memory:
    async def memory_context(self, session_id: str, user_id: str, query: str) -> str:
        return f"Earlier {session_id} asked about leases."


def _app(chunks=(), *, settings: Settings | None = None, telemetry_sink=None, **kwargs):
    client, fake = make_ai_client(chunks, **kwargs)
    app = create_app(
        settings or Settings(),
        client=client,
        memory_provider=_Memory(),
        telemetry_sink=telemetry_sink,
        token_counter=ApproxCharCounter(),
    )
    return app, fake


def _http(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _raised_from(exc: BaseException, kind: type[BaseException]) -> bool:
    pending, seen = [exc], set()
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, kind):
            return True
        pending.extend(getattr(current, "exceptions", ()))
        pending.extend(item for item in (current.__cause__, current.__context__) if item is not None)
    return False


def _status_error(status: int, message: str) -> openai.APIStatusError:
    return openai.APIStatusError(
        message,
        response=httpx.Response(status, request=httpx.Request("POST", UPSTREAM_URL)),
        body={"error": {"message": message}},
    )


@pytest.mark.asyncio
async def test_query_streams_tagged_frames(telemetry_sink) -> None:
    app, fake = _app(SCENARIO, telemetry_sink=telemetry_sink)

    async with _http(app) as http:
        response = await http.post("/api/query", json=BODY)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text == "THINKING:Step 1. FINAL:Hello"

    (call,) = fake.calls
    system, user = call["messages"]
    assert "DocBare" in system["content"]
    assert "## Memory Context:\nEarlier s-1 asked about leases." in system["content"]
    assert user == {"role": "user", "content": "What is a contract?"}
    assert 1_000 <= call["max_tokens"] <= 12_000
    assert len(telemetry_sink) == 1


@pytest.mark.asyncio
async def test_drafting_mode_uses_drafting_prompt() -> None:
    app, fake = _app(SCENARIO)

    async with _http(app) as http:
        await http.post("/api/query", json={**BODY, "mode": "B", "query": "Draft an NDA"})

    system = fake.calls[0]["messages"][0]["content"]
    assert system.startswith("You are DocBare-Draft")
    assert fake.calls[0]["max_tokens"] == 1_000


@pytest.mark.asyncio
async def test_insufficient_balance_before_stream_is_json() -> None:
    app, _ = _app(error=_status_error(402, "Insufficient Balance"))

    async with _http(app) as http:
        response = await http.post("/api/query", json=BODY)

    assert response.status_code == 402
    payload = response.json()
    assert payload["error"] == ErrorCode.INSUFFICIENT_BALANCE
    assert payload["message"] == "Insufficient Balance"


@pytest.mark.asyncio
async def test_other_upstream_status_maps_to_bad_gateway() -> None:
    app, _ = _app(error=_status_error(500, "Internal error"))

    async with _http(app) as http:
        response = await http.post("/api/query", json=BODY)

    assert response.status_code == 502
    assert response.json()["details"]["status_code"] == 500


@pytest.mark.asyncio
async def test_stream_timeout_before_first_frame() -> None:
    app, fake = _app(settings=Settings(stream_timeout=0.05), hang=True)

    async with _http(app) as http:
        response = await http.post("/api/query", json=BODY)

    assert response.status_code == 504
    assert response.json()["error"] == ErrorCode.TIMEOUT
    assert fake.response.closed is True


@pytest.mark.asyncio
async def test_upstream_failure_mid_stream_aborts_response() -> None:
    app, fake = _app(
        [reasoning_record("Step 1. "), content_record("Partial answ")],
        read_error=httpx.ReadError("connection reset"),
    )

    async with _http(app) as http:
        with pytest.raises(Exception) as excinfo:
            await http.post("/api/query", json=BODY)

    assert _raised_from(excinfo.value, UpstreamConnectionError)
    assert fake.response.closed is True


@pytest.mark.asyncio
async def test_stream_timeout_mid_stream_aborts_response() -> None:
    app, fake = _app([reasoning_record("Step 1. ")], settings=Settings(stream_timeout=0.05), hang=True)

    async with _http(app) as http:
        with pytest.raises(Exception) as excinfo:
            await http.post("/api/query", json=BODY)

    assert _raised_from(excinfo.value, OperationCancelled)
    assert fake.response.closed is True


@pytest.mark.asyncio
async def test_truncated_answer_is_not_completed_or_saved() -> None:
    app, _ = _app(
        [reasoning_record("Step 1. "), content_record("Partial answ")],
        read_error=httpx.ReadError("connection reset"),
    )
    sink = _AnswerStore()
    request = QueryRequest(query="What is a contract?", session_id="s-1", user_id="u-1")

    async with _http(app) as http:
        client = ChatStreamClient("http://test", http_client=http, answer_sink=sink)
        consumer = client.new_consumer(request)
        with pytest.raises(Exception):
            await client.ask(request, consumer=consumer)

    assert consumer.message.status is MessageStatus.FAILED
    assert sink.calls == []
    assert client.history == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {**BODY, "query": ""},
        {**BODY, "query": "   \n\t"},
        {**BODY, "query": "x" * 5001},
        {"query": "hi", "userId": "u-1"},
        {**BODY, "mode": "C"},
    ],
)
async def test_invalid_bodies_are_rejected(body) -> None:
    app, fake = _app(SCENARIO)

    async with _http(app) as http:
        response = await http.post("/api/query", json=body)

    assert response.status_code == 422
    assert fake.calls == []


@pytest.mark.asyncio
async def test_health() -> None:
    app, _ = _app()

    async with _http(app) as http:
        response = await http.get("/health")

    assert response.json() == {"status": "ok", "model": "deepseek-reasoner"}


def test_error_status_mapping() -> None:
    assert error_status(UpstreamStatusError(status_code=402)) == 402
    assert error_status(UpstreamStatusError(status_code=429)) == 502
    assert error_status(UpstreamConnectionError()) == 502
    assert error_status(OperationCancelled(reason="timeout")) == 504
    assert error_status(OperationCancelled()) == 499
