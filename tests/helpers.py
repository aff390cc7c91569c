"""Shared test helpers and stub classes.

Fakes here stand in for the OpenAI SDK's raw streaming response so the
transcoder can be driven with hand-built ``data:`` chunks.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any, AsyncIterator, Iterable, cast

from openai import AsyncOpenAI

from docbare.ai.client import AIClient, ClientSettings

DONE_RECORD = b"data: [DONE]\n\n"


def sse_record(delta: dict[str, Any]) -> bytes:
    payload = {"choices": [{"index": 0, "delta": delta}]}
    return b"data: " + json.dumps(payload).encode("utf-8") + b"\n\n"


def reasoning_record(text: str) -> bytes:
    return sse_record({"reasoning_content": text})


def content_record(text: str) -> bytes:
    return sse_record({"content": text})


class FakeRawResponse:
    """Mimics the object yielded by ``with_streaming_response.create``."""

    def __init__(
        self, chunks: Iterable[bytes], *, hang: bool = False, read_error: BaseException | None = None
    ) -> None:
        self._chunks = list(chunks)
        self._hang = hang
        self._read_error = read_error
        self.reads = 0
        self.read_cancelled = False
        self.closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            self.reads += 1
            await asyncio.sleep(0)
            yield chunk
        if self._read_error is not None:
            raise self._read_error
        if self._hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.read_cancelled = True
                raise


class _FakeResponseContext:
    def __init__(self, owner: "FakeStreamingCompletions") -> None:
        self._owner = owner

    async def __aenter__(self) -> FakeRawResponse:
        if self._owner.error is not None:
            raise self._owner.error
        return self._owner.response

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self._owner.response.closed = True
        return False


class FakeStreamingCompletions:
    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        hang: bool = False,
        error: BaseException | None = None,
        read_error: BaseException | None = None,
    ) -> None:
        self.response = FakeRawResponse(chunks, hang=hang, read_error=read_error)
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> _FakeResponseContext:
        self.calls.append(kwargs)
        return _FakeResponseContext(self)


def make_openai_client(
    chunks: Iterable[bytes] = (),
    *,
    hang: bool = False,
    error: BaseException | None = None,
    read_error: BaseException | None = None,
) -> SimpleNamespace:
    completions = FakeStreamingCompletions(chunks, hang=hang, error=error, read_error=read_error)
    chat = SimpleNamespace(completions=SimpleNamespace(with_streaming_response=completions))
    return SimpleNamespace(chat=chat, streaming=completions)


def make_ai_client(
    chunks: Iterable[bytes] = (),
    *,
    hang: bool = False,
    error: BaseException | None = None,
    read_error: BaseException | None = None,
    model: str = "deepseek-reasoner",
) -> tuple[AIClient, FakeStreamingCompletions]:
    fake = make_openai_client(chunks, hang=hang, error=error, read_error=read_error)
    client = AIClient(
        ClientSettings(base_url="http://upstream.local/v1", api_key="test", model=model),
        client=cast(AsyncOpenAI, fake),
    )
    return client, fake.streaming


async def byte_stream(chunks: Iterable[bytes], *, hang: bool = False) -> AsyncIterator[bytes]:
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk
    if hang:
        await asyncio.Event().wait()


async def collect(iterator: AsyncIterator[Any]) -> list[Any]:
    return [item async for item in iterator]
