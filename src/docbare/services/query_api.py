"""HTTP surface exposing the streaming core as ``POST /api/query``."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..ai.ai_types import KnowledgeRetriever, MemoryProvider, QueryMode, QueryRequest, TokenCounterProtocol
from ..ai.client import AIClient, build_token_counter
from ..ai.errors import (
    OperationCancelled,
    StreamError,
    UpstreamConnectionError,
    UpstreamStatusError,
)
from ..ai.orchestration.cancellation import CancellationToken, new_token
from ..ai.orchestration.request_builder import RequestBuilder
from ..ai.orchestration.transcoder import StreamTranscoder
from ..ai.services.telemetry import TelemetrySink
from ..utils.logging import bind_session
from .settings import Settings

LOGGER = logging.getLogger(__name__)

TAGGED_MEDIA_TYPE = "text/plain; charset=utf-8"
_DISCONNECT_POLL_SECONDS = 0.5


class QueryBody(BaseModel):
    """JSON body accepted by ``POST /api/query``."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1, max_length=5000)
    session_id: str = Field(alias="sessionId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    mode: Literal["A", "B"] = "A"
    document_content: Optional[str] = Field(default=None, alias="documentContent")
    document_name: Optional[str] = Field(default=None, alias="documentName")
    memory_context: Optional[str] = Field(default=None, alias="memoryContext")
    knowledge_chunks: List[str] = Field(default_factory=list, alias="knowledgeChunks")

    @field_validator("query")
    @classmethod
    def _reject_blank_query(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value

    def to_request(self) -> QueryRequest:
        return QueryRequest(
            query=self.query.strip(),
            session_id=self.session_id,
            user_id=self.user_id,
            mode=QueryMode(self.mode),
            document_content=self.document_content,
            document_name=self.document_name,
            memory_context=self.memory_context,
            knowledge_chunks=tuple(self.knowledge_chunks),
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    model: str


def error_status(exc: StreamError) -> int:
    """HTTP status used when ``exc`` surfaces before streaming started."""

    if isinstance(exc, UpstreamStatusError):
        return 402 if exc.status_code == 402 else 502
    if isinstance(exc, UpstreamConnectionError):
        return 502
    if isinstance(exc, OperationCancelled):
        return 504 if exc.is_timeout else 499
    return 500


def create_app(
    settings: Settings,
    *,
    client: AIClient | None = None,
    memory_provider: MemoryProvider | None = None,
    retriever: KnowledgeRetriever | None = None,
    telemetry_sink: TelemetrySink | None = None,
    token_counter: TokenCounterProtocol | None = None,
) -> FastAPI:
    """Build the FastAPI application around one shared :class:`AIClient`."""

    owns_client = client is None
    ai_client = client or AIClient(settings.client_settings())
    builder = RequestBuilder(
        ai_client,
        ceilings=settings.context.ceilings(),
        memory_provider=memory_provider,
        retriever=retriever,
        knowledge_limit=settings.context.knowledge_chunk_limit,
    )
    transcoder = StreamTranscoder(
        ai_client,
        config=settings.streaming.transcoder_config(),
        token_counter=token_counter or build_token_counter(settings.model, precise=settings.precise_token_counting),
        telemetry_sink=telemetry_sink,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        LOGGER.info("DocBare query service ready (model=%s)", settings.model)
        yield
        if owns_client:
            await ai_client.aclose()
        LOGGER.info("DocBare query service stopped")

    app = FastAPI(title="DocBare", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.transcoder = transcoder
    app.state.request_builder = builder

    @app.exception_handler(StreamError)
    async def stream_error_handler(_request: Request, exc: StreamError) -> JSONResponse:
        return JSONResponse(status_code=error_status(exc), content=exc.to_dict())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(model=settings.model)

    @app.post("/api/query")
    async def query(body: QueryBody, http_request: Request) -> StreamingResponse:
        request = body.to_request()
        bind_session(request.session_id)
        LOGGER.info("Received query request: %s", request.as_log_payload())
        prepared = await builder.build(request)

        disconnect = CancellationToken(name=f"client:{request.session_id}")
        token, release = new_token(disconnect, settings.stream_timeout, name=f"query:{request.session_id}")
        watcher = asyncio.create_task(_watch_disconnect(http_request, disconnect))
        frames = transcoder.transcode_bytes(prepared.payload, token, request=request)

        # Pull the first frame here so upstream status errors still become JSON responses.
        try:
            first: bytes | None = await frames.__anext__()
        except StopAsyncIteration:
            first = None
        except BaseException:
            watcher.cancel()
            release()
            raise

        async def body_iterator() -> AsyncIterator[bytes]:
            try:
                if first is not None:
                    yield first
                async for chunk in frames:
                    yield chunk
            except OperationCancelled as exc:
                if not disconnect.cancelled:
                    LOGGER.error("Query stream for session %s timed out mid-stream: %s", request.session_id, exc.reason)
                    raise
                LOGGER.info("Query stream for session %s ended early: %s", request.session_id, exc.reason)
            except StreamError as exc:
                # Aborting leaves the chunked body unterminated so the client sees a transport error.
                LOGGER.error("Query stream for session %s failed: %s", request.session_id, exc)
                raise
            finally:
                watcher.cancel()
                release()
                await frames.aclose()

        return StreamingResponse(
            body_iterator(),
            media_type=TAGGED_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


async def _watch_disconnect(request: Request, token: CancellationToken) -> None:
    while not token.cancelled:
        if await request.is_disconnected():
            LOGGER.info("Client disconnected; cancelling upstream stream")
            token.cancel()
            return
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


__all__ = ["HealthResponse", "QueryBody", "TAGGED_MEDIA_TYPE", "create_app", "error_status"]
