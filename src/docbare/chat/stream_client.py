"""HTTP client that posts a query and consumes the tagged answer stream."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from ..ai.ai_types import AnswerSink, QueryRequest
from ..ai.errors import QueryRequestFailed
from ..ai.orchestration.cancellation import CancellationToken
from ..ai.orchestration.runtime_config import ConsumerConfig
from .message_model import ChatMessage, MessageStatus, StreamingMessage
from .stream_consumer import ConsumerCallbacks, StreamConsumer

LOGGER = logging.getLogger(__name__)

QUERY_PATH = "/api/query"


def request_body(request: QueryRequest) -> Dict[str, Any]:
    """Serialize ``request`` with the field names the query endpoint expects."""

    body: Dict[str, Any] = {
        "query": request.query,
        "sessionId": request.session_id,
        "userId": request.user_id,
        "mode": request.mode.value,
    }
    if request.document_content:
        body["documentContent"] = request.document_content
    if request.document_name:
        body["documentName"] = request.document_name
    if request.memory_context:
        body["memoryContext"] = request.memory_context
    if request.knowledge_chunks:
        body["knowledgeChunks"] = list(request.knowledge_chunks)
    return body


class ChatStreamClient:
    """Issues ``POST /api/query`` and feeds the response into a consumer.

    Once a message completes, its trimmed answer is handed to the optional
    :class:`~docbare.ai.ai_types.AnswerSink`. Persistence is retried with
    exponential backoff and a final failure is only logged.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        answer_sink: AnswerSink | None = None,
        consumer_config: ConsumerConfig | None = None,
        request_timeout: float | None = 120.0,
        persist_attempts: int = 3,
        persist_min_seconds: float = 0.5,
        persist_max_seconds: float = 4.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._answer_sink = answer_sink
        self._consumer_config = consumer_config or ConsumerConfig()
        self._persist_attempts = max(1, int(persist_attempts))
        self._persist_min_seconds = persist_min_seconds
        self._persist_max_seconds = persist_max_seconds
        self.history: List[ChatMessage] = []

    def new_consumer(
        self,
        request: QueryRequest,
        *,
        parent: CancellationToken | None = None,
    ) -> StreamConsumer:
        """Create the consumer for ``request`` so callers can hold a cancel handle."""

        message = StreamingMessage(session_id=request.session_id)
        return StreamConsumer(self._consumer_config, parent=parent, message=message)

    async def ask(
        self,
        request: QueryRequest,
        *,
        consumer: StreamConsumer | None = None,
        callbacks: ConsumerCallbacks | None = None,
    ) -> StreamingMessage:
        """Send ``request`` and stream the answer into a message.

        Raises :class:`QueryRequestFailed` when the endpoint answers with a
        non-success status. Cancelled messages are returned, not raised.
        """

        consumer = consumer or self.new_consumer(request)
        message = consumer.message
        if consumer.cancelled:
            return message
        url = f"{self._base_url}{QUERY_PATH}"
        LOGGER.debug("Posting query for session %s to %s", request.session_id, url)
        try:
            async with self._http.stream("POST", url, json=request_body(request)) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise _request_failed(response.status_code, raw)
                await consumer.consume(response.aiter_bytes(), callbacks)
        except QueryRequestFailed as exc:
            message.finish(MessageStatus.FAILED, error=exc.message)
            raise
        except httpx.HTTPError as exc:
            message.finish(MessageStatus.FAILED, error=str(exc))
            raise QueryRequestFailed(message=f"Query request failed: {exc}", status_code=0) from exc
        except Exception as exc:
            message.finish(MessageStatus.FAILED, error=str(exc))
            raise

        self.history.append(ChatMessage(role="user", content=request.query))
        if message.status is MessageStatus.COMPLETED:
            self.history.append(
                ChatMessage(role="assistant", content=message.answer, metadata={"message_id": message.message_id})
            )
            await self._persist(request, message)
        elif message.is_cancelled and message.answer:
            self.history.append(
                ChatMessage(
                    role="assistant",
                    content=message.answer,
                    metadata={"message_id": message.message_id, "status": message.status.value},
                )
            )
        return message

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _persist(self, request: QueryRequest, message: StreamingMessage) -> None:
        content = message.answer.strip()
        if self._answer_sink is None or not content:
            return
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._answer_sink.store_answer(request.session_id, request.user_id, content)
        except Exception:
            LOGGER.warning(
                "Failed to persist answer for session %s after %s attempt(s)",
                request.session_id,
                self._persist_attempts,
                exc_info=True,
            )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._persist_attempts),
            wait=wait_exponential(multiplier=self._persist_min_seconds, max=self._persist_max_seconds),
        )


def _request_failed(status_code: int, raw: bytes) -> QueryRequestFailed:
    body = raw.decode("utf-8", errors="replace")
    message = f"Query endpoint returned HTTP {status_code}"
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and parsed.get("message"):
        message = str(parsed["message"])
    LOGGER.error("Query request failed with HTTP %s: %s", status_code, message)
    return QueryRequestFailed(message=message, status_code=status_code, body=body)


__all__ = ["ChatStreamClient", "QUERY_PATH", "request_body"]
