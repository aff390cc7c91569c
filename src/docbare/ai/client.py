"""Async client for OpenAI-compatible completion endpoints.

The streaming core needs the raw bytes of the server-sent event stream (it
does its own record reassembly), so chat completions are opened through
``with_streaming_response`` instead of the SDK's parsed stream helpers.
"""

from __future__ import annotations

import contextlib
import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam

from .ai_types import TokenCounterProtocol
from .errors import UpstreamConnectionError, UpstreamStatusError
from .utils.tokens import CHARS_PER_TOKEN

LOGGER = logging.getLogger(__name__)


class ApproxCharCounter(TokenCounterProtocol):
    """Deterministic counter that estimates tokens via character length."""

    def __init__(self, *, model_name: str | None = None, chars_per_token: int = CHARS_PER_TOKEN) -> None:
        self.model_name = model_name
        self._chars_per_token = max(1, int(chars_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self._chars_per_token)


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxCharCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text))
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


def build_token_counter(model_name: str | None, *, precise: bool = True) -> TokenCounterProtocol:
    """Return a tiktoken counter for ``model_name`` or the character estimate."""

    if not precise or not model_name:
        return ApproxCharCounter(model_name=model_name)
    try:
        return TiktokenCounter(model_name)
    except Exception as exc:  # pragma: no cover - depends on encoding downloads
        LOGGER.warning("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
        return ApproxCharCounter(model_name=model_name)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client that opens raw completion streams.

    Retries are deliberately absent at this layer: the underlying SDK client
    is built with ``max_retries=0`` and every non-success status surfaces as
    :class:`~docbare.ai.errors.UpstreamStatusError`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def build_chat_payload(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> Dict[str, Any]:
        """Return the keyword arguments for a streamed chat completion."""

        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": self._coerce_messages(messages),
            "stream": True,
        }
        effective_temperature = temperature if temperature is not None else self._settings.temperature
        if effective_temperature is not None:
            payload["temperature"] = effective_temperature
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)
        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if extra_params:
            payload.update(extra_params)
        return payload

    @contextlib.asynccontextmanager
    async def open_stream(self, payload: Mapping[str, Any]) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streamed completion and yield an iterator over raw body chunks.

        Leaving the context releases the HTTP response, whether the stream was
        exhausted, failed, or abandoned after cancellation.
        """

        request = dict(payload)
        request["stream"] = True
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            request.get("model"),
            len(request.get("messages") or ()),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(request)
        try:
            async with self._client.chat.completions.with_streaming_response.create(**request) as response:
                yield self._iter_chunks(response)
        except APIStatusError as exc:
            raise _status_error(exc) from exc
        except (APIConnectionError, httpx.HTTPError) as exc:
            raise UpstreamConnectionError(message=f"Completion stream failed: {exc}") from exc

    def count_tokens(self, text: str, *, counter: TokenCounterProtocol | None = None) -> int:
        if not text:
            return 0
        active = counter or ApproxCharCounter(model_name=self._settings.model)
        try:
            return active.count(text)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("count_tokens failed; falling back to estimate", exc_info=True)
            return active.estimate(text)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    async def _iter_chunks(self, response: Any) -> AsyncIterator[bytes]:
        async for chunk in response.iter_bytes():
            if chunk:
                yield chunk

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover - defensive guard
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _status_error(exc: APIStatusError) -> UpstreamStatusError:
    status = int(getattr(exc, "status_code", 500) or 500)
    message = _error_message(exc)
    LOGGER.error("Completion endpoint returned HTTP %s: %s", status, message)
    return UpstreamStatusError(message=message, status_code=status)


def _error_message(exc: APIStatusError) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return str(getattr(exc, "message", None) or exc)


__all__ = [
    "AIClient",
    "ApproxCharCounter",
    "ClientSettings",
    "TiktokenCounter",
    "build_token_counter",
]
