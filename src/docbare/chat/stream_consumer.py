"""Client-side reader for the tagged answer stream.

The consumer turns a byte stream of ``THINKING:``/``FINAL:``/answer frames
back into a :class:`~docbare.chat.message_model.StreamingMessage`. Each read
is raced against a cancellation token so :meth:`StreamConsumer.cancel`
takes effect while a read is still pending.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Callable, Optional

from ..ai.errors import CANCELLED_REASON, OperationCancelled
from ..ai.orchestration.cancellation import CancellationToken, new_token
from ..ai.orchestration.frames import FrameDecoder, FrameKind, TaggedFrame
from ..ai.orchestration.runtime_config import ConsumerConfig
from .message_model import ConsumerPhase, MessageStatus, StreamingMessage

LOGGER = logging.getLogger(__name__)

TextCallback = Callable[[str, StreamingMessage], None]
MessageCallback = Callable[[StreamingMessage], None]


@dataclass(slots=True)
class ConsumerCallbacks:
    """Optional hooks invoked as the message evolves."""

    on_reasoning: Optional[TextCallback] = None
    on_answer: Optional[TextCallback] = None
    on_phase: Optional[MessageCallback] = None
    on_loading_changed: Optional[MessageCallback] = None
    on_finished: Optional[MessageCallback] = None


class StreamConsumer:
    """Consumes one tagged stream into one :class:`StreamingMessage`."""

    def __init__(
        self,
        config: ConsumerConfig | None = None,
        *,
        parent: CancellationToken | None = None,
        message: StreamingMessage | None = None,
    ) -> None:
        self._config = config or ConsumerConfig()
        self._parent = parent
        self._cancel_token = CancellationToken(name="stream-consumer")
        self.message = message or StreamingMessage()
        self._callbacks = ConsumerCallbacks()
        self._loading_timer: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_token.cancelled

    def cancel(self, reason: str = CANCELLED_REASON) -> bool:
        """Stop the stream and mark the message cancelled.

        Safe to call repeatedly; a no-op once the message reached a terminal
        status on its own.
        """

        if self.message.status.is_terminal:
            return False
        fired = self._cancel_token.cancel(reason)
        self._disarm_loading_timer()
        if self.message.finish(MessageStatus.CANCELLED, error=reason):
            LOGGER.info("Message %s cancelled (%s)", self.message.message_id, reason)
            self._emit_finished()
        return fired

    async def consume(
        self,
        stream: AsyncIterable[bytes],
        callbacks: ConsumerCallbacks | None = None,
    ) -> StreamingMessage:
        """Read ``stream`` to the end, cancellation, or failure.

        Hard failures mark the message ``FAILED`` and are re-raised. A
        cancellation (explicit or timeout) marks it ``CANCELLED`` and returns
        normally.
        """

        if callbacks is not None:
            self._callbacks = callbacks
        message = self.message
        unlink_parent = _noop
        if self._parent is not None:
            unlink_parent = self._parent.add_callback(self._cancel_token.cancel)
        token, release = new_token(
            self._cancel_token,
            self._config.read_timeout_seconds,
            name=f"consumer:{message.message_id}",
        )
        self._arm_loading_timer()
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        decoder = FrameDecoder()
        iterator = stream.__aiter__()
        try:
            while True:
                chunk = await token.race(_next_chunk(iterator))
                if chunk is None:
                    break
                text = utf8.decode(chunk)
                for frame in decoder.feed(text):
                    token.raise_if_cancelled()
                    self._apply(frame)
            for frame in decoder.feed(utf8.decode(b"", final=True)) + decoder.flush():
                self._apply(frame)
            if message.finish(MessageStatus.COMPLETED):
                self._emit_finished()
        except OperationCancelled as exc:
            if message.finish(MessageStatus.CANCELLED, error=exc.reason):
                LOGGER.info("Message %s stopped: %s", message.message_id, exc.reason)
                self._emit_finished()
        except Exception as exc:
            LOGGER.error("Message %s failed: %s", message.message_id, exc)
            if message.finish(MessageStatus.FAILED, error=str(exc)):
                self._emit_finished()
            raise
        finally:
            self._disarm_loading_timer()
            release()
            unlink_parent()
            await _close_iterator(iterator)
        return message

    def _apply(self, frame: TaggedFrame) -> None:
        message = self.message
        if frame.kind is FrameKind.REASONING:
            message.reasoning += frame.text
            if message.advance(ConsumerPhase.REASONING):
                self._emit(self._callbacks.on_phase, message)
            self._clear_loading()
            self._emit(self._callbacks.on_reasoning, frame.text, message)
        elif frame.kind is FrameKind.FINAL_MARKER:
            if message.advance(ConsumerPhase.FINAL):
                self._emit(self._callbacks.on_phase, message)
        else:
            message.answer += frame.text
            self._clear_loading()
            self._emit(self._callbacks.on_answer, frame.text, message)

    def _arm_loading_timer(self) -> None:
        delay = self._config.loading_fallback_seconds
        if delay is None or delay <= 0:
            self._clear_loading()
            return
        loop = asyncio.get_running_loop()
        self._loading_timer = loop.call_later(delay, self._loading_timed_out)

    def _loading_timed_out(self) -> None:
        self._loading_timer = None
        if self.message.loading and not self.message.status.is_terminal:
            LOGGER.debug("No reasoning for message %s yet; hiding loading indicator", self.message.message_id)
        self._clear_loading()

    def _clear_loading(self) -> None:
        self._disarm_loading_timer()
        if self.message.loading:
            self.message.loading = False
            self._emit(self._callbacks.on_loading_changed, self.message)

    def _disarm_loading_timer(self) -> None:
        if self._loading_timer is not None:
            self._loading_timer.cancel()
            self._loading_timer = None

    def _emit_finished(self) -> None:
        self._emit(self._callbacks.on_finished, self.message)

    def _emit(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # pragma: no cover - UI callbacks are best effort
            LOGGER.exception("Stream consumer callback failed")


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _close_iterator(iterator: AsyncIterator[bytes]) -> None:
    close = getattr(iterator, "aclose", None)
    if close is None:
        return
    try:
        result = close()
        if inspect.isawaitable(result):
            await result
    except Exception:  # pragma: no cover - best effort release
        LOGGER.debug("Closing the tagged stream reader failed", exc_info=True)


def _noop(*_args: object) -> None:
    return None


__all__ = ["ConsumerCallbacks", "StreamConsumer"]
