"""Transcoding of the upstream delta stream into tagged frames.

One :class:`StreamTranscoder.transcode` call owns one :class:`StreamSession`
for the lifetime of one request. The session is never shared, so concurrent
requests each get their own record buffer, reasoning buffer and phase.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Mapping

from ..ai_types import QueryRequest, TokenCounterProtocol
from ..client import AIClient, ApproxCharCounter
from ..errors import OperationCancelled
from ..services.telemetry import TelemetrySink, log_token_usage
from ..utils.tokens import CHARS_PER_TOKEN
from .cancellation import CancellationToken
from .frames import TaggedFrame
from .records import STREAM_DONE, Delta, RecordAssembler
from .runtime_config import TranscoderConfig

LOGGER = logging.getLogger(__name__)


class StreamPhase(Enum):
    """Stage of one model response."""

    REASONING = "reasoning"
    FINAL = "final"


_ALLOWED_TRANSITIONS: dict[StreamPhase, frozenset[StreamPhase]] = {
    StreamPhase.REASONING: frozenset({StreamPhase.FINAL}),
    StreamPhase.FINAL: frozenset(),
}


class InvalidPhaseTransition(RuntimeError):
    """Raised when a session attempts to leave a terminal phase."""


def transition(current: StreamPhase, target: StreamPhase) -> StreamPhase:
    """Return ``target`` if the move from ``current`` is legal."""

    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidPhaseTransition(f"Cannot move stream from {current.value} to {target.value}")
    return target


@dataclass(slots=True)
class StreamSession:
    """Per-request mutable state for one transcoder invocation."""

    token: CancellationToken
    assembler: RecordAssembler
    phase: StreamPhase = StreamPhase.REASONING
    reasoning_buffer: str = ""
    reasoning_chars: int = 0
    answer_parts: list[str] = field(default_factory=list)
    records_seen: int = 0
    frames_emitted: int = 0
    late_reasoning_dropped: int = 0
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def answer_text(self) -> str:
        return "".join(self.answer_parts)

    def enter_final(self) -> None:
        self.phase = transition(self.phase, StreamPhase.FINAL)

    def take_reasoning(self) -> str:
        pending, self.reasoning_buffer = self.reasoning_buffer, ""
        return pending


class StreamTranscoder:
    """Opens the upstream completion and re-frames it as tagged output."""

    def __init__(
        self,
        client: AIClient,
        *,
        config: TranscoderConfig | None = None,
        token_counter: TokenCounterProtocol | None = None,
        telemetry_sink: TelemetrySink | None = None,
    ) -> None:
        self._client = client
        self._config = config or TranscoderConfig()
        self._token_counter = token_counter or ApproxCharCounter()
        self._telemetry_sink = telemetry_sink

    @property
    def config(self) -> TranscoderConfig:
        return self._config

    def new_session(self, token: CancellationToken) -> StreamSession:
        assembler = RecordAssembler(max_buffer_bytes=self._config.max_record_buffer_bytes)
        return StreamSession(token=token, assembler=assembler)

    async def transcode(
        self,
        payload: Mapping[str, Any],
        token: CancellationToken,
        *,
        request: QueryRequest | None = None,
    ) -> AsyncIterator[TaggedFrame]:
        """Stream tagged frames for ``payload`` until ``[DONE]`` or cancellation.

        Raises :class:`OperationCancelled` once ``token`` fires; no frame is
        yielded after that point. Upstream failures surface as the errors
        raised by :meth:`AIClient.open_stream`.
        """

        token.raise_if_cancelled()
        session = self.new_session(token)
        cancelled = False
        failed = False
        try:
            async with self._client.open_stream(payload) as chunks:
                while True:
                    chunk = await token.race(_next_chunk(chunks))
                    if chunk is None:
                        break
                    finished = False
                    for record in session.assembler.feed(chunk):
                        if record is STREAM_DONE:
                            finished = True
                            break
                        session.records_seen += 1
                        for frame in self._frames_for(session, Delta.from_record(record)):
                            token.raise_if_cancelled()
                            session.frames_emitted += 1
                            yield frame
                    if finished:
                        break
            token.raise_if_cancelled()
            if session.phase is StreamPhase.REASONING and session.reasoning_buffer:
                session.frames_emitted += 1
                yield TaggedFrame.reasoning(session.take_reasoning())
        except OperationCancelled as exc:
            cancelled = True
            LOGGER.info(
                "Upstream stream stopped after %s record(s): %s",
                session.records_seen,
                exc.reason,
            )
            raise
        except Exception:
            failed = True
            raise
        finally:
            if not failed:
                self._record_usage(session, payload, request, cancelled=cancelled)

    async def transcode_bytes(
        self,
        payload: Mapping[str, Any],
        token: CancellationToken,
        *,
        request: QueryRequest | None = None,
    ) -> AsyncIterator[bytes]:
        """Wire form of :meth:`transcode`."""

        async for frame in self.transcode(payload, token, request=request):
            yield frame.encode()

    def _frames_for(self, session: StreamSession, delta: Delta | None) -> list[TaggedFrame]:
        if delta is None:
            return []
        frames: list[TaggedFrame] = []
        if delta.reasoning:
            if session.phase is StreamPhase.REASONING:
                session.reasoning_buffer += delta.reasoning
                session.reasoning_chars += len(delta.reasoning)
                if self._config.should_flush(session.reasoning_buffer):
                    frames.append(TaggedFrame.reasoning(session.take_reasoning()))
            else:
                session.late_reasoning_dropped += 1
                LOGGER.debug("Ignoring reasoning delta received after the answer started")
        if delta.content:
            if session.phase is StreamPhase.REASONING:
                if session.reasoning_buffer:
                    frames.append(TaggedFrame.reasoning(session.take_reasoning()))
                session.enter_final()
                frames.append(TaggedFrame.final_marker())
            session.answer_parts.append(delta.content)
            frames.append(TaggedFrame.answer(delta.content))
        return frames

    def _record_usage(
        self,
        session: StreamSession,
        payload: Mapping[str, Any],
        request: QueryRequest | None,
        *,
        cancelled: bool,
    ) -> None:
        allocated = payload.get("max_tokens")
        if allocated is None:
            return
        answer = session.answer_text
        try:
            actual = self._token_counter.count(answer)
        except Exception:  # pragma: no cover - defensive guard
            actual = self._token_counter.estimate(answer)
        elapsed = time.perf_counter() - session.started_at
        LOGGER.debug(
            "Stream session finished: records=%s frames=%s skipped=%s dropped_bytes=%s elapsed=%.2fs",
            session.records_seen,
            session.frames_emitted,
            session.assembler.skipped_records,
            session.assembler.dropped_bytes,
            elapsed,
        )
        log_token_usage(
            request.query if request is not None else "",
            int(allocated),
            actual,
            sink=self._telemetry_sink,
            reasoning_tokens=math.ceil(session.reasoning_chars / CHARS_PER_TOKEN),
            session_id=request.session_id if request is not None else None,
            model=payload.get("model"),
            cancelled=cancelled,
        )


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


__all__ = [
    "InvalidPhaseTransition",
    "StreamPhase",
    "StreamSession",
    "StreamTranscoder",
    "transition",
]
