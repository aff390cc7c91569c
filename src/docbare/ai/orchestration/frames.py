"""Tagged frame protocol spoken between the query endpoint and its clients.

On the wire a frame is one of:

* ``THINKING:`` followed by reasoning text,
* the bare marker ``FINAL:`` (sent exactly once, before any answer text),
* raw answer text with no prefix.

HTTP chunking may merge or split frames, so :class:`FrameDecoder` treats its
input as an opaque character run and only acts on a tag once the whole
prefix has been seen.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

THINKING_PREFIX = "THINKING:"
FINAL_MARKER = "FINAL:"
_TAGS: tuple[str, ...] = (THINKING_PREFIX, FINAL_MARKER)


class FrameKind(Enum):
    """The three frame variants of the tagged protocol."""

    REASONING = "reasoning"
    FINAL_MARKER = "final"
    ANSWER = "answer"


@dataclass(frozen=True, slots=True)
class TaggedFrame:
    """One unit of the simplified output protocol."""

    kind: FrameKind
    text: str = ""

    @classmethod
    def reasoning(cls, text: str) -> "TaggedFrame":
        return cls(FrameKind.REASONING, text)

    @classmethod
    def final_marker(cls) -> "TaggedFrame":
        return cls(FrameKind.FINAL_MARKER)

    @classmethod
    def answer(cls, text: str) -> "TaggedFrame":
        return cls(FrameKind.ANSWER, text)

    def encode(self) -> bytes:
        return encode_frame(self)


def encode_frame(frame: TaggedFrame) -> bytes:
    """Serialize ``frame`` to its wire representation."""

    if frame.kind is FrameKind.REASONING:
        return (THINKING_PREFIX + frame.text).encode("utf-8")
    if frame.kind is FrameKind.FINAL_MARKER:
        return FINAL_MARKER.encode("utf-8")
    return frame.text.encode("utf-8")


class FrameDecoder:
    """Incrementally turns tagged text back into :class:`TaggedFrame` objects.

    Text following ``THINKING:`` is reasoning until the next tag. Text seen
    before any tag is answer text. Once ``FINAL:`` has been matched every
    following character is answer text and no further tags are recognised.
    A trailing fragment that could be the start of a tag is held back until
    the next :meth:`feed` (or :meth:`flush`) resolves it.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._in_reasoning = False
        self._final_seen = False

    @property
    def final_seen(self) -> bool:
        return self._final_seen

    def feed(self, text: str) -> list[TaggedFrame]:
        if self._final_seen:
            return [TaggedFrame.answer(text)] if text else []

        data = self._pending + text
        self._pending = ""
        frames: list[TaggedFrame] = []
        while data:
            if self._final_seen:
                frames.append(TaggedFrame.answer(data))
                break
            index, tag = _find_next_tag(data)
            if tag is None:
                held = _partial_tag_length(data)
                body = data[: len(data) - held]
                if body:
                    frames.append(self._payload(body))
                self._pending = data[len(data) - held:]
                break
            if index > 0:
                frames.append(self._payload(data[:index]))
            data = data[index + len(tag):]
            if tag == THINKING_PREFIX:
                self._in_reasoning = True
            else:
                self._in_reasoning = False
                self._final_seen = True
                frames.append(TaggedFrame.final_marker())
        return frames

    def flush(self) -> list[TaggedFrame]:
        """Release any held-back fragment at end of stream."""

        if not self._pending:
            return []
        pending, self._pending = self._pending, ""
        return [self._payload(pending)]

    def _payload(self, text: str) -> TaggedFrame:
        if self._in_reasoning:
            return TaggedFrame.reasoning(text)
        return TaggedFrame.answer(text)


def _find_next_tag(data: str) -> tuple[int, str | None]:
    best_index = -1
    best_tag: str | None = None
    for tag in _TAGS:
        index = data.find(tag)
        if index != -1 and (best_index == -1 or index < best_index):
            best_index, best_tag = index, tag
    return best_index, best_tag


def _partial_tag_length(data: str) -> int:
    """Length of the longest suffix of ``data`` that is a proper prefix of a tag."""

    longest = 0
    for tag in _TAGS:
        for size in range(min(len(tag) - 1, len(data)), 0, -1):
            if data.endswith(tag[:size]):
                longest = max(longest, size)
                break
    return longest


__all__ = [
    "FINAL_MARKER",
    "FrameDecoder",
    "FrameKind",
    "TaggedFrame",
    "THINKING_PREFIX",
    "encode_frame",
]
