"""Reassembly of ``data:`` records from an irregularly chunked upstream stream."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable

LOGGER = logging.getLogger(__name__)

RECORD_DELIMITER = b"data: "
DONE_PAYLOAD = b"[DONE]"
DEFAULT_MAX_BUFFER_BYTES = 50_000


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


STREAM_DONE: Any = _Sentinel("STREAM_DONE")
_INCOMPLETE: Any = _Sentinel("INCOMPLETE")


@dataclass(frozen=True, slots=True)
class Delta:
    """Reasoning and/or answer increments carried by one upstream record."""

    reasoning: str | None = None
    content: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> "Delta | None":
        """Extract ``choices[0].delta`` from a parsed record, if present."""

        if not isinstance(record, dict):
            return None
        choices = record.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first = choices[0]
        if not isinstance(first, dict):
            return None
        delta = first.get("delta")
        if not isinstance(delta, dict):
            return None
        reasoning = delta.get("reasoning_content")
        content = delta.get("content")
        reasoning = reasoning if isinstance(reasoning, str) and reasoning else None
        content = content if isinstance(content, str) and content else None
        if reasoning is None and content is None:
            return None
        return cls(reasoning=reasoning, content=content)


class RecordAssembler:
    """Accumulates raw bytes and yields complete parsed records in order.

    Chunks may carry zero, one or several records, and a record may span
    several chunks. A body that does not parse and has not yet been
    terminated by a newline is kept and joined with the next chunk. A
    newline-terminated body that does not parse is malformed and skipped.
    The retained buffer is capped at ``max_buffer_bytes``; past the cap the
    partial data is dropped.
    """

    def __init__(self, *, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        self.max_buffer_bytes = max(1, int(max_buffer_bytes))
        self.buffer = b""
        self.skipped_records = 0
        self.dropped_bytes = 0

    def feed(self, chunk: bytes) -> list[Any]:
        """Consume ``chunk`` and return parsed records (or :data:`STREAM_DONE`)."""

        data = self.buffer + chunk
        self.buffer = b""
        parts = data.split(RECORD_DELIMITER)
        records: list[Any] = []

        if len(parts) == 1:
            # No delimiter yet; only a split delimiter is worth keeping.
            self.buffer = _trailing_delimiter_prefix(data)
            return records

        last_index = len(parts) - 1
        carried: bytes | None = None
        for index in range(1, len(parts)):
            part = parts[index]
            body = part if carried is None else carried + RECORD_DELIMITER + part
            carried = None
            line, newline, _rest = body.partition(b"\n")
            parsed = _parse(line)
            if parsed is not _INCOMPLETE:
                records.append(parsed)
            elif newline:
                self.skipped_records += 1
                LOGGER.debug("Skipping malformed upstream record (%d bytes)", len(line))
            elif index < last_index:
                # The delimiter occurred inside the record body; rejoin it.
                carried = body
                continue
            else:
                self.buffer = RECORD_DELIMITER + body
                continue
            if index == last_index and newline:
                self.buffer = _trailing_delimiter_prefix(body)

        if len(self.buffer) > self.max_buffer_bytes:
            self.dropped_bytes += len(self.buffer)
            LOGGER.warning(
                "Upstream record buffer exceeded %d bytes; dropping %d bytes of partial data",
                self.max_buffer_bytes,
                len(self.buffer),
            )
            self.buffer = b""
        return records

    def feed_all(self, chunks: Iterable[bytes]) -> list[Any]:
        records: list[Any] = []
        for chunk in chunks:
            records.extend(self.feed(chunk))
        return records


def _parse(body: bytes) -> Any:
    stripped = body.strip()
    if not stripped:
        return _INCOMPLETE
    if stripped == DONE_PAYLOAD:
        return STREAM_DONE
    try:
        return json.loads(stripped)
    except ValueError:
        return _INCOMPLETE


def _trailing_delimiter_prefix(data: bytes) -> bytes:
    """Return the start of a split delimiter at the end of ``data``, if any."""

    last_line = data.rpartition(b"\n")[2]
    for size in range(min(len(RECORD_DELIMITER) - 1, len(last_line)), 0, -1):
        if last_line.endswith(RECORD_DELIMITER[:size]):
            return last_line[-size:]
    return b""


__all__ = [
    "DEFAULT_MAX_BUFFER_BYTES",
    "DONE_PAYLOAD",
    "Delta",
    "RECORD_DELIMITER",
    "RecordAssembler",
    "STREAM_DONE",
]
