"""Tests for upstream record reassembly."""

from __future__ import annotations

import pytest

from docbare.ai.orchestration.records import STREAM_DONE, Delta, RecordAssembler
from tests.helpers import DONE_RECORD, content_record, reasoning_record, sse_record

STREAM = reasoning_record("Step 1. ") + content_record("Hello") + DONE_RECORD


def _deltas(records):
    return [record if record is STREAM_DONE else Delta.from_record(record) for record in records]


EXPECTED = [Delta(reasoning="Step 1. "), Delta(content="Hello"), STREAM_DONE]


def test_whole_stream_in_one_chunk() -> None:
    assembler = RecordAssembler()

    assert _deltas(assembler.feed(STREAM)) == EXPECTED
    assert assembler.buffer == b""


@pytest.mark.parametrize("offset", range(len(STREAM) + 1))
def test_split_at_any_offset_yields_same_records(offset: int) -> None:
    assembler = RecordAssembler()

    records = assembler.feed(STREAM[:offset]) + assembler.feed(STREAM[offset:])

    assert _deltas(records) == EXPECTED


def test_byte_by_byte_feed() -> None:
    assembler = RecordAssembler()

    records = assembler.feed_all(STREAM[index:index + 1] for index in range(len(STREAM)))

    assert _deltas(records) == EXPECTED


def test_delimiter_inside_content_is_rejoined() -> None:
    stream = content_record("see data: here") + content_record("next")
    assembler = RecordAssembler()

    records = assembler.feed(stream[:30]) + assembler.feed(stream[30:])

    assert _deltas(records) == [Delta(content="see data: here"), Delta(content="next")]


def test_malformed_record_is_skipped() -> None:
    assembler = RecordAssembler()

    records = assembler.feed(b"data: {not json}\n\n" + content_record("ok"))

    assert _deltas(records) == [Delta(content="ok")]
    assert assembler.skipped_records == 1


def test_records_without_delta_text_are_ignored() -> None:
    record = sse_record({"role": "assistant", "content": ""})
    assembler = RecordAssembler()

    (parsed,) = assembler.feed(record)

    assert Delta.from_record(parsed) is None
    assert Delta.from_record({"choices": []}) is None
    assert Delta.from_record([1, 2]) is None


def test_oversized_partial_record_is_dropped() -> None:
    assembler = RecordAssembler(max_buffer_bytes=100)

    assert assembler.feed(b'data: {"choices": "' + b"x" * 200) == []
    assert assembler.buffer == b""
    assert assembler.dropped_bytes > 100

    # The stream recovers with the next complete record.
    assert _deltas(assembler.feed(content_record("after"))) == [Delta(content="after")]
