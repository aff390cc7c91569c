"""Streaming orchestration: cancellation, record reassembly and tagged frames."""

from .cancellation import CancellationToken, new_token
from .frames import FINAL_MARKER, THINKING_PREFIX, FrameDecoder, FrameKind, TaggedFrame

# Request preparation
from .request_builder import PreparedRequest, RequestBuilder, build_messages
from .runtime_config import ConsumerConfig, TranscoderConfig

# Transcoding
from .records import STREAM_DONE, Delta, RecordAssembler
from .transcoder import StreamPhase, StreamSession, StreamTranscoder

__all__ = [
    "CancellationToken",
    "ConsumerConfig",
    "Delta",
    "FINAL_MARKER",
    "FrameDecoder",
    "FrameKind",
    "PreparedRequest",
    "RecordAssembler",
    "RequestBuilder",
    "STREAM_DONE",
    "StreamPhase",
    "StreamSession",
    "StreamTranscoder",
    "THINKING_PREFIX",
    "TaggedFrame",
    "TranscoderConfig",
    "build_messages",
    "new_token",
]
