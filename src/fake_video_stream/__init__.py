"""fake-video-stream: Synthetic paced video stream over HTTP for player/proxy/load testing."""

from fake_video_stream.config import StreamConfig
from fake_video_stream.emitter import FrameBufferError, PacedEmitter, StreamOutcome, Ticker
from fake_video_stream.frame_source import FrameSource
from fake_video_stream.params import ParameterError, resolve_params, resolve_query
from fake_video_stream.response import FrameStreamResponse

__all__ = [
    "FrameBufferError",
    "FrameSource",
    "FrameStreamResponse",
    "PacedEmitter",
    "ParameterError",
    "StreamConfig",
    "StreamOutcome",
    "Ticker",
    "resolve_params",
    "resolve_query",
]
