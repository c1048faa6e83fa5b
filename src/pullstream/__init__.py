"""pullstream - manual, pull-based HTTP byte-stream reader."""

from .core.model import (                                               # re-export
    BackendKind, StreamerState, StreamStatus, StreamTarget, StreamEvent, ReadResult,
    StreamError, OpenError, ReadError, ConcurrentReadViolation,
)
from .io import open_backend, DEFAULT_READ_QUANTUM                      # transport layer
from .streamer import Streamer
from .runner import SessionRunner


__all__ = [
    "SessionRunner", "Streamer", "open_backend",
    "BackendKind", "StreamerState", "StreamStatus", "StreamTarget", "StreamEvent", "ReadResult",
    "StreamError", "OpenError", "ReadError", "ConcurrentReadViolation",
    "DEFAULT_READ_QUANTUM",
]
