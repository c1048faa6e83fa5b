from __future__ import annotations

import enum
from dataclasses import dataclass
from urllib.parse import urlparse


class BackendKind(enum.Enum):
    EVENT_DRIVEN = "event-driven"
    NEGOTIATED_UPGRADE = "negotiated-upgrade"


class StreamerState(enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    READING = "reading"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


class StreamStatus(enum.Enum):
    """Diagnostic vocabulary shared by both backends."""

    OPENED = "opened"
    BYTES_AVAILABLE = "bytes-available"
    END_OF_STREAM = "end-of-stream"
    ERROR = "error"
    CLOSED = "closed"
    RESPONSE_RECEIVED = "response-received"
    REDIRECTED = "redirected"
    BECAME_STREAM = "became-stream"
    ANOMALOUS_READ = "anomalous-read"
    SESSION_INVALIDATED = "session-invalidated"


@dataclass(frozen=True, slots=True)
class StreamTarget:
    url: str
    read_quantum: int

    def __post_init__(self) -> None:
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Not an absolute http(s) URL: {self.url!r}")
        if isinstance(self.read_quantum, bool) or not isinstance(self.read_quantum, int):
            raise ValueError("read_quantum must be an integer")
        if self.read_quantum <= 0:
            raise ValueError("read_quantum must be positive")

    @property
    def is_secure(self) -> bool:
        return urlparse(self.url).scheme == "https"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    status: StreamStatus
    count: int | None = None
    error: BaseException | None = None
    detail: str | None = None


@dataclass(slots=True)
class ReadResult:
    count: int
    data: bytes = b""
    at_end_of_stream: bool = False
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def anomalous(self) -> bool:
        """No data, no EOS, no error and not cancelled.

        Only meaningful for reads that wait for data; a non-blocking read
        legitimately returns nothing.
        """
        return (self.count == 0 and not self.at_end_of_stream
                and self.error is None and not self.cancelled)


class StreamError(IOError):
    """Base class for transport failures."""


class OpenError(StreamError):
    """Raised when a backend channel or session cannot be constructed or opened."""


class ReadError(StreamError):
    """Transport-reported fault (or timeout) during a read."""


class ConcurrentReadViolation(RuntimeError):
    """Raised when a read is issued while another one is still outstanding."""
