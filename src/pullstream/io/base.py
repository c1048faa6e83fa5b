"""Base protocol and shared constants for transport backends."""

from concurrent.futures import Future
from typing import Callable, Protocol, runtime_checkable

from ..core.model import ReadResult, StreamEvent, StreamTarget


DEFAULT_READ_QUANTUM = 64 * 1024  # 64 KB
READ_TIMEOUT = 30.0  # seconds, negotiated-upgrade reads only
CLOSE_TIMEOUT = 10.0  # seconds the runner waits for a close confirmation
MAX_HEAD_BYTES = 64 * 1024  # largest response head either backend accepts

EventSink = Callable[[StreamEvent], None]


@runtime_checkable
class TransportBackend(Protocol):
    """One concrete way of turning a URL into a readable byte channel."""

    def open(self, target: StreamTarget, emit: EventSink) -> None:
        """Start opening the channel; status is reported through `emit`.
        If the channel cannot be constructed → raise OpenError.
        """
        ...

    def read(self, quantum: int) -> "Future[ReadResult]":
        """Issue one bounded read of at most `quantum` bytes."""
        ...

    def close(self) -> "Future[None]":
        """Release the channel. The future resolves once teardown is confirmed."""
        ...


def completed(value=None) -> Future:
    """Return an already resolved future."""
    future: Future = Future()
    future.set_result(value)
    return future
