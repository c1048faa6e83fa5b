"""Streamer: lifecycle of one connection over one transport backend."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Optional

from .core.model import (
    BackendKind, ConcurrentReadViolation, OpenError, ReadError, ReadResult,
    StreamEvent, StreamStatus, StreamTarget, StreamerState,
)
from .io.base import TransportBackend, completed

logger = logging.getLogger(__name__)

_READABLE = (StreamerState.OPEN, StreamerState.READING)
_STOPPABLE = (StreamerState.OPENING, StreamerState.OPEN, StreamerState.READING, StreamerState.ERRORED)


class Streamer:
    """Owns one backend from ``start()`` to ``stop()``.

    Backend callbacks arrive on loop threads, so state is guarded by a lock;
    the backend itself is never called while holding it.
    """

    def __init__(self, target: StreamTarget, kind: BackendKind, backend: TransportBackend,
                 *, logger: Optional[logging.Logger] = None):
        self.target = target
        self.kind = kind
        self.name = f"{kind.value} streamer"
        self._backend: Optional[TransportBackend] = backend
        self._log = logger or logging.getLogger(__name__)
        self._state = StreamerState.IDLE
        self._lock = threading.RLock()
        self._closed: Optional[Future] = None
        self._outstanding = 0

    @property
    def state(self) -> StreamerState:
        return self._state

    @property
    def backend(self) -> Optional[TransportBackend]:
        return self._backend

    def _transition(self, new_state: StreamerState) -> None:
        if new_state is not self._state:
            self._log.debug("%s: %s -> %s", self.name, self._state.value, new_state.value)
            self._state = new_state

    # ------------------------------------------------------------------ #
    def start(self) -> None:
        with self._lock:
            if self._state is not StreamerState.IDLE:
                self._log.debug("%s: start ignored in state %s", self.name, self._state.value)
                return
            self._transition(StreamerState.OPENING)
            backend = self._backend

        try:
            backend.open(self.target, self._on_event)
        except OpenError as e:
            with self._lock:
                self._log.error("%s: open failed: %s", self.name, e)
                self._transition(StreamerState.ERRORED)
            return

        with self._lock:
            # an error event may already have arrived
            if self._state is StreamerState.OPENING:
                self._transition(StreamerState.OPEN)
        self._log.info("%s: started (%s)", self.name, self.target.url)

    def _on_event(self, event: StreamEvent) -> None:
        with self._lock:
            status = event.status
            if status is StreamStatus.ERROR:
                self._log.error("%s: error: %s", self.name, event.detail or event.error)
                if self._state in (StreamerState.OPENING, StreamerState.OPEN, StreamerState.READING):
                    self._transition(StreamerState.ERRORED)
            elif status is StreamStatus.BYTES_AVAILABLE:
                self._log.info("%s: bytes available: %d", self.name, event.count)
            elif status is StreamStatus.END_OF_STREAM:
                self._log.info("%s: end of stream", self.name)
            elif status is StreamStatus.REDIRECTED:
                self._log.info("%s: redirected to %s", self.name, event.detail)
            elif status is StreamStatus.RESPONSE_RECEIVED:
                self._log.info("%s: received initial response (%s)", self.name, event.detail)
            elif status is StreamStatus.BECAME_STREAM:
                self._log.info("%s: response became a raw stream", self.name)
            elif status is StreamStatus.SESSION_INVALIDATED:
                self._log.info("%s: session invalidated", self.name)
            elif status is StreamStatus.OPENED:
                self._log.info("%s: opened (%s)", self.name, event.detail)
            else:
                self._log.debug("%s: %s", self.name, status.value)

    # ------------------------------------------------------------------ #
    def read_bytes(self) -> Optional["Future[ReadResult]"]:
        """Issue one read of ``read_quantum`` bytes; no-op unless open."""
        with self._lock:
            if self._state not in _READABLE:
                self._log.debug("%s: read ignored in state %s", self.name, self._state.value)
                return None
            backend = self._backend
            previous = self._state
            self._outstanding += 1
            self._transition(StreamerState.READING)

        try:
            future = backend.read(self.target.read_quantum)
        except ConcurrentReadViolation as e:
            with self._lock:
                self._outstanding -= 1
                if self._state is StreamerState.READING:
                    self._transition(previous)
            self._log.error("%s: %s", self.name, e)
            raise
        future.add_done_callback(self._on_read_complete)
        return future

    def _on_read_complete(self, future: Future) -> None:
        result: ReadResult = future.result()
        with self._lock:
            self._outstanding -= 1
            if result.count > self.target.read_quantum:
                result.error = ReadError(f"Backend returned {result.count} bytes for a "
                                         f"{self.target.read_quantum}-byte read")
            if result.cancelled:
                self._log.debug("%s: read cancelled", self.name)
                return

            if result.error is not None:
                error = result.error if isinstance(result.error, ReadError) else ReadError(str(result.error))
                self._log.error("%s: failed reading bytes: %s", self.name, error)
                if self._state in _READABLE:
                    self._transition(StreamerState.ERRORED)
                return

            self._log.info("%s: read %d bytes", self.name, result.count)
            if result.at_end_of_stream:
                self._log.info("%s: at end of stream", self.name)
            elif result.anomalous and self.kind is BackendKind.NEGOTIATED_UPGRADE:
                self._log.warning("%s: %s: read completed without data, EOS or error",
                                  self.name, StreamStatus.ANOMALOUS_READ.value)
            if self._state is StreamerState.READING and self._outstanding == 0:
                self._transition(StreamerState.OPEN)

    # ------------------------------------------------------------------ #
    def stop(self) -> "Future[None]":
        """Tear the backend down; the future resolves once it is confirmed closed."""
        with self._lock:
            if self._closed is not None:
                return self._closed
            if self._state is StreamerState.IDLE:
                self._transition(StreamerState.CLOSED)
                self._backend = None
                self._closed = completed()
                return self._closed
            if self._state not in _STOPPABLE:
                self._closed = completed()
                return self._closed
            self._transition(StreamerState.CLOSING)
            backend = self._backend
            self._closed = Future()
            closed = self._closed

        backend.close().add_done_callback(self._on_closed)
        return closed

    def _on_closed(self, future: Future) -> None:
        if future.exception() is not None:
            self._log.error("%s: teardown failed: %s", self.name, future.exception())
        with self._lock:
            self._transition(StreamerState.CLOSED)
            self._backend = None
        self._log.info("%s: %s", self.name, StreamStatus.CLOSED.value)
        self._log.debug("%s: backend disposed", self.name)
        self._closed.set_result(None)
