"""Session runner: keeps at most one Streamer active at a time."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Callable, Dict, Optional

from .core.loop import EventLoopThread
from .core.model import BackendKind, ReadResult, StreamTarget
from .io import CLOSE_TIMEOUT, READ_TIMEOUT, SessionConfig, TransportBackend, open_backend
from .io.base import completed
from .streamer import Streamer

BackendFactory = Callable[[], TransportBackend]


class SessionRunner:
    """Coordinates start/read/stop requests for a single stream target.

    Starting a stream always tears the previous one down first and waits for
    the teardown to be confirmed. Calls are serialised by a lock; the
    runner owns the event loop thread the event-driven backend runs on.
    """

    def __init__(self, target: StreamTarget, *,
                 validate_certificates: bool = True,
                 read_timeout: float = READ_TIMEOUT,
                 close_timeout: float = CLOSE_TIMEOUT,
                 session_config: Optional[SessionConfig] = None,
                 backend_factories: Optional[Dict[BackendKind, BackendFactory]] = None,
                 logger: Optional[logging.Logger] = None):
        self.target = target
        self.validate_certificates = validate_certificates
        self.read_timeout = read_timeout
        self.close_timeout = close_timeout
        self.session_config = session_config
        self._log = logger or logging.getLogger(__name__)
        self._loop_thread = EventLoopThread("pullstream-events")
        self._factories: Dict[BackendKind, BackendFactory] = {
            BackendKind.EVENT_DRIVEN: self._event_driven_backend,
            BackendKind.NEGOTIATED_UPGRADE: self._negotiated_backend,
        }
        if backend_factories:
            self._factories.update(backend_factories)
        self._active: Optional[Streamer] = None
        self._lock = threading.RLock()

    @property
    def active(self) -> Optional[Streamer]:
        return self._active

    @property
    def active_kind(self) -> Optional[BackendKind]:
        streamer = self._active
        return streamer.kind if streamer is not None else None

    def _event_driven_backend(self) -> TransportBackend:
        self._loop_thread.start()
        return open_backend(BackendKind.EVENT_DRIVEN, loop_thread=self._loop_thread,
                            validate_certificates=self.validate_certificates)

    def _negotiated_backend(self) -> TransportBackend:
        return open_backend(BackendKind.NEGOTIATED_UPGRADE, read_timeout=self.read_timeout,
                            session_config=self.session_config)

    # --- operator surface ---
    def start_event_driven(self) -> None:
        self.start(BackendKind.EVENT_DRIVEN)

    def start_negotiated_upgrade(self) -> None:
        self.start(BackendKind.NEGOTIATED_UPGRADE)

    def start(self, kind: BackendKind) -> Streamer:
        """Replace the active stream (if any) with a new one of `kind`."""
        kind = BackendKind(kind)
        with self._lock:
            self.stop_active(wait=True)
            streamer = Streamer(self.target, kind, self._factories[kind](), logger=self._log)
            self._active = streamer
            streamer.start()
            return streamer

    def read_active(self) -> Optional["concurrent.futures.Future[ReadResult]"]:
        with self._lock:
            streamer = self._active
            if streamer is None:
                self._log.debug("read ignored: no active streamer")
                return None
            return streamer.read_bytes()

    def stop_active(self, wait: bool = True) -> "concurrent.futures.Future[None]":
        """Stop the active stream; the slot is cleared once teardown is confirmed.

        With ``wait`` the call blocks until then (up to ``close_timeout``
        seconds, after which ``TimeoutError`` is raised).
        """
        with self._lock:
            streamer = self._active
            if streamer is None:
                return completed()

            closed = streamer.stop()
            closed.add_done_callback(lambda _: self._release(streamer))
            if wait:
                try:
                    closed.result(timeout=self.close_timeout)
                except concurrent.futures.TimeoutError as e:
                    raise TimeoutError(
                        f"{streamer.name} did not confirm teardown within {self.close_timeout}s"
                    ) from e
                self._release(streamer)
            return closed

    def _release(self, streamer: Streamer) -> None:
        # may run on a backend worker thread; only clears its own streamer
        if self._active is streamer:
            self._active = None

    def close(self) -> None:
        """Stop the active stream and shut down the event loop thread."""
        with self._lock:
            try:
                self.stop_active(wait=True)
            finally:
                self._loop_thread.stop()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
