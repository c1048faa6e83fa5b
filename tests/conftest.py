"""Shared fixtures for pullstream tests."""

import socket
import threading
import time
from concurrent.futures import Future

import pytest

from pullstream.core.model import ConcurrentReadViolation, StreamStatus
from pullstream.io.base import completed

_PROXY_VARS = ("http_proxy", "https_proxy", "all_proxy", "no_proxy",
               "HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "NO_PROXY")


@pytest.fixture(autouse=True)
def no_ambient_proxy(monkeypatch):
    """Keep the machine's proxy settings out of local-server tests."""
    for name in _PROXY_VARS:
        monkeypatch.delenv(name, raising=False)


class Recorder:
    """Event sink that remembers every StreamEvent it receives."""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event):
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    @property
    def statuses(self):
        return [e.status for e in self.events]

    def wait_for(self, status: StreamStatus, timeout: float = 5.0):
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for event in self.events:
                    if event.status is status:
                        return event
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"{status} not seen; got {self.statuses}")
                self._cond.wait(remaining)


@pytest.fixture
def recorder():
    return Recorder()


class FakeBackend:
    """Scriptable TransportBackend: reads stay pending until resolved by the test."""

    def __init__(self, open_error=None, close_future=None):
        self.open_error = open_error
        self.close_future = close_future
        self.emit = None
        self.reads = []
        self.pending = None
        self.close_calls = 0

    def open(self, target, emit):
        if self.open_error is not None:
            raise self.open_error
        self.emit = emit

    def read(self, quantum):
        if self.pending is not None and not self.pending.done():
            raise ConcurrentReadViolation("A read is already outstanding on this stream")
        self.reads.append(quantum)
        self.pending = Future()
        return self.pending

    def close(self):
        self.close_calls += 1
        if self.close_future is None:
            self.close_future = completed()
        return self.close_future


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def backend_cls():
    return FakeBackend


class RawServer:
    """One-connection TCP server that answers with scripted raw bytes.

    ``script(conn)`` runs once the request head has been read into
    :attr:`request`; it owns the connection from then on.
    """

    def __init__(self, script):
        self.script = script
        self.request = b""
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(10)
        self.port = self._listener.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/live"

    def _serve(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        with conn:
            while b"\r\n\r\n" not in self.request:
                chunk = conn.recv(4096)
                if not chunk:
                    return
                self.request += chunk
            self.script(conn)

    def close(self):
        self._listener.close()
        self._thread.join(timeout=5)


@pytest.fixture
def raw_server():
    servers = []

    def start(script):
        server = RawServer(script)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()
