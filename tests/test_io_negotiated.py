"""Tests for the negotiated-upgrade transport backend."""

import asyncio
import socket
import struct
import time

import httpx
import pytest

from pullstream.core.model import (
    ConcurrentReadViolation, OpenError, ReadError, StreamStatus, StreamTarget,
)
from pullstream.io.negotiated import (
    AF41_TOS, NegotiatedUpgradeBackend, SessionConfig, UpgradeSession, UpgradedStream,
)

TARGET = StreamTarget("http://media.example.test/episode.mp3", 1024)


def mock_session(handler, **config):
    """Session factory whose client talks to an in-process handler."""
    config.setdefault("trust_env", False)
    return lambda: UpgradeSession(SessionConfig(**config), transport=httpx.MockTransport(handler))


async def _stalled_body():
    await asyncio.sleep(3600)
    yield b"never"


async def _chunks(body: bytes, size: int = 700):
    for start in range(0, len(body), size):
        yield body[start:start + size]


def streamed(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=_chunks(body))


def stalled(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=_stalled_body())


def _collect(backend, timeout: float = 5.0):
    """Issue reads one at a time until end of stream."""
    results = []
    while True:
        result = backend.read(TARGET.read_quantum).result(timeout=timeout)
        results.append(result)
        if result.at_end_of_stream or result.error is not None:
            return results


class TestUpgradedStream:
    """Test the raw stream a response becomes."""

    @pytest.mark.asyncio
    async def test_reads_are_bounded(self):
        async def body():
            yield b"abcdef"
            yield b"gh"

        stream = UpgradedStream(httpx.Response(200, content=body()))
        assert await stream.read(1, 4) == (b"abcd", False)
        assert await stream.read(1, 4) == (b"ef", False)
        assert await stream.read(1, 4) == (b"gh", False)
        assert await stream.read(1, 4) == (b"", True)

    @pytest.mark.asyncio
    async def test_read_after_close_read_fails(self):
        stream = UpgradedStream(streamed(b"abc"))
        await stream.close_read()
        await stream.close_read()
        assert stream.read_closed
        with pytest.raises(ReadError):
            await stream.read(1, 4)


class TestSessionConfig:
    """Test the streaming session configuration."""

    def test_service_class_socket_option(self):
        options = SessionConfig().socket_options()
        if hasattr(socket, "IP_TOS"):
            assert options == [(socket.IPPROTO_IP, socket.IP_TOS, AF41_TOS)]
        else:
            assert options == []

    def test_service_class_can_be_disabled(self):
        assert SessionConfig(service_class=None).socket_options() == []

    def test_session_rejects_cookies_and_disables_caching(self, recorder):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, headers={"Set-Cookie": "session=abc; Path=/"}, content=b"x")

        backend = NegotiatedUpgradeBackend(session_factory=mock_session(handler))
        backend.open(TARGET, recorder)
        recorder.wait_for(StreamStatus.OPENED)
        try:
            assert seen["cache-control"] == "no-cache"
            assert seen["pragma"] == "no-cache"
            assert len(list(backend.session.client.cookies.jar)) == 0
        finally:
            backend.close().result(timeout=5)


class TestNegotiatedUpgradeBackend:
    """Test reads and teardown of the negotiated-upgrade backend."""

    def test_response_becomes_stream_then_reads_to_eos(self, recorder):
        body = b"a" * 5000
        backend = NegotiatedUpgradeBackend(
            session_factory=mock_session(lambda request: streamed(body))
        )
        backend.open(TARGET, recorder)
        recorder.wait_for(StreamStatus.OPENED)
        assert recorder.statuses[:3] == [
            StreamStatus.RESPONSE_RECEIVED, StreamStatus.BECAME_STREAM, StreamStatus.OPENED,
        ]

        results = _collect(backend)
        assert all(0 <= r.count <= TARGET.read_quantum for r in results)
        assert sum(r.count for r in results) == len(body)
        assert results[-1].at_end_of_stream
        assert backend.bytes_read == len(body)
        backend.close().result(timeout=5)

    def test_read_before_upgrade_waits_for_it(self, recorder):
        async def slow(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.3)
            return streamed(b"late bytes")

        backend = NegotiatedUpgradeBackend(session_factory=mock_session(slow))
        backend.open(TARGET, recorder)
        result = backend.read(1024).result(timeout=5)
        assert result.data == b"late bytes"
        backend.close().result(timeout=5)

    def test_second_outstanding_read_is_rejected(self, recorder):
        backend = NegotiatedUpgradeBackend(session_factory=mock_session(stalled))
        backend.open(TARGET, recorder)
        first = backend.read(1024)
        with pytest.raises(ConcurrentReadViolation):
            backend.read(1024)
        backend.close().result(timeout=5)
        assert first.result(timeout=5).cancelled

    def test_close_delivers_outstanding_read_first(self, recorder):
        backend = NegotiatedUpgradeBackend(session_factory=mock_session(stalled))
        backend.open(TARGET, recorder)
        recorder.wait_for(StreamStatus.OPENED)

        order = []
        read = backend.read(1024)
        read.add_done_callback(lambda _: order.append("read"))
        closed = backend.close()
        closed.add_done_callback(lambda _: order.append("close"))
        closed.result(timeout=5)

        assert order == ["read", "close"]
        assert read.result().cancelled
        assert read.result().count == 0

    def test_read_timeout(self, recorder):
        backend = NegotiatedUpgradeBackend(read_timeout=0.2, session_factory=mock_session(stalled))
        backend.open(TARGET, recorder)
        result = backend.read(1024).result(timeout=5)
        assert isinstance(result.error, ReadError)
        assert "timed out" in str(result.error)
        backend.close().result(timeout=5)

    def test_request_failure_is_reported(self, recorder):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend = NegotiatedUpgradeBackend(session_factory=mock_session(refuse))
        backend.open(TARGET, recorder)
        error = recorder.wait_for(StreamStatus.ERROR)
        assert isinstance(error.error, OpenError)
        assert isinstance(error.error.__cause__, httpx.ConnectError)

        result = backend.read(1024).result(timeout=5)
        assert isinstance(result.error, OpenError)
        backend.close().result(timeout=5)

    def test_close_is_idempotent_and_confirmed_once(self, recorder):
        backend = NegotiatedUpgradeBackend(
            session_factory=mock_session(lambda request: streamed(b"x"))
        )
        backend.open(TARGET, recorder)
        recorder.wait_for(StreamStatus.OPENED)
        session = backend.session

        closed = backend.close()
        assert backend.close() is closed
        closed.result(timeout=5)

        # already confirmed: a late subscriber is called right away
        late = []
        closed.add_done_callback(lambda _: late.append(True))
        assert late == [True]
        assert backend.close() is closed
        assert recorder.statuses.count(StreamStatus.SESSION_INVALIDATED) == 1
        assert backend.session is None

        deadline = time.monotonic() + 5
        while session.worker.running and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not session.worker.running

    def test_read_after_close_is_cancelled(self, recorder):
        backend = NegotiatedUpgradeBackend(session_factory=mock_session(stalled))
        backend.open(TARGET, recorder)
        backend.close().result(timeout=5)
        assert backend.read(1024).result().cancelled

    def test_close_without_open(self):
        backend = NegotiatedUpgradeBackend()
        closed = backend.close()
        assert closed.done()
        assert backend.close() is closed

    def test_invalidated_session_cannot_open(self, recorder):
        session = UpgradeSession(SessionConfig(trust_env=False))
        session.invalidate_and_cancel().result(timeout=5)
        backend = NegotiatedUpgradeBackend(session_factory=lambda: session)
        with pytest.raises(OpenError):
            backend.open(TARGET, recorder)

    def test_against_local_server(self, httpserver, recorder):
        body = bytes(range(256)) * 40
        httpserver.expect_request("/episode").respond_with_data(body)
        url = f"http://127.0.0.1:{httpserver.port}/episode"

        backend = NegotiatedUpgradeBackend(session_config=SessionConfig(trust_env=False))
        backend.open(StreamTarget(url, 1024), recorder)
        results = _collect(backend)
        assert b"".join(r.data for r in results) == body
        assert recorder.wait_for(StreamStatus.OPENED).detail == "HTTP 200 OK"
        backend.close().result(timeout=5)

    def test_body_bytes_arrive_undecoded(self, raw_server, recorder):
        body = b"5\r\nhello\r\n0\r\n\r\n"

        def script(conn):
            conn.sendall(b"HTTP/1.1 100 Continue\r\n\r\n"
                         b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n" + body)

        server = raw_server(script)
        backend = NegotiatedUpgradeBackend(session_config=SessionConfig(trust_env=False))
        backend.open(StreamTarget(server.url, 1024), recorder)
        results = _collect(backend)
        assert b"".join(r.data for r in results) == body
        assert recorder.wait_for(StreamStatus.OPENED).detail == "HTTP 200 OK"

        sent = server.request.lower()
        assert sent.startswith(b"get /live http/1.1\r\n")
        assert b"\r\nconnection: close\r\n" in sent
        assert b"\r\naccept-encoding: identity\r\n" in sent
        backend.close().result(timeout=5)

    def test_reset_mid_stream_fails_the_read(self, raw_server, recorder):
        def script(conn):
            conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 1000\r\n\r\nhello")
            time.sleep(0.5)
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            conn.close()

        server = raw_server(script)
        backend = NegotiatedUpgradeBackend(session_config=SessionConfig(trust_env=False))
        backend.open(StreamTarget(server.url, 1024), recorder)
        results = _collect(backend)
        assert results[0].data == b"hello"
        assert isinstance(results[-1].error, ReadError)
        assert not any(r.at_end_of_stream for r in results)
        backend.close().result(timeout=5)

    def test_unreachable_host_is_an_open_error(self, recorder):
        with socket.socket() as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        backend = NegotiatedUpgradeBackend(session_config=SessionConfig(trust_env=False))
        backend.open(StreamTarget(f"http://127.0.0.1:{port}/live", 1024), recorder)
        error = recorder.wait_for(StreamStatus.ERROR)
        assert isinstance(error.error.__cause__, httpx.ConnectError)
        backend.close().result(timeout=5)


class TestStreamFinishedLogging:
    """Test the diagnostics logged when the stream task ends."""

    def test_end_of_stream_is_logged_once(self, caplog, recorder):
        backend = NegotiatedUpgradeBackend(
            session_factory=mock_session(lambda request: streamed(b"x" * 3000))
        )
        with caplog.at_level("INFO", logger="pullstream.io.negotiated"):
            backend.open(TARGET, recorder)
            _collect(backend)
            backend.read(1024).result(timeout=5)
            backend.close().result(timeout=5)
        assert caplog.text.count("Stream finished after 3000 bytes") == 1
        assert "finished with error" not in caplog.text

    def test_transport_error_is_logged(self, caplog, recorder):
        async def broken():
            yield b"partial"
            raise httpx.ReadError("connection reset by peer")

        backend = NegotiatedUpgradeBackend(
            session_factory=mock_session(lambda request: httpx.Response(200, content=broken()))
        )
        with caplog.at_level("INFO", logger="pullstream.io.negotiated"):
            backend.open(TARGET, recorder)
            results = _collect(backend)
            backend.close().result(timeout=5)
        assert isinstance(results[-1].error, ReadError)
        assert "Stream finished with error: Read failed: connection reset by peer" in caplog.text
