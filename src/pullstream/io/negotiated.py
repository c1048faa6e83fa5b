"""Negotiated-upgrade HTTP stream using httpx.

A buffered GET is sent through a dedicated session. As soon as the response
head arrives the response is converted into a raw byte stream, and reads
become bounded asynchronous operations completed through futures. The
session transport parses only the response head, so reads see the bytes the
server put on the connection after it.
"""

import asyncio
import contextlib
import http.cookiejar
import logging
import socket
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

import h11
import httpcore
import httpx
from requests.utils import get_environ_proxies, select_proxy

from ..core.loop import EventLoopThread
from ..core.model import (
    ConcurrentReadViolation, OpenError, ReadError, ReadResult, StreamEvent,
    StreamStatus, StreamTarget,
)
from .base import MAX_HEAD_BYTES, READ_TIMEOUT, EventSink, completed

logger = logging.getLogger(__name__)

AF41_TOS = 0x88  # DSCP AF41, multimedia streaming
RAW_CHUNK_SIZE = 65536


@dataclass(frozen=True, slots=True)
class SessionConfig:
    timeout: Optional[float] = None  # request/resource timeout; None = unlimited
    accept_cookies: bool = False
    use_cache: bool = False
    max_connections: int = 1
    service_class: Optional[int] = AF41_TOS
    trust_env: bool = True

    def socket_options(self) -> list:
        if self.service_class is None or not hasattr(socket, "IP_TOS"):
            return []
        return [(socket.IPPROTO_IP, socket.IP_TOS, self.service_class)]


_MAPPED_ERRORS = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (h11.RemoteProtocolError, httpx.RemoteProtocolError),
    (h11.LocalProtocolError, httpx.LocalProtocolError),
)


@contextlib.contextmanager
def _mapped_errors(request: httpx.Request):
    try:
        yield
    except tuple(source for source, _ in _MAPPED_ERRORS) as e:
        for source, target in _MAPPED_ERRORS:
            if isinstance(e, source):
                raise target(str(e), request=request) from e
        raise


class _RawResponseStream(httpx.AsyncByteStream):
    """Connection bytes after the response head, undecoded, until the peer closes."""

    def __init__(self, network_stream, leading: bytes, request: httpx.Request,
                 release: Callable[[], None]):
        self._network_stream = network_stream
        self._leading = leading
        self._request = request
        self._release = release
        self._closed = False

    async def __aiter__(self):
        if self._leading:
            leading, self._leading = self._leading, b""
            yield leading
        timeout = self._request.extensions.get("timeout", {}).get("read")
        while not self._closed:
            with _mapped_errors(self._request):
                chunk = await self._network_stream.read(RAW_CHUNK_SIZE, timeout=timeout)
            if not chunk:
                return
            yield chunk

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            try:
                await self._network_stream.aclose()
            finally:
                self._release()


class RawStreamTransport(httpx.AsyncBaseTransport):
    """HTTP/1.1 transport whose responses carry the connection's raw bytes.

    Only the response head is parsed. Transfer framing and content codings in
    the body reach the reader exactly as the server sent them. Requests that
    the environment routes through a proxy are handed to httpx's own proxy
    transport, which decodes transfer framing.
    """

    def __init__(self, config: SessionConfig):
        self._config = config
        self._network = httpcore.AnyIOBackend()
        self._slots = asyncio.Semaphore(max(1, config.max_connections))
        self._ssl_context = None
        self._proxied: dict = {}

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        proxy = self._proxy_for(request.url)
        if proxy is not None:
            return await self._proxy_transport(proxy).handle_async_request(request)

        await self._slots.acquire()
        try:
            with _mapped_errors(request):
                network_stream = await self._connect(request)
                try:
                    event, leading = await self._exchange(network_stream, request)
                except BaseException:
                    await network_stream.aclose()
                    raise
        except BaseException:
            self._slots.release()
            raise

        return httpx.Response(
            event.status_code,
            headers=event.headers.raw_items(),
            stream=_RawResponseStream(network_stream, leading, request, self._slots.release),
            extensions={
                "http_version": b"HTTP/" + event.http_version,
                "reason_phrase": event.reason,
                "network_stream": network_stream,
            },
        )

    async def _connect(self, request: httpx.Request):
        url = request.url
        timeout = request.extensions.get("timeout", {}).get("connect")
        secure = url.scheme == "https"
        port = url.port or (443 if secure else 80)
        network_stream = await self._network.connect_tcp(
            url.host, port, timeout=timeout,
            socket_options=self._config.socket_options() or None,
        )
        if secure:
            if self._ssl_context is None:
                self._ssl_context = httpx.create_ssl_context(trust_env=self._config.trust_env)
            try:
                network_stream = await network_stream.start_tls(
                    self._ssl_context, server_hostname=url.host, timeout=timeout,
                )
            except BaseException:
                await network_stream.aclose()
                raise
        return network_stream

    async def _exchange(self, network_stream, request: httpx.Request) -> tuple:
        """Send the request, return the final response head and the bytes behind it."""
        timeouts = request.extensions.get("timeout", {})
        conn = h11.Connection(h11.CLIENT, max_incomplete_event_size=MAX_HEAD_BYTES)
        data = conn.send(h11.Request(method=request.method, target=request.url.raw_path,
                                     headers=request.headers.raw))
        data += conn.send(h11.EndOfMessage())
        await network_stream.write(data, timeout=timeouts.get("write"))

        while True:
            event = conn.next_event()
            if event is h11.NEED_DATA:
                conn.receive_data(await network_stream.read(RAW_CHUNK_SIZE, timeout=timeouts.get("read")))
                continue
            if isinstance(event, h11.Response):
                leading, _ = conn.trailing_data
                return event, bytes(leading)
            # interim 1xx responses precede the final one
            if not isinstance(event, h11.InformationalResponse):
                raise httpx.RemoteProtocolError(
                    f"Unexpected {type(event).__name__} before the response head", request=request,
                )

    def _proxy_for(self, url: httpx.URL) -> Optional[str]:
        if not self._config.trust_env:
            return None
        return select_proxy(str(url), get_environ_proxies(str(url)))

    def _proxy_transport(self, proxy: str) -> httpx.AsyncHTTPTransport:
        if proxy not in self._proxied:
            logger.warning("Streaming through proxy %s: transfer framing is decoded", proxy)
            self._proxied[proxy] = httpx.AsyncHTTPTransport(
                proxy=proxy,
                socket_options=self._config.socket_options() or None,
                trust_env=self._config.trust_env,
            )
        return self._proxied[proxy]

    async def aclose(self) -> None:
        for transport in self._proxied.values():
            await transport.aclose()
        self._proxied.clear()


class UpgradeSession:
    """Dedicated, isolated transport session.

    Owns a worker loop thread on which every request, read and callback runs,
    and an ``httpx.AsyncClient`` configured for continuous streaming. Tearing
    the session down is asynchronous: :meth:`invalidate_and_cancel` returns
    the :attr:`invalidated` future, which resolves exactly once after all
    session work is cancelled and the client is closed.
    """

    def __init__(self, config: Optional[SessionConfig] = None, *,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 name: str = "pullstream-session"):
        self.config = config or SessionConfig()
        self.invalidated: "Future[None]" = Future()
        self._transport = transport
        self._worker = EventLoopThread(name)
        self._client: Optional[httpx.AsyncClient] = None
        self._tasks: set = set()
        self._invalidating = False

    @property
    def worker(self) -> EventLoopThread:
        return self._worker

    @property
    def client(self) -> Optional[httpx.AsyncClient]:
        return self._client

    def start(self) -> "UpgradeSession":
        if self._invalidating:
            raise RuntimeError("Session has been invalidated")
        self._worker.start()
        self._client = self._worker.call(self._build_client)
        return self

    def _build_client(self) -> httpx.AsyncClient:
        config = self.config
        transport = self._transport or RawStreamTransport(config)
        cookies = None
        if not config.accept_cookies:
            policy = http.cookiejar.DefaultCookiePolicy(allowed_domains=[])
            # must stay a bare CookieJar: httpx copies Cookies objects into a default jar
            cookies = http.cookiejar.CookieJar(policy=policy)
        # one connection per stream, its body bytes untouched
        headers = {"Accept-Encoding": "identity", "Connection": "close"}
        if not config.use_cache:
            headers.update({"Cache-Control": "no-cache", "Pragma": "no-cache"})
        return httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(config.timeout),
            cookies=cookies,
            headers=headers,
            trust_env=config.trust_env,
        )

    def spawn(self, coro) -> Future:
        """Run a coroutine on the worker loop as cancellable session work."""
        if self._invalidating or not self._worker.running:
            coro.close()
            raise RuntimeError(f"{self._worker.name}: session is not running")

        async def _tracked():
            task = asyncio.current_task()
            self._tasks.add(task)
            try:
                return await coro
            finally:
                self._tasks.discard(task)

        return self._worker.submit(_tracked())

    def invalidate_and_cancel(self) -> "Future[None]":
        """Cancel outstanding work and close the session. Idempotent."""
        if not self._invalidating:
            self._invalidating = True
            if self._worker.running:
                self._worker.submit(self._invalidate())
            else:
                self._confirm(None)
        return self.invalidated

    async def _invalidate(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        error = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except (httpx.HTTPError, OSError) as e:
                error = e
        self._confirm(error)

    def _confirm(self, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.warning("%s: session became invalid with error: %s", self._worker.name, error)
        else:
            logger.debug("%s: session became invalid", self._worker.name)
        self._client = None
        self.invalidated.set_result(None)
        self._worker.stop(wait=False)


class UpgradedStream:
    """Raw byte stream that a response became once its head arrived."""

    def __init__(self, response: httpx.Response):
        self.response = response
        self.read_closed = False
        self._chunks = response.aiter_raw()
        self._buffer = bytearray()
        self._eof = False

    async def read(self, min_length: int, max_length: int) -> tuple:
        """Return ``(data, at_end_of_stream)`` with ``len(data) <= max_length``."""
        if self.read_closed:
            raise ReadError("Read side of the stream is closed")
        while len(self._buffer) < min_length and not self._eof:
            try:
                chunk = await anext(self._chunks)
            except StopAsyncIteration:
                self._eof = True
            else:
                self._buffer += chunk
        data = bytes(self._buffer[:max_length])
        del self._buffer[:max_length]
        return data, self._eof and not self._buffer

    async def close_read(self) -> None:
        if not self.read_closed:
            self.read_closed = True
            await self.response.aclose()


class NegotiatedUpgradeBackend:
    """Reads a response that was upgraded to a raw stream, one read at a time.

    At most one read may be outstanding; a second one raises
    ``ConcurrentReadViolation``. ``close()`` half-closes the read side (the
    outstanding read is cancelled and its completion delivered), then
    invalidates the session; the returned future resolves only after that.
    """

    def __init__(self, *, read_timeout: float = READ_TIMEOUT,
                 session_config: Optional[SessionConfig] = None,
                 session_factory: Optional[Callable[[], UpgradeSession]] = None):
        self.read_timeout = read_timeout
        self.bytes_read = 0
        self.reads_made = 0
        self._session_factory = session_factory or (lambda: UpgradeSession(session_config))
        self._session: Optional[UpgradeSession] = None
        self._emit: Optional[EventSink] = None
        self._stream: Optional[UpgradedStream] = None
        self._open_error: Optional[OpenError] = None
        self._upgraded = asyncio.Event()
        self._pending: Optional[Future] = None
        self._read_task: Optional[asyncio.Task] = None
        self._closing: Optional[Future] = None
        self._finished = False

    @property
    def session(self) -> Optional[UpgradeSession]:
        return self._session

    def open(self, target: StreamTarget, emit: EventSink) -> None:
        if self._session is not None or self._closing is not None:
            raise OpenError("Backend session can only be opened once")
        self._emit = emit
        session = self._session_factory()
        try:
            session.start()
            self._session = session
            session.spawn(self._request(session.client, target.url))
        except (RuntimeError, OSError, ValueError, httpx.HTTPError) as e:
            self._session = None
            self._emit = None
            session.invalidate_and_cancel()
            raise OpenError(f"Cannot start transport session: {e}") from e
        session.invalidated.add_done_callback(self._on_invalidated)

    async def _request(self, client: httpx.AsyncClient, url: str) -> None:
        try:
            request = client.build_request("GET", url)
            response = await client.send(request, stream=True, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            self._open_error = OpenError(f"Request to {url} failed: {e}")
            self._open_error.__cause__ = e
            self._upgraded.set()
            self._emit(StreamEvent(StreamStatus.ERROR, error=self._open_error, detail=str(e)))
            return

        status = f"HTTP {response.status_code} {response.reason_phrase}".rstrip()
        self._emit(StreamEvent(StreamStatus.RESPONSE_RECEIVED, detail=status))
        # the buffered response always becomes a stream
        self._stream = UpgradedStream(response)
        self._upgraded.set()
        self._emit(StreamEvent(StreamStatus.BECAME_STREAM))
        self._emit(StreamEvent(StreamStatus.OPENED, detail=status))

    def read(self, quantum: int, min_length: int = 1) -> "Future[ReadResult]":
        if quantum <= 0:
            raise ValueError("quantum must be positive")
        if self._pending is not None and not self._pending.done():
            raise ConcurrentReadViolation("A read is already outstanding on this stream")
        if self._session is None or self._closing is not None:
            return completed(ReadResult(0, cancelled=True))

        future: Future = Future()
        self._pending = future
        try:
            self._session.spawn(self._read(future, quantum, min_length))
        except RuntimeError as e:
            future.set_result(ReadResult(0, error=ReadError(f"Session unavailable: {e}")))
        return future

    async def _read(self, future: Future, quantum: int, min_length: int) -> None:
        self._read_task = asyncio.current_task()
        try:
            result = await asyncio.wait_for(self._read_once(quantum, min_length), self.read_timeout)
        except asyncio.CancelledError:
            self._deliver(future, ReadResult(0, cancelled=True))
            raise
        except asyncio.TimeoutError as e:
            error = ReadError(f"Read timed out after {self.read_timeout}s")
            error.__cause__ = e
            result = ReadResult(0, error=error)
        except (httpx.HTTPError, httpx.StreamError, OSError) as e:
            # ReadError/OpenError are OSErrors
            error = e if isinstance(e, (ReadError, OpenError)) else ReadError(f"Read failed: {e}")
            if error is not e:
                error.__cause__ = e
            if self._stream is not None:
                self._finish(error)
            result = ReadResult(0, error=error)
        finally:
            self._read_task = None
        self._deliver(future, result)

    async def _read_once(self, quantum: int, min_length: int) -> ReadResult:
        await self._upgraded.wait()
        if self._stream is None:
            raise self._open_error or ReadError("Response never became a stream")
        data, at_eos = await self._stream.read(min_length, quantum)
        self.reads_made += 1
        self.bytes_read += len(data)
        if at_eos:
            self._finish(None)
        return ReadResult(len(data), data, at_end_of_stream=at_eos)

    def _finish(self, error: Optional[Exception]) -> None:
        if self._finished:
            return
        self._finished = True
        if error is None:
            logger.info("Stream finished after %d bytes", self.bytes_read)
        else:
            logger.warning("Stream finished with error: %s", error)

    @staticmethod
    def _deliver(future: Future, result: ReadResult) -> None:
        if not future.done():
            future.set_result(result)

    def close(self) -> "Future[None]":
        """Two-phase teardown; the future resolves after the session is invalidated."""
        if self._closing is not None:
            return self._closing
        session = self._session
        if session is None:
            self._closing = completed()
            return self._closing
        self._closing = session.invalidated
        try:
            session.worker.submit(self._teardown(session))
        except RuntimeError:
            session.invalidate_and_cancel()
        return self._closing

    async def _teardown(self, session: UpgradeSession) -> None:
        await self._close_read()
        session.invalidate_and_cancel()

    async def _close_read(self) -> None:
        task = self._read_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._pending is not None:
            self._deliver(self._pending, ReadResult(0, cancelled=True))
        if self._stream is not None:
            try:
                await self._stream.close_read()
            except (httpx.HTTPError, OSError) as e:
                logger.warning("Closing the read side failed: %s", e)

    def _on_invalidated(self, _future: Future) -> None:
        self._stream = None
        self._session = None
        if self._emit is not None:
            self._emit(StreamEvent(StreamStatus.SESSION_INVALIDATED))
