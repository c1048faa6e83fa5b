"""Event-driven HTTP read channel.

The GET request is prepared with requests (headers, URL auth, ambient proxy
settings) and sent over an asyncio connection scheduled on a shared event
loop thread. Readiness is pushed to the owner as events; the bytes that follow
the response head are buffered untouched until the caller pulls them.
"""

import asyncio
import logging
import ssl
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin, urlparse

import h11
import requests
from requests import certs
from requests.auth import HTTPProxyAuth
from requests.models import DEFAULT_REDIRECT_LIMIT, REDIRECT_STATI
from requests.structures import CaseInsensitiveDict
from requests.utils import get_auth_from_url, get_environ_proxies, select_proxy

from ..core.loop import EventLoopThread
from ..core.model import (
    OpenError, ReadError, ReadResult, StreamEvent, StreamStatus, StreamTarget,
)
from .base import MAX_HEAD_BYTES, EventSink, completed

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(slots=True)
class _ResponseHead:
    status: int
    reason: str
    headers: CaseInsensitiveDict

    @classmethod
    def from_event(cls, event: h11.Response) -> "_ResponseHead":
        headers = CaseInsensitiveDict(
            (name.decode("iso-8859-1"), value.decode("iso-8859-1")) for name, value in event.headers
        )
        return cls(event.status_code, event.reason.decode("iso-8859-1"), headers)

    @property
    def is_redirect(self) -> bool:
        return self.status in REDIRECT_STATI and "location" in self.headers


class _HeadReader:
    """Client side of one HTTP/1.1 exchange, up to the final response head."""

    def __init__(self):
        self._conn = h11.Connection(h11.CLIENT, max_incomplete_event_size=MAX_HEAD_BYTES)

    def request(self, method: str, target: str, headers) -> bytes:
        try:
            return (self._conn.send(h11.Request(method=method, target=target, headers=list(headers.items())))
                    + self._conn.send(h11.EndOfMessage()))
        except h11.LocalProtocolError as e:
            raise OpenError(f"Cannot serialize {method} request: {e}") from e

    def feed(self, data: bytes) -> Optional[tuple]:
        """Return ``(head, leftover)`` once the final head is complete, else None."""
        self._conn.receive_data(data)
        while True:
            try:
                event = self._conn.next_event()
            except h11.RemoteProtocolError as e:
                raise OpenError(f"Malformed response head: {e}") from e
            if event is h11.NEED_DATA:
                return None
            if isinstance(event, h11.Response):
                leftover, _ = self._conn.trailing_data
                return _ResponseHead.from_event(event), leftover
            # interim 1xx responses precede the final one
            if not isinstance(event, h11.InformationalResponse):
                raise OpenError(f"Unexpected {type(event).__name__} before the response head")


class _ReadChannel(asyncio.Protocol):
    """Collects the response head, then buffers body bytes until pulled.

    Reading from the socket is paused once more than `high_water` bytes are
    waiting, so nothing is buffered eagerly beyond one read quantum.
    """

    def __init__(self, high_water: int):
        self.head: asyncio.Future = asyncio.get_running_loop().create_future()
        self.transport: Optional[asyncio.Transport] = None
        self.buffer = bytearray()
        self.eof = False
        self.listener: Optional["EventDrivenBackend"] = None
        self._reader = _HeadReader()
        self._high_water = high_water
        self._paused = False

    def connection_made(self, transport):
        self.transport = transport

    def request(self, method: str, target: str, headers) -> bytes:
        return self._reader.request(method, target, headers)

    def data_received(self, data: bytes) -> None:
        if not self.head.done():
            try:
                parsed = self._reader.feed(data)
            except OpenError as e:
                self._fail_head(e)
                return
            if parsed is None:
                return
            head, data = parsed
            self.head.set_result(head)
            if not data:
                return

        self.buffer += data
        if len(self.buffer) > self._high_water and not self._paused:
            self.transport.pause_reading()
            self._paused = True
        if self.listener is not None:
            self.listener._on_bytes_available(len(self.buffer))

    def eof_received(self):
        self.eof = True
        if not self.head.done():
            self.head.set_exception(OpenError("Connection closed before the response head arrived"))
        elif self.listener is not None:
            self.listener._on_end_encountered()
        return False

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not self.head.done():
            self.head.set_exception(OpenError(f"Connection lost before the response head arrived: {exc}"))
        elif exc is not None:
            if self.listener is not None:
                self.listener._on_error_occurred(exc)
        elif not self.eof:
            # TLS transports may drop without a separate EOF notification
            self.eof = True
            if self.listener is not None:
                self.listener._on_end_encountered()

    def _fail_head(self, error: Exception) -> None:
        self.head.set_exception(error)
        self.transport.abort()

    def take(self, quantum: int) -> bytes:
        data = bytes(self.buffer[:quantum])
        del self.buffer[:quantum]
        if self._paused and len(self.buffer) <= self._high_water and not self.transport.is_closing():
            self.transport.resume_reading()
            self._paused = False
        return data


class EventDrivenBackend:
    """HTTP read channel driven by readiness events on a shared loop thread.

    Certificate-chain and hostname validation for https URLs is switched off
    only when constructed with ``validate_certificates=False``; the server's
    identity is then not verified.
    """

    def __init__(self, loop_thread: EventLoopThread, *, validate_certificates: bool = True):
        self._loop_thread = loop_thread
        self.validate_certificates = validate_certificates
        self.bytes_read = 0  # running total
        self.reads_made = 0
        self._target: Optional[StreamTarget] = None
        self._emit: Optional[EventSink] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._transport: Optional[asyncio.BaseTransport] = None
        self._channel: Optional[_ReadChannel] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._channel is not None and not self._closed

    def open(self, target: StreamTarget, emit: EventSink) -> None:
        if self._emit is not None or self._closed:
            raise OpenError("Backend channel can only be opened once")
        try:
            self._prepare(target.url)
        except (requests.RequestException, ValueError) as e:
            raise OpenError(f"Cannot prepare request for {target.url}: {e}") from e

        if not self.validate_certificates:
            logger.warning("Certificate validation disabled for %s; server identity is not verified",
                           target.url)
        self._target = target
        self._emit = emit
        try:
            self._connect_task = self._loop_thread.call(self._spawn, target.url)
        except RuntimeError as e:
            self._emit = None
            raise OpenError(f"Event loop unavailable: {e}") from e

    def _spawn(self, url: str) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(self._establish(url))

    def _prepare(self, url: str) -> requests.PreparedRequest:
        headers = requests.utils.default_headers()
        headers.update({"Accept-Encoding": "identity", "Connection": "close"})
        prepared = requests.Request("GET", url, headers=headers).prepare()
        parts = urlparse(prepared.url)
        if parts.scheme not in _DEFAULT_PORTS:
            raise requests.exceptions.InvalidSchema(f"Unsupported URL scheme: {parts.scheme!r}")
        prepared.headers = CaseInsensitiveDict(
            [("Host", parts.netloc.rpartition("@")[2]), *prepared.headers.items()]
        )
        return prepared

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=certs.where())
        if not self.validate_certificates:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _establish(self, url: str) -> None:
        try:
            for _ in range(DEFAULT_REDIRECT_LIMIT + 1):
                channel = await self._connect(url)
                head = await channel.head
                if not head.is_redirect:
                    break
                channel.transport.close()
                url = urljoin(url, head.headers["location"])
                self._notify(StreamEvent(StreamStatus.REDIRECTED, detail=url))
            else:
                raise requests.TooManyRedirects(f"Exceeded {DEFAULT_REDIRECT_LIMIT} redirects")
        except (OSError, ValueError, requests.RequestException) as e:
            # OpenError and ssl.SSLError are OSErrors too
            self._drop_transport()
            self._notify(StreamEvent(StreamStatus.ERROR, error=e, detail=str(e)))
            return

        self._channel = channel
        channel.listener = self
        self._notify(StreamEvent(StreamStatus.OPENED, detail=f"HTTP {head.status} {head.reason}".rstrip()))
        if channel.buffer:
            self._on_bytes_available(len(channel.buffer))
        if channel.eof:
            self._on_end_encountered()

    async def _connect(self, url: str) -> _ReadChannel:
        loop = asyncio.get_running_loop()
        prepared = self._prepare(url)
        parts = urlparse(prepared.url)
        secure = parts.scheme == "https"
        host, port = parts.hostname, parts.port or _DEFAULT_PORTS[parts.scheme]
        proxy = select_proxy(prepared.url, get_environ_proxies(prepared.url))
        channel = _ReadChannel(self._target.read_quantum)

        if proxy is None:
            logger.debug("Connecting to %s:%s", host, port)
            self._transport, _ = await loop.create_connection(
                lambda: channel, host, port,
                ssl=self._ssl_context() if secure else None,
                server_hostname=host if secure else None,
            )
            request_target = prepared.path_url
        else:
            proxy_parts = urlparse(proxy if "://" in proxy else f"http://{proxy}")
            if not proxy_parts.hostname:
                raise requests.exceptions.InvalidProxyURL(f"Invalid proxy URL: {proxy!r}")
            proxy_auth = HTTPProxyAuth(*get_auth_from_url(proxy)) if proxy_parts.username else None
            logger.debug("Connecting to %s:%s via proxy %s", host, port, proxy_parts.hostname)
            if secure:
                channel = await self._tunnel(proxy_parts, proxy_auth, f"{host}:{port}", host)
                request_target = prepared.path_url
            else:
                self._transport, _ = await loop.create_connection(
                    lambda: channel, proxy_parts.hostname, proxy_parts.port or 80
                )
                request_target = prepared.url
                if proxy_auth is not None:
                    proxy_auth(prepared)

        channel.transport.write(channel.request("GET", request_target, prepared.headers))
        return channel

    async def _tunnel(self, proxy_parts, proxy_auth, authority: str, host: str) -> _ReadChannel:
        """Open a CONNECT tunnel through the proxy and upgrade it to TLS."""
        loop = asyncio.get_running_loop()
        connect_channel = _ReadChannel(MAX_HEAD_BYTES)
        self._transport, _ = await loop.create_connection(
            lambda: connect_channel, proxy_parts.hostname, proxy_parts.port or 80
        )
        tunnel = requests.PreparedRequest()
        tunnel.prepare_headers({"Host": authority})
        if proxy_auth is not None:
            proxy_auth(tunnel)
        self._transport.write(connect_channel.request("CONNECT", authority, tunnel.headers))

        head = await connect_channel.head
        if not 200 <= head.status < 300:
            raise requests.exceptions.ProxyError(
                f"Proxy refused tunnel to {authority}: {head.status} {head.reason}"
            )
        channel = _ReadChannel(self._target.read_quantum)
        self._transport = await loop.start_tls(
            self._transport, channel, self._ssl_context(), server_hostname=host
        )
        channel.connection_made(self._transport)
        return channel

    def _drop_transport(self) -> None:
        if self._transport is not None:
            self._transport.abort()
        self._transport = None
        self._channel = None

    # --- events, always on the loop thread; nothing is emitted once closed ---
    def _notify(self, event: StreamEvent) -> None:
        if not self._closed:
            self._emit(event)

    def _on_bytes_available(self, buffered: int) -> None:
        self._notify(StreamEvent(StreamStatus.BYTES_AVAILABLE, count=buffered))

    def _on_end_encountered(self) -> None:
        self._notify(StreamEvent(StreamStatus.END_OF_STREAM))

    def _on_error_occurred(self, exc: Exception) -> None:
        error = ReadError(f"Transport error: {exc}")
        error.__cause__ = exc
        self._notify(StreamEvent(StreamStatus.ERROR, error=error, detail=str(error)))

    # --- pull side ---
    def read(self, quantum: int) -> "Future[ReadResult]":
        """Return up to `quantum` buffered bytes without waiting."""
        if quantum <= 0:
            raise ValueError("quantum must be positive")
        if self._closed or self._emit is None:
            return completed(ReadResult(0))
        try:
            return completed(self._loop_thread.call(self._read_now, quantum))
        except RuntimeError as e:
            return completed(ReadResult(0, error=ReadError(f"Event loop unavailable: {e}")))

    def _read_now(self, quantum: int) -> ReadResult:
        channel = self._channel
        if self._closed or channel is None:
            return ReadResult(0)
        data = channel.take(quantum)
        self.reads_made += 1
        self.bytes_read += len(data)
        return ReadResult(len(data), data, at_end_of_stream=channel.eof and not channel.buffer)

    def close(self) -> "Future[None]":
        """Deregister from the loop and release the channel. Idempotent."""
        if self._closed:
            return completed()
        self._closed = True
        if self._emit is not None:
            try:
                self._loop_thread.call(self._close_now)
            except RuntimeError as e:
                logger.warning("Event loop gone before channel close: %s", e)
        return completed()

    def _close_now(self) -> None:
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        self._drop_transport()
