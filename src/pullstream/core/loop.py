"""An asyncio event loop running on one dedicated thread.

Backends never touch the loop from foreign threads directly: they hand work
off through :meth:`EventLoopThread.call` (synchronous) or
:meth:`EventLoopThread.submit` (coroutine, returns a concurrent future).
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventLoopThread:
    """Owns one event loop and the thread that runs it."""

    def __init__(self, name: str = "pullstream-loop"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._stopping = False
        self._lock = threading.Lock()
        self._calls: set = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        self._check_running()
        return self._loop

    @property
    def running(self) -> bool:
        return (self._thread is not None and self._thread.is_alive()
                and not self._stopping)

    def start(self) -> "EventLoopThread":
        with self._lock:
            if self._thread is not None:
                if self._stopping:
                    raise RuntimeError(f"{self.name}: cannot restart a stopped loop thread")
                return self
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        self._ready.wait()
        logger.debug("%s: loop thread started", self.name)
        return self

    def _run(self) -> None:
        loop = self._loop
        asyncio.set_event_loop(loop)
        loop.call_soon(self._ready.set)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            # hand-offs still queued will never run
            with self._lock:
                stranded, self._calls = self._calls, set()
            for future in stranded:
                if not future.done():
                    future.set_exception(RuntimeError(f"{self.name}: event loop stopped"))
            logger.debug("%s: loop closed", self.name)

    def _check_running(self) -> None:
        if not self.running:
            raise RuntimeError(f"{self.name}: event loop thread is not running")

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(*args)`` on the loop thread and return its result.

        Runs inline when already on the loop thread, otherwise blocks the
        caller until the loop has executed it. Exceptions propagate; a call
        the loop never gets to run fails with ``RuntimeError`` once it stops.
        """
        self._check_running()
        if self.in_loop_thread():
            return fn(*args)

        future: concurrent.futures.Future = concurrent.futures.Future()

        def _invoke():
            with self._lock:
                self._calls.discard(future)
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)

        with self._lock:
            self._calls.add(future)
        try:
            self._loop.call_soon_threadsafe(_invoke)
        except RuntimeError:
            with self._lock:
                self._calls.discard(future)
            raise
        return future.result()

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        self._check_running()
        self._loop.call_soon_threadsafe(fn, *args)

    def submit(self, coro: Coroutine[Any, Any, T]) -> "concurrent.futures.Future[T]":
        """Schedule a coroutine on the loop from any thread."""
        try:
            self._check_running()
        except RuntimeError:
            coro.close()
            raise
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def stop(self, wait: bool = True) -> None:
        """Stop the loop; pending tasks are cancelled. Idempotent."""
        with self._lock:
            thread, loop = self._thread, self._loop
            if thread is None or self._stopping:
                return
            self._stopping = True
        if not loop.is_closed():
            loop.call_soon_threadsafe(loop.stop)
        if wait and threading.current_thread() is not thread:
            thread.join()
        logger.debug("%s: loop thread stopped", self.name)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
