"""Async executor protocols and implementations for awaiting asyncio work from tasks."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from typing import Any, Protocol, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class AsyncExecutor(Protocol):
    def submit(
        self,
        awaitable: Awaitable[T],
        on_success: Callable[[T], None],
        on_error: Callable[[BaseException], None],
    ) -> Future[Any]: ...

    def shutdown(self) -> None: ...


class ThreadedAsyncioExecutor:
    """Runs asyncio awaitables on an event loop in a background thread.

    Callbacks are invoked on the loop thread; continuations are safe to
    resume from there because the scheduler serialises resumption.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()
        self._lock = threading.Lock()
        self._shutdown = False

    def _run_loop(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._started.set()
        self._loop.run_forever()
        self._loop.close()

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("Executor has been shut down")
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run_loop, name="costep-asyncio", daemon=True
                )
                self._thread.start()
        self._started.wait()
        assert self._loop is not None
        return self._loop

    def submit(
        self,
        awaitable: Awaitable[T],
        on_success: Callable[[T], None],
        on_error: Callable[[BaseException], None],
    ) -> Future[Any]:
        """Schedule ``awaitable``; returns a future that can be cancelled."""
        loop = self._ensure_started()

        async def wrapper() -> None:
            try:
                result = await awaitable
            except asyncio.CancelledError:
                logger.debug("Awaitable %r cancelled", awaitable)
                raise
            except BaseException as e:
                on_error(e)
                return
            on_success(result)

        return asyncio.run_coroutine_threadsafe(wrapper(), loop)

    def shutdown(self) -> None:
        with self._lock:
            if self._loop is None or self._shutdown:
                self._shutdown = True
                return
            self._shutdown = True
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def __enter__(self) -> ThreadedAsyncioExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


__all__ = [
    "AsyncExecutor",
    "ThreadedAsyncioExecutor",
]
