"""Adapters turning external asynchronous work into suspension operations.

Every operation here accepts a Continuation and invokes it exactly once,
possibly from another thread. Where the underlying work supports it,
cancelling the suspended task cancels the work too.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from concurrent.futures import CancelledError, Executor, Future
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from costep.continuation import Continuation
    from costep.executor import AsyncExecutor
    from costep.machine import Operation
    from costep.scheduler import Scheduler


def completed(value: Any = None) -> Operation:
    """Resume immediately with ``value``."""

    def operation(k: Continuation) -> None:
        k.resume(value)

    return operation


def failed(error: BaseException) -> Operation:
    """Resume immediately with ``error``."""

    def operation(k: Continuation) -> None:
        k.resume_with_error(error)

    return operation


def delay(scheduler: Scheduler, seconds: float) -> Operation:
    """Resume with ``None`` after ``seconds`` on ``scheduler``'s clock."""
    return scheduler.delay(seconds)


def from_future(future: Future[Any]) -> Operation:
    """Resume with the outcome of a ``concurrent.futures.Future``."""

    def operation(k: Continuation) -> None:
        def on_done(done: Future[Any]) -> None:
            try:
                value = done.result()
            except CancelledError:
                if not k.cancelled:
                    k.resume_with_error(CancelledError())
                return
            except BaseException as exc:
                k.resume_with_error(exc)
                return
            k.resume(value)

        k.add_cancel_callback(future.cancel)
        future.add_done_callback(on_done)

    return operation


def in_thread(executor: Executor, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Operation:
    """Run blocking ``fn`` on ``executor`` and resume with its return value."""

    def operation(k: Continuation) -> None:
        from_future(executor.submit(fn, *args, **kwargs))(k)

    return operation


def from_awaitable(executor: AsyncExecutor, awaitable: Awaitable[Any]) -> Operation:
    """Await ``awaitable`` on an AsyncExecutor's event loop."""

    def operation(k: Continuation) -> None:
        future = executor.submit(awaitable, k.resume, k.resume_with_error)
        k.add_cancel_callback(future.cancel)

    return operation


__all__ = [
    "completed",
    "delay",
    "failed",
    "from_awaitable",
    "from_future",
    "in_thread",
]
