"""Single-shot continuation handed to external operations at a suspension point."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from costep._vendor import Err, Ok, Result
from costep.errors import DoubleResumeError

if TYPE_CHECKING:
    from costep.scheduler import Scheduler
    from costep.task import Task

logger = logging.getLogger(__name__)


class Continuation:
    """Suspended task that can be resumed once (single-shot).

    A continuation is created when a task suspends and is bound to the label
    the task resumes at. The external operation must invoke it exactly once,
    from any thread, with either a value or an error.

    - Not invoking it leaves the task suspended forever.
    - Invoking it twice never re-runs a step: the scheduler records a
      DoubleResumeError fault and fails the task if it is still running.
      The invoker is not interrupted.
    - Invoking it after the task was cancelled is accepted and ignored.
    """

    def __init__(
        self,
        task: Task,
        resume_label: int,
        scheduler: Scheduler,
        catch: bool = False,
    ) -> None:
        self.task = task
        self.resume_label = resume_label
        self.catch = catch
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._consumed = False
        self._cancelled = False
        self._cancel_callbacks: list[Callable[[], None]] = []

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def resume(self, value: Any = None) -> None:
        """Resume the task with a value."""
        self._deliver(Ok(value))

    def resume_with_error(self, error: BaseException) -> None:
        """Resume the task with an error, raised at its resumption point."""
        self._deliver(Err(error))

    def __call__(self, result: Any = None, error: BaseException | None = None) -> None:
        """Callback form: ``k(result)`` or ``k(None, error)``."""
        if error is not None:
            self.resume_with_error(error)
        else:
            self.resume(result)

    def add_cancel_callback(self, callback: Callable[[], None]) -> None:
        """Register a best-effort hook run if the task is cancelled while suspended."""
        with self._lock:
            if not self._cancelled:
                self._cancel_callbacks.append(callback)
                return
        callback()

    def _deliver(self, outcome: Result[Any]) -> None:
        if not self._try_deliver(outcome):
            self._scheduler.fault(self.task, DoubleResumeError(self.task.id, self.resume_label))

    def _try_deliver(self, outcome: Result[Any]) -> bool:
        """Deliver ``outcome`` unless already consumed; returns whether it was delivered."""
        with self._lock:
            if self._consumed:
                return False
            self._consumed = True
        self._scheduler._deliver(self, outcome)
        return True

    def _cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._cancel_callbacks = self._cancel_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback for %s failed", self.task.id)

    def __repr__(self) -> str:
        state = "consumed" if self._consumed else "pending"
        return f"Continuation({self.task.id}, label={self.resume_label}, {state})"


__all__ = ["Continuation"]
