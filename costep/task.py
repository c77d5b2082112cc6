"""Per-coroutine task record and the handle given to callers.

This module provides:
- TaskStatus: Created, Ready, Running, Suspended, Completed, Failed, Cancelled
- Task: label + captured locals + status, driven one step at a time
- TaskHandle: status query, cancellation, and join for callers
"""

from __future__ import annotations

import weakref
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from costep._vendor import Result
from costep.errors import InvalidTaskStateError
from costep.types import Context, Locals, TaskId, empty_context

if TYPE_CHECKING:
    from costep.continuation import Continuation
    from costep.machine import Operation, StateMachine
    from costep.scheduler import Scheduler
    from costep.scope import Scope


# ============================================================================
# Task Status
# ============================================================================


class TaskStatus(Enum):
    """Lifecycle status of a task."""

    CREATED = auto()
    """Task exists but has not been submitted."""

    READY = auto()
    """Task is queued for its next step."""

    RUNNING = auto()
    """A worker is executing one of the task's steps."""

    SUSPENDED = auto()
    """Task handed a continuation to an external operation and is waiting."""

    COMPLETED = auto()
    """Task reached its terminal label with a value."""

    FAILED = auto()
    """A step raised, or the task violated the step protocol."""

    CANCELLED = auto()
    """Task observed cancellation at a step boundary."""

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


# ============================================================================
# Task
# ============================================================================


class Task:
    """Explicit state record of one coroutine.

    Mutable fields are only changed by the scheduler while it holds its lock,
    and a task is never stepped by two workers at once.
    """

    def __init__(
        self,
        program: StateMachine,
        scope: Scope,
        scheduler: Scheduler,
        *,
        name: str | None = None,
        locals: Locals | None = None,
        context: Context | None = None,
    ) -> None:
        self.id = TaskId.new()
        self.machine = program
        self.name = name or program.name
        self.label = 0
        self.locals: Locals = dict(locals or {})
        self.status = TaskStatus.CREATED
        self.scheduler = scheduler
        self.context: Context = context if context is not None else empty_context()
        self.cancel_requested = False
        self.result: Result[Any] | None = None
        self.trace: list[int] | None = [] if scheduler.config.debug else None
        self.continuation: Continuation | None = None
        self._scope_ref = weakref.ref(scope)
        self._done_callbacks: list[Callable[[Task], None]] = []
        # Set by the scheduler between a resumption and the step that consumes it.
        self._delivered: Result[Any] | None = None
        self._catch = False
        # Protocol violation detected while the task was running.
        self._fault: BaseException | None = None

    @property
    def scope(self) -> Scope | None:
        return self._scope_ref()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def add_done_callback(self, callback: Callable[[Task], None]) -> None:
        """Run ``callback(task)`` once the task is terminal (immediately if it already is)."""
        with self.scheduler._lock:
            if not self.status.is_terminal:
                self._done_callbacks.append(callback)
                return
        callback(self)

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.name!r} label={self.label} {self.status.name}>"


# ============================================================================
# Task Handle
# ============================================================================


@dataclass(frozen=True)
class TaskHandle:
    """Handle returned when a task is launched."""

    _task: Task

    @property
    def task_id(self) -> TaskId:
        return self._task.id

    @property
    def name(self) -> str:
        return self._task.name

    @property
    def status(self) -> TaskStatus:
        return self._task.status

    @property
    def done(self) -> bool:
        return self._task.is_terminal

    @property
    def result(self) -> Result[Any] | None:
        return self._task.result

    @property
    def trace(self) -> tuple[int, ...]:
        """Labels executed so far (recorded only when the scheduler runs in debug mode)."""
        return tuple(self._task.trace or ())

    def value(self) -> Any:
        """Return the task's value, or raise its failure."""
        result = self._task.result
        if result is None:
            raise InvalidTaskStateError(
                f"Task has no result yet (status {self._task.status.name})", self._task.id
            )
        return result.unwrap()

    def cancel(self) -> bool:
        """Request cooperative cancellation. Returns False if the task already finished."""
        return self._task.scheduler.cancel_task(self._task)

    def add_done_callback(self, callback: Callable[[TaskHandle], None]) -> None:
        self._task.add_done_callback(lambda _task: callback(self))

    def join(self) -> Operation:
        """Operation resuming with the task's value (or its failure)."""

        def operation(k: Continuation) -> None:
            def on_done(task: Task) -> None:
                assert task.result is not None
                error = task.result.err()
                if error is not None:
                    k.resume_with_error(error)
                else:
                    k.resume(task.result.ok())

            self._task.add_done_callback(on_done)

        return operation

    def __str__(self) -> str:
        return f"TaskHandle({self._task.id})"


__all__ = [
    "Task",
    "TaskHandle",
    "TaskStatus",
]
