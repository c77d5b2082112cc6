"""Runtime error types."""

from __future__ import annotations

from enum import Enum, auto
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from costep.types import ScopeId, TaskId


class ErrorKind(Enum):
    """Classification of runtime errors."""

    DOUBLE_RESUME = auto()
    """A continuation was invoked more than once."""

    INVALID_TASK_STATE = auto()
    """A step was invoked out of turn or a label moved backwards."""

    CANCELLED = auto()
    """A task observed cancellation at a step boundary."""

    CHILD_FAILURE = auto()
    """A scope's descendant failed."""

    SCOPE_CLOSED = auto()
    """A task was launched into a scope whose builder already returned."""


class CostepError(Exception):
    """Base class for all runtime errors."""

    kind: ClassVar[ErrorKind]


class DoubleResumeError(CostepError):
    """Recorded when a continuation is resumed a second time.

    Continuations are single-shot: the first delivery re-enqueues the task,
    every later delivery is a protocol violation by the external operation.

    Attributes:
        task_id: The task owning the continuation.
        label: The label the continuation was bound to.
    """

    kind = ErrorKind.DOUBLE_RESUME

    def __init__(self, task_id: TaskId, label: int) -> None:
        self.task_id = task_id
        self.label = label
        super().__init__(f"Continuation of {task_id} at label {label} was resumed twice")


class InvalidTaskStateError(CostepError):
    """Raised when a task is driven in a way its current state does not allow."""

    kind = ErrorKind.INVALID_TASK_STATE

    def __init__(self, message: str, task_id: TaskId | None = None) -> None:
        self.task_id = task_id
        super().__init__(message if task_id is None else f"{task_id}: {message}")


class TaskCancelledError(CostepError):
    """Recorded as the result of a task that observed cancellation."""

    kind = ErrorKind.CANCELLED

    def __init__(self, task_id: TaskId | None = None) -> None:
        self.task_id = task_id
        super().__init__("Task was cancelled" if task_id is None else f"{task_id} was cancelled")


class ChildFailureError(CostepError):
    """Aggregate failure of a scope's children.

    Attributes:
        scope_id: The scope that collected the failures.
        failures: ``(owner id, exception)`` pairs in the order they were observed.
            The owner is a TaskId for a failed task or a ScopeId for a failed
            child scope.
    """

    kind = ErrorKind.CHILD_FAILURE

    def __init__(
        self,
        scope_id: ScopeId,
        failures: tuple[tuple[TaskId | ScopeId, BaseException], ...],
    ) -> None:
        self.scope_id = scope_id
        self.failures = failures
        summary = ", ".join(f"{owner}: {exc!r}" for owner, exc in failures)
        super().__init__(f"{len(failures)} child failure(s) in {scope_id}: {summary}")

    @property
    def first(self) -> BaseException:
        return self.failures[0][1]


class ScopeClosedError(CostepError):
    """Raised when launching into a scope that has been closed."""

    kind = ErrorKind.SCOPE_CLOSED


__all__ = [
    "ChildFailureError",
    "CostepError",
    "DoubleResumeError",
    "ErrorKind",
    "InvalidTaskStateError",
    "ScopeClosedError",
    "TaskCancelledError",
]
