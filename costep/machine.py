"""Explicit state machines standing in for compiler-generated suspend functions.

A coroutine body is written as an ordered table of step functions. The
position of a step in the table is its label; ``len(steps)`` is the terminal
label. Each step receives a :class:`StepContext` and returns an outcome:

- ``Continue(label=None)``: local computation done, go to the next (or a
  later) label. Returning ``None`` is the same as ``Continue()``.
- ``Suspend(operation, resume_at=None, catch=False)``: hand a fresh
  continuation to ``operation`` and yield the worker.
- ``Complete(value)``: finish the task with ``value``.

Example::

    def fetch(ctx):
        return ctx.suspend(http_get(ctx.locals["url"]))

    def parse(ctx):
        ctx.locals["body"] = ctx.resumed
        return ctx.suspend(decode(ctx.locals["body"]))

    def finish(ctx):
        return ctx.complete(ctx.resumed)

    program = machine(fetch, parse, finish, name="fetch-and-parse")
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias

from costep._vendor import Ok, Result
from costep.errors import InvalidTaskStateError
from costep.types import RESUME_SLOT, Context, Locals

if TYPE_CHECKING:
    from costep.continuation import Continuation
    from costep.scheduler import Scheduler
    from costep.scope import Scope
    from costep.task import Task, TaskHandle


# An external asynchronous operation: must invoke the continuation exactly once.
Operation: TypeAlias = Callable[["Continuation"], None]


# ============================================================================
# Step Outcomes
# ============================================================================


@dataclass(frozen=True)
class Continue:
    """Move to ``label`` (default: the next one) and yield the worker."""

    label: int | None = None


@dataclass(frozen=True)
class Suspend:
    """Suspend until ``operation`` invokes its continuation.

    The task resumes at ``resume_at`` (default: the next label). With
    ``catch=True`` a delivered error is handed to that step as ``Err``
    instead of failing the task.
    """

    operation: Operation
    resume_at: int | None = None
    catch: bool = False


@dataclass(frozen=True)
class Complete:
    """Finish the task with ``value``."""

    value: Any = None


Outcome: TypeAlias = Continue | Suspend | Complete

StepFn: TypeAlias = Callable[["StepContext"], "Outcome | None"]


# ============================================================================
# State Machine
# ============================================================================


class StateMachine:
    """Label-indexed dispatch table for one coroutine body."""

    def __init__(self, steps: Sequence[StepFn], name: str | None = None) -> None:
        if not steps:
            raise ValueError("A state machine needs at least one step")
        self._steps: tuple[StepFn, ...] = tuple(steps)
        self.name = name or getattr(self._steps[0], "__name__", "machine")

    @property
    def final_label(self) -> int:
        """The terminal label; reaching it completes the task."""
        return len(self._steps)

    def step_at(self, label: int) -> StepFn:
        if not 0 <= label < len(self._steps):
            raise InvalidTaskStateError(f"No step at label {label} in {self.name!r}")
        return self._steps[label]

    def __len__(self) -> int:
        return len(self._steps)

    def __repr__(self) -> str:
        return f"StateMachine({self.name!r}, labels={len(self._steps)})"


def machine(*steps: StepFn, name: str | None = None) -> StateMachine:
    """Build a StateMachine whose labels follow the argument order."""
    return StateMachine(steps, name=name)


# ============================================================================
# Step Context
# ============================================================================


class StepContext:
    """Everything one step may touch, passed explicitly.

    Nothing here is thread-local: the owning scope, scheduler, ambient
    context and cancellation flag all travel with the step invocation.
    """

    __slots__ = ("task", "scope", "scheduler")

    def __init__(self, task: Task, scope: Scope, scheduler: Scheduler) -> None:
        self.task = task
        self.scope = scope
        self.scheduler = scheduler

    @property
    def label(self) -> int:
        return self.task.label

    @property
    def locals(self) -> Locals:
        return self.task.locals

    @property
    def context(self) -> Context:
        return self.task.context

    @property
    def cancelled(self) -> bool:
        return self.task.cancel_requested

    @property
    def outcome(self) -> Result[Any]:
        """The raw Result delivered by the last resumption (``Ok(None)`` if none)."""
        return self.task.locals.get(RESUME_SLOT, Ok(None))

    @property
    def resumed(self) -> Any:
        """The value delivered by the last resumption; raises a delivered error."""
        return self.outcome.unwrap()

    def suspend(
        self,
        operation: Operation,
        resume_at: int | None = None,
        catch: bool = False,
    ) -> Suspend:
        return Suspend(operation, resume_at, catch)

    def complete(self, value: Any = None) -> Complete:
        return Complete(value)

    def goto(self, label: int) -> Continue:
        return Continue(label)

    def delay(self, seconds: float, resume_at: int | None = None) -> Suspend:
        """Suspend for ``seconds`` on the scheduler's clock."""
        return Suspend(self.scheduler.delay(seconds), resume_at)

    def join(
        self,
        target: TaskHandle | Scope,
        resume_at: int | None = None,
        catch: bool = False,
    ) -> Suspend:
        """Suspend until a task or scope finishes; resumes with its value."""
        return Suspend(target.join(), resume_at, catch)

    def launch(
        self,
        program: StateMachine,
        *,
        name: str | None = None,
        locals: Locals | None = None,
        context: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> TaskHandle:
        """Launch a sibling task into this step's owning scope."""
        return self.scope.launch(program, name=name, locals=locals, context=context, timeout=timeout)


__all__ = [
    "Complete",
    "Continue",
    "Operation",
    "Outcome",
    "StateMachine",
    "StepContext",
    "StepFn",
    "Suspend",
    "machine",
]
