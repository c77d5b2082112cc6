"""Structured-concurrency scopes.

A Scope owns the tasks launched into it and any nested scopes. It is not
complete until every owned task is terminal and every nested scope is
complete. Cancelling a scope cancels everything beneath it.

Failure policy:
- FAIL_FAST: the first failed child cancels its siblings; join() then
  resolves with that failure once everything has stopped.
- WAIT_ALL: children run to the end; failures are reported together.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from costep._vendor import Err, Ok, Result
from costep.errors import ChildFailureError, InvalidTaskStateError, ScopeClosedError
from costep.task import Task, TaskHandle, TaskStatus
from costep.types import Context, Locals, ScopeId, TaskId, empty_context, merge_context

if TYPE_CHECKING:
    from costep.continuation import Continuation
    from costep.machine import Operation, StateMachine
    from costep.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class CompletionPolicy(Enum):
    """How a scope reacts to a failed child."""

    FAIL_FAST = auto()
    """Cancel siblings on the first failure and report it."""

    WAIT_ALL = auto()
    """Let every child finish, then report all failures together."""


class Scope:
    """Lifetime boundary owning a set of tasks and nested scopes."""

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        policy: CompletionPolicy = CompletionPolicy.FAIL_FAST,
        parent: Scope | None = None,
        name: str | None = None,
        context: dict[str, Any] | Context | None = None,
    ) -> None:
        self.id = ScopeId.new()
        self.scheduler = scheduler
        self.policy = policy
        self.name = name or str(self.id)
        base = parent.context if parent is not None else empty_context()
        self.context: Context = merge_context(base, context)
        self._parent_ref = weakref.ref(parent) if parent is not None else None
        self._lock = threading.RLock()
        self._tasks: list[Task] = []
        self._children: list[Scope] = []
        self._failures: list[tuple[TaskId | ScopeId, BaseException]] = []
        self._failed_children: set[ScopeId] = set()
        # Owned tasks not yet terminal plus nested scopes not yet complete.
        self._pending = 0
        # Set once a joiner has taken delivery of the outcome.
        self._observed = False
        self._cancelled = False
        self._closed = False
        self._done_callbacks: list[Callable[[Scope], None]] = []
        if parent is not None:
            parent._adopt(self)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def parent(self) -> Scope | None:
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def tasks(self) -> tuple[TaskHandle, ...]:
        with self._lock:
            return tuple(TaskHandle(task) for task in self._tasks)

    @property
    def children(self) -> tuple[Scope, ...]:
        with self._lock:
            return tuple(self._children)

    @property
    def failures(self) -> tuple[tuple[TaskId | ScopeId, BaseException], ...]:
        with self._lock:
            return tuple(self._failures)

    @property
    def is_complete(self) -> bool:
        """True once every owned task is terminal and every nested scope is complete."""
        with self._lock:
            return self._pending == 0

    def outcome(self) -> Result[list[Any]] | None:
        """None while incomplete; otherwise child values in launch order or the aggregate failure."""
        if not self.is_complete:
            return None
        with self._lock:
            failures = tuple(self._failures)
            tasks = list(self._tasks)
        if failures:
            error = ChildFailureError(self.id, failures)
            error.__cause__ = failures[0][1]
            return Err(error)
        return Ok([task.result.ok() if task.result is not None else None for task in tasks])

    # ------------------------------------------------------------------
    # Launching
    # ------------------------------------------------------------------

    def launch(
        self,
        program: StateMachine,
        *,
        name: str | None = None,
        locals: Locals | None = None,
        context: dict[str, Any] | Context | None = None,
        timeout: float | None = None,
    ) -> TaskHandle:
        """Create a task owned by this scope and submit it. Never blocks."""
        task = Task(
            program,
            self,
            self.scheduler,
            name=name,
            locals=locals,
            context=merge_context(self.context, context),
        )
        with self._lock:
            if self._closed:
                raise ScopeClosedError(f"Cannot launch into closed scope {self.name!r}")
            self._tasks.append(task)
            self._open_locked()
            if self._cancelled:
                task.cancel_requested = True
        task.add_done_callback(self._on_task_done)
        self.scheduler.submit(task)
        handle = TaskHandle(task)
        if timeout is not None:
            timer = self.scheduler.call_later(timeout, handle.cancel)
            task.add_done_callback(lambda _task: timer.cancel())
        logger.debug("%s launched %s (%s)", self.name, task.id, task.name)
        return handle

    def child(
        self,
        *,
        policy: CompletionPolicy | None = None,
        name: str | None = None,
        context: dict[str, Any] | Context | None = None,
    ) -> Scope:
        """Create a nested scope that is cancelled with this one."""
        return Scope(
            self.scheduler,
            policy=policy or self.policy,
            parent=self,
            name=name,
            context=context,
        )

    def _adopt(self, child: Scope) -> None:
        # An empty nested scope is complete; it counts as pending once it has work.
        with self._lock:
            if self._closed:
                raise ScopeClosedError(f"Cannot open a scope inside closed scope {self.name!r}")
            self._children.append(child)
            cancelled = self._cancelled
        if cancelled:
            child.cancel()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel every task and nested scope beneath this scope."""
        with self._lock:
            self._cancelled = True
            tasks = list(self._tasks)
            children = list(self._children)
        logger.debug("Cancelling %s (%d task(s), %d scope(s))", self.name, len(tasks), len(children))
        for task in tasks:
            self.scheduler.cancel_task(task)
        for child in children:
            child.cancel()

    def cancel_after(self, seconds: float) -> TimerHandle:
        """Schedule a timer-driven cancellation of this scope."""
        return self.scheduler.call_later(seconds, self.cancel)

    def close(self) -> None:
        """Refuse further launches here and in nested scopes."""
        with self._lock:
            self._closed = True
            children = list(self._children)
        for child in children:
            child.close()

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def add_done_callback(self, callback: Callable[[Scope], None]) -> None:
        """Run ``callback(scope)`` once the scope is complete (immediately if it is)."""
        with self._lock:
            if self._pending:
                self._done_callbacks.append(callback)
                return
        callback(self)

    def join(self) -> Operation:
        """Operation resuming once the scope is complete.

        Resumes with the list of child values, or with ChildFailureError.
        A task may not join a scope that (transitively) owns it. A joiner
        cancelled before completion does not take delivery, so a failure
        still reaches the parent scope.
        """

        def operation(k: Continuation) -> None:
            if self._owns(k.task):
                raise InvalidTaskStateError(f"Task cannot join its own scope {self.name!r}", k.task.id)

            def on_done(scope: Scope) -> None:
                if k.cancelled or k.task.cancel_requested:
                    return
                result = scope.outcome()
                if result is None:
                    # A launch re-opened the scope after it completed.
                    scope.add_done_callback(on_done)
                    return
                scope._observed = True
                error = result.err()
                if error is not None:
                    k.resume_with_error(error)
                else:
                    k.resume(result.ok())

            self.add_done_callback(on_done)

        return operation

    def _owns(self, task: Task) -> bool:
        scope = task.scope
        while scope is not None:
            if scope is self:
                return True
            scope = scope.parent
        return False

    def _open_locked(self) -> None:
        # Lock order is always nested scope before parent.
        self._pending += 1
        if self._pending == 1:
            parent = self.parent
            if parent is not None:
                with parent._lock:
                    parent._open_locked()

    def _settle_locked(self, settled: list[Scope]) -> None:
        self._pending -= 1
        if self._pending == 0:
            settled.append(self)
            parent = self.parent
            if parent is not None:
                with parent._lock:
                    parent._settle_locked(settled)

    def _on_task_done(self, task: Task) -> None:
        settled: list[Scope] = []
        trigger = False
        with self._lock:
            if task.status is TaskStatus.FAILED:
                assert task.result is not None
                self._failures.append((task.id, task.result.err()))
                trigger = self.policy is CompletionPolicy.FAIL_FAST and len(self._failures) == 1
            self._settle_locked(settled)
        if trigger:
            logger.debug("%s failed fast on %s", self.name, task.id)
            self.cancel()
        _finish_settled(settled)

    def _on_child_scope_done(self, child: Scope) -> None:
        result = child.outcome()
        error = result.err() if result is not None else None
        trigger = False
        if error is not None and not child._observed:
            with self._lock:
                if child.id not in self._failed_children:
                    self._failed_children.add(child.id)
                    self._failures.append((child.id, error))
                    trigger = self.policy is CompletionPolicy.FAIL_FAST and len(self._failures) == 1
        if trigger:
            logger.debug("%s failed fast on nested %s", self.name, child.name)
            self.cancel()

    def _run_done_callbacks(self) -> None:
        with self._lock:
            callbacks, self._done_callbacks = self._done_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Done callback for %s failed", self.name)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> Scope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Scope {self.name!r} {self.policy.name} tasks={len(self._tasks)}>"


def _finish_settled(settled: list[Scope]) -> None:
    """Run completion for scopes that just settled, innermost first.

    A scope's joiners run before its parent records the outcome, so a
    delivered failure is not counted twice.
    """
    for scope in settled:
        scope._run_done_callbacks()
        parent = scope.parent
        if parent is not None:
            parent._on_child_scope_done(scope)


__all__ = [
    "CompletionPolicy",
    "Scope",
]
