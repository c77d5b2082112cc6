"""Cooperative scheduler driving tasks one step at a time.

The Scheduler is the single coordination point for all ready work. It keeps
a FIFO ready queue, a registry of suspended tasks waiting on external
completions, and a timer heap. Every mutation happens under one lock, so
continuations may be resumed from any thread.

With ``workers == 1`` steps run inline on the thread that calls
``run_until_idle``. With more workers, steps of distinct tasks run on a
thread pool; a task is never stepped by two workers at once because it is
only ever queued once.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from costep._vendor import Err, Ok, Result
from costep.config import RuntimeConfig
from costep.continuation import Continuation
from costep.errors import ErrorKind, InvalidTaskStateError, TaskCancelledError
from costep.machine import Complete, Continue, StepContext, Suspend
from costep.task import TaskStatus
from costep.types import RESUME_SLOT, TaskId

if TYPE_CHECKING:
    from costep.machine import Operation, Outcome
    from costep.task import Task

logger = logging.getLogger(__name__)

_REQUEUE = object()


# ============================================================================
# Clocks
# ============================================================================


class Clock(Protocol):
    def now(self) -> float: ...


class MonotonicClock:
    """Wall-clock time in seconds."""

    def now(self) -> float:
        return time.monotonic()


class VirtualClock:
    """Simulated time.

    Time only moves when the scheduler has nothing runnable and jumps
    straight to the next timer, so delays cost no real time.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance_to(self, when: float) -> None:
        if when > self._now:
            self._now = when


# ============================================================================
# Timers and Faults
# ============================================================================


@dataclass(order=True)
class TimerHandle:
    when: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(frozen=True)
class Fault:
    """A protocol violation recorded in the scheduler's fault log."""

    task_id: TaskId
    label: int
    error: BaseException
    at: float

    @property
    def kind(self) -> ErrorKind | None:
        return getattr(self.error, "kind", None)


# ============================================================================
# Scheduler
# ============================================================================


class Scheduler:
    """Single authority deciding which ready task runs next."""

    def __init__(self, config: RuntimeConfig | None = None, *, clock: Clock | None = None) -> None:
        self.config = config or RuntimeConfig()
        if clock is None:
            clock = VirtualClock() if self.config.clock == "virtual" else MonotonicClock()
        self.clock = clock
        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._ready: deque[Task] = deque()
        self._suspended: dict[TaskId, Task] = {}
        self._inflight = 0
        self._timers: list[TimerHandle] = []
        self._timer_seq = itertools.count()
        self._faults: deque[Fault] = deque(maxlen=self.config.fault_log_limit)
        self._draining = False
        self._pool: ThreadPoolExecutor | None = None
        if self.config.workers > 1:
            self._pool = ThreadPoolExecutor(
                max_workers=self.config.workers, thread_name_prefix="costep-worker"
            )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def workers(self) -> int:
        return self.config.workers

    @property
    def faults(self) -> tuple[Fault, ...]:
        with self._lock:
            return tuple(self._faults)

    @property
    def pending_count(self) -> int:
        """Tasks that are ready, running or suspended."""
        with self._lock:
            return len(self._ready) + self._inflight + len(self._suspended)

    def ready_tasks(self) -> tuple[Task, ...]:
        with self._lock:
            return tuple(self._ready)

    def suspended_tasks(self) -> tuple[Task, ...]:
        with self._lock:
            return tuple(self._suspended.values())

    def timer_count(self) -> int:
        with self._lock:
            return sum(1 for timer in self._timers if not timer.cancelled)

    # ------------------------------------------------------------------
    # Submission and resumption
    # ------------------------------------------------------------------

    def submit(self, task: Task) -> None:
        """Queue a newly created task. Submitting a task that is already ready is a no-op."""
        with self._lock:
            if task.status is TaskStatus.READY:
                return
            if task.status is not TaskStatus.CREATED:
                raise InvalidTaskStateError(f"Cannot submit a {task.status.name} task", task.id)
            task.status = TaskStatus.READY
            self._ready.append(task)
            self._wakeup.notify_all()
        logger.debug("Submitted %s (%s)", task.id, task.name)

    def _deliver(self, k: Continuation, outcome: Result[Any]) -> None:
        task = k.task
        with self._lock:
            stale = task.continuation is not k or task.status is not TaskStatus.SUSPENDED
            if not stale:
                del self._suspended[task.id]
                task.continuation = None
                task.label = k.resume_label
                task.locals[RESUME_SLOT] = outcome
                task._delivered = outcome
                task._catch = k.catch
                task.status = TaskStatus.READY
                self._ready.append(task)
                self._wakeup.notify_all()
        if stale:
            if k.cancelled or task.cancel_requested:
                logger.debug("Ignoring late completion for cancelled %s", task.id)
            else:
                logger.warning("Ignoring completion for %s in status %s", task.id, task.status.name)

    def cancel_task(self, task: Task) -> bool:
        """Request cooperative cancellation; returns False if the task already finished.

        The task turns Cancelled on its next step attempt. A suspended task is
        requeued at once so that attempt happens without waiting for its
        external operation, whose late completion is then ignored.
        """
        k = None
        with self._lock:
            if task.status.is_terminal:
                return False
            task.cancel_requested = True
            if task.status is TaskStatus.SUSPENDED:
                del self._suspended[task.id]
                k, task.continuation = task.continuation, None
                task.status = TaskStatus.READY
                self._ready.append(task)
                self._wakeup.notify_all()
        logger.debug("Cancellation requested for %s", task.id)
        if k is not None:
            k._cancel()
        return True

    def fault(self, task: Task, error: BaseException) -> None:
        """Record a protocol violation and fail the offending task.

        Only ``task`` is affected; the queue and registry stay consistent.
        """
        logger.error("Protocol violation in %s at label %d: %s", task.id, task.label, error)
        k = None
        callbacks: list[Callable[[Task], None]] = []
        with self._lock:
            self._faults.append(Fault(task.id, task.label, error, self.clock.now()))
            if task.status.is_terminal:
                return
            if task.status is TaskStatus.RUNNING:
                task._fault = error
                return
            if task.status is TaskStatus.READY:
                try:
                    self._ready.remove(task)
                except ValueError:
                    pass
            elif task.status is TaskStatus.SUSPENDED:
                self._suspended.pop(task.id, None)
                k = task.continuation
            callbacks = self._finish_locked(task, TaskStatus.FAILED, Err(error))
        if k is not None:
            k._cancel()
        self._run_done_callbacks(task, callbacks)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` on the scheduling thread after ``delay`` seconds of clock time."""
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        with self._lock:
            timer = TimerHandle(self.clock.now() + delay, next(self._timer_seq), callback)
            heapq.heappush(self._timers, timer)
            self._wakeup.notify_all()
        return timer

    def delay(self, seconds: float) -> Operation:
        """Operation resuming with ``None`` after ``seconds``."""
        if seconds < 0:
            raise ValueError(f"seconds must be >= 0, got {seconds}")

        def operation(k: Continuation) -> None:
            timer = self.call_later(seconds, k.resume)
            k.add_cancel_callback(timer.cancel)

        return operation

    def _pop_due_timers_locked(self) -> list[TimerHandle]:
        now = self.clock.now()
        due = []
        while self._timers and (self._timers[0].cancelled or self._timers[0].when <= now):
            timer = heapq.heappop(self._timers)
            if not timer.cancelled:
                due.append(timer)
        return due

    def _next_timer_locked(self) -> TimerHandle | None:
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)
        return self._timers[0] if self._timers else None

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run_until_idle(self, timeout: float | None = None) -> None:
        """Step ready tasks until none is ready, running or suspended.

        Args:
            timeout: Wall-clock seconds to wait in total. None waits forever,
                which never returns if a suspended task's continuation is
                never invoked.

        Raises:
            TimeoutError: If ``timeout`` elapsed with tasks still pending.
            RuntimeError: If called while this scheduler is already draining.
        """
        with self._lock:
            if self._draining:
                raise RuntimeError("run_until_idle is not re-entrant")
            self._draining = True
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                with self._lock:
                    due = self._pop_due_timers_locked()
                for timer in due:
                    try:
                        timer.callback()
                    except Exception:
                        logger.exception("Timer callback %r failed", timer.callback)
                with self._lock:
                    task = self._next_ready_locked()
                    if task is None:
                        if self._is_idle_locked():
                            return
                        self._wait_locked(deadline)
                        continue
                self._dispatch(task)
        finally:
            with self._lock:
                self._draining = False

    def run_step(self, task: Task) -> None:
        """Execute exactly one step of a READY task outside the run loop."""
        with self._lock:
            status = task.status
            if status is TaskStatus.READY:
                try:
                    self._ready.remove(task)
                except ValueError:
                    pass
                task.status = TaskStatus.RUNNING
                self._inflight += 1
        if status is not TaskStatus.READY:
            error = InvalidTaskStateError(f"Cannot step a {status.name} task", task.id)
            self.fault(task, error)
            raise error
        self._step(task)

    def _next_ready_locked(self) -> Task | None:
        if not self._ready or self._inflight >= self.config.workers:
            return None
        task = self._ready.popleft()
        task.status = TaskStatus.RUNNING
        self._inflight += 1
        return task

    def _is_idle_locked(self) -> bool:
        return not self._ready and self._inflight == 0 and not self._suspended

    def _wait_locked(self, deadline: float | None) -> None:
        next_timer = self._next_timer_locked()
        if (
            next_timer is not None
            and isinstance(self.clock, VirtualClock)
            and self._inflight == 0
            and not self._ready
        ):
            self.clock.advance_to(next_timer.when)
            return
        wait = None if next_timer is None else max(0.0, next_timer.when - self.clock.now())
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"Scheduler still has {len(self._suspended)} suspended and "
                    f"{len(self._ready) + self._inflight} runnable task(s)"
                )
            wait = remaining if wait is None else min(wait, remaining)
        if wait is None and self._inflight == 0:
            logger.debug(
                "All %d pending task(s) suspended; waiting for external completions",
                len(self._suspended),
            )
        self._wakeup.wait(wait)

    def _dispatch(self, task: Task) -> None:
        if self._pool is None:
            self._step(task)
            return
        future = self._pool.submit(self._step, task)
        future.add_done_callback(self._check_worker)

    @staticmethod
    def _check_worker(future: Future[None]) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Worker crashed while stepping", exc_info=error)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _step(self, task: Task) -> None:
        pending: Any = None
        callbacks: list[Callable[[Task], None]] = []
        try:
            pending = self._advance(task)
        finally:
            with self._lock:
                self._inflight -= 1
                fault, task._fault = task._fault, None
                if fault is not None and not task.status.is_terminal:
                    if task.status is TaskStatus.SUSPENDED:
                        self._suspended.pop(task.id, None)
                        if isinstance(pending, tuple):
                            pending[0]._cancel()
                    callbacks = self._finish_locked(task, TaskStatus.FAILED, Err(fault))
                    pending = None
                elif pending is _REQUEUE:
                    task.status = TaskStatus.READY
                    self._ready.append(task)
                self._wakeup.notify_all()
        self._run_done_callbacks(task, callbacks)
        if isinstance(pending, tuple):
            k, operation = pending
            self._start_operation(k, operation)

    def _advance(self, task: Task) -> Any:
        if task.cancel_requested:
            self._complete(task, TaskStatus.CANCELLED, Err(TaskCancelledError(task.id)))
            return None
        delivered, task._delivered = task._delivered, None
        program = task.machine
        try:
            scope = task.scope
            if scope is None:
                raise InvalidTaskStateError("Owning scope no longer exists", task.id)
            if task.label == program.final_label:
                result = delivered if delivered is not None else Ok(None)
                status = TaskStatus.COMPLETED if result.is_ok() else TaskStatus.FAILED
                self._complete(task, status, result)
                return None
            if isinstance(delivered, Err) and not task._catch:
                raise delivered.error
            step = program.step_at(task.label)
            if task.trace is not None:
                task.trace.append(task.label)
            if self.config.debug:
                logger.debug("%s running label %d of %r", task.id, task.label, program.name)
            outcome = step(StepContext(task, scope, self))
            return self._apply(task, Continue() if outcome is None else outcome)
        except Exception as exc:
            self._complete(task, TaskStatus.FAILED, Err(exc))
            return None

    def _apply(self, task: Task, outcome: Outcome) -> Any:
        if isinstance(outcome, Complete):
            self._complete(task, TaskStatus.COMPLETED, Ok(outcome.value))
            return None
        if isinstance(outcome, Continue):
            target = self._target_label(task, outcome.label)
            if target == task.machine.final_label:
                self._complete(task, TaskStatus.COMPLETED, Ok(None))
                return None
            task.label = target
            return _REQUEUE
        if isinstance(outcome, Suspend):
            target = self._target_label(task, outcome.resume_at)
            k = Continuation(task, target, self, outcome.catch)
            with self._lock:
                cancelled = task.cancel_requested
                if not cancelled:
                    task.status = TaskStatus.SUSPENDED
                    task.continuation = k
                    self._suspended[task.id] = task
            if cancelled:
                self._complete(task, TaskStatus.CANCELLED, Err(TaskCancelledError(task.id)))
                return None
            return (k, outcome.operation)
        raise InvalidTaskStateError(
            f"Step returned {outcome!r}; expected Continue, Suspend or Complete", task.id
        )

    @staticmethod
    def _target_label(task: Task, label: int | None) -> int:
        target = task.label + 1 if label is None else label
        if not task.label < target <= task.machine.final_label:
            raise InvalidTaskStateError(
                f"Cannot move from label {task.label} to {target}; labels only move forward "
                f"and end at {task.machine.final_label}",
                task.id,
            )
        return target

    def _start_operation(self, k: Continuation, operation: Operation) -> None:
        try:
            operation(k)
        except Exception as exc:
            if not k._try_deliver(Err(exc)):
                logger.exception("Operation for %s raised after resuming it", k.task.id)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _complete(self, task: Task, status: TaskStatus, result: Result[Any]) -> None:
        with self._lock:
            callbacks = self._finish_locked(task, status, result)
        if status is TaskStatus.FAILED:
            logger.debug("%s failed: %r", task.id, result.err())
        else:
            logger.debug("%s %s", task.id, status.name.lower())
        self._run_done_callbacks(task, callbacks)

    def _finish_locked(
        self, task: Task, status: TaskStatus, result: Result[Any]
    ) -> list[Callable[[Task], None]]:
        task.status = status
        task.result = result
        task.continuation = None
        callbacks, task._done_callbacks = task._done_callbacks, []
        self._wakeup.notify_all()
        return callbacks

    @staticmethod
    def _run_done_callbacks(task: Task, callbacks: list[Callable[[Task], None]]) -> None:
        for callback in callbacks:
            try:
                callback(task)
            except Exception:
                logger.exception("Done callback for %s failed", task.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


__all__ = [
    "Clock",
    "Fault",
    "MonotonicClock",
    "Scheduler",
    "TimerHandle",
    "VirtualClock",
]
