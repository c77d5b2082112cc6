"""
costep - cooperative suspendable tasks as explicit state machines.

Write a coroutine as an ordered table of steps, run it with a builder:

    from costep import machine, run_blocking

    def start(ctx):
        return ctx.delay(0.1)

    def finish(ctx):
        return ctx.complete("done")

    assert run_blocking(machine(start, finish)) == "done"
"""

from costep._vendor import Err, Ok, Result
from costep.builders import launch, run_blocking
from costep.config import RuntimeConfig
from costep.continuation import Continuation
from costep.errors import (
    ChildFailureError,
    CostepError,
    DoubleResumeError,
    ErrorKind,
    InvalidTaskStateError,
    ScopeClosedError,
    TaskCancelledError,
)
from costep.machine import (
    Complete,
    Continue,
    Operation,
    StateMachine,
    StepContext,
    Suspend,
    machine,
)
from costep.scheduler import Fault, MonotonicClock, Scheduler, TimerHandle, VirtualClock
from costep.scope import CompletionPolicy, Scope
from costep.task import Task, TaskHandle, TaskStatus
from costep.types import RESUME_SLOT, Context, Locals, ScopeId, TaskId

__all__ = [
    "RESUME_SLOT",
    "ChildFailureError",
    "CompletionPolicy",
    "Complete",
    "Context",
    "Continuation",
    "Continue",
    "CostepError",
    "DoubleResumeError",
    "Err",
    "ErrorKind",
    "Fault",
    "InvalidTaskStateError",
    "Locals",
    "MonotonicClock",
    "Ok",
    "Operation",
    "Result",
    "RuntimeConfig",
    "Scheduler",
    "Scope",
    "ScopeClosedError",
    "ScopeId",
    "StateMachine",
    "StepContext",
    "Suspend",
    "Task",
    "TaskCancelledError",
    "TaskHandle",
    "TaskId",
    "TaskStatus",
    "TimerHandle",
    "VirtualClock",
    "launch",
    "machine",
    "run_blocking",
]
