"""Builders bridging ordinary code and suspendable tasks.

- run_blocking: create a scope, run a root task to completion on the calling
  thread, return its value or raise its failure.
- launch: fire-and-forget into an explicit scope; failures surface through
  that scope only.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from costep.config import RuntimeConfig
from costep.errors import TaskCancelledError
from costep.scheduler import Scheduler
from costep.scope import CompletionPolicy, Scope
from costep.task import TaskStatus

if TYPE_CHECKING:
    from costep.machine import StateMachine
    from costep.task import TaskHandle
    from costep.types import Context, Locals

logger = logging.getLogger(__name__)


def run_blocking(
    program: StateMachine,
    *,
    scheduler: Scheduler | None = None,
    config: RuntimeConfig | None = None,
    policy: CompletionPolicy = CompletionPolicy.FAIL_FAST,
    locals: Locals | None = None,
    context: dict[str, Any] | Context | None = None,
    name: str | None = None,
    timeout: float | None = None,
) -> Any:
    """Run ``program`` as the root task of a fresh scope and wait for everything in it.

    Args:
        program: The root task's state machine.
        scheduler: Scheduler to drive. A private one is created (from ``config``,
            or from the environment) and shut down afterwards when omitted.
        config: Configuration for a private scheduler.
        policy: Completion policy of the root scope.
        locals: Initial locals of the root task.
        context: Ambient context for the root scope.
        name: Root task name.
        timeout: Cancel the root task after this many seconds of clock time.

    Returns:
        The root task's final value.

    Raises:
        The root task's own exception if it failed.
        ChildFailureError: If other tasks in the root scope failed.
        TaskCancelledError: If the root task was cancelled (e.g. by ``timeout``).
    """
    owned = scheduler is None
    if scheduler is None:
        scheduler = Scheduler(config or RuntimeConfig.from_env())
    scope = Scope(scheduler, policy=policy, name="run_blocking", context=context)
    try:
        root = scope.launch(program, name=name, locals=locals, timeout=timeout)
        scheduler.run_until_idle()
    finally:
        scope.close()
        if owned:
            scheduler.shutdown()
    logger.debug("Root %s finished as %s", root.task_id, root.status.name)
    return _root_value(root, scope)


def _root_value(root: TaskHandle, scope: Scope) -> Any:
    if root.status is TaskStatus.FAILED:
        return root.value()
    outcome = scope.outcome()
    if outcome is not None and outcome.is_err():
        return outcome.unwrap()
    if root.status is TaskStatus.CANCELLED:
        raise TaskCancelledError(root.task_id)
    return root.value()


def launch(
    scope: Scope,
    program: StateMachine,
    *,
    name: str | None = None,
    locals: Locals | None = None,
    context: dict[str, Any] | Context | None = None,
    timeout: float | None = None,
) -> TaskHandle:
    """Launch ``program`` into ``scope`` and return immediately."""
    if not isinstance(scope, Scope):
        raise TypeError(f"launch() needs an owning Scope, got {type(scope).__name__}")
    return scope.launch(program, name=name, locals=locals, context=context, timeout=timeout)


__all__ = ["launch", "run_blocking"]
