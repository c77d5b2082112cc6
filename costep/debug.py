"""Debug utilities for inspecting scheduler state.

Provides a point-in-time snapshot of which tasks are ready, running or
suspended, plus the fault log, for diagnosing leaked continuations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger as loguru_logger

from costep.task import TaskStatus

if TYPE_CHECKING:
    from costep.scheduler import Fault, Scheduler
    from costep.task import Task

logger = loguru_logger.bind(component="scheduler")


@dataclass(frozen=True)
class TaskInfo:
    """Summary of a single task."""

    task_id: str
    name: str
    label: int
    final_label: int
    status: TaskStatus
    cancel_requested: bool

    @classmethod
    def of(cls, task: Task) -> TaskInfo:
        return cls(
            task_id=str(task.id),
            name=task.name,
            label=task.label,
            final_label=task.machine.final_label,
            status=task.status,
            cancel_requested=task.cancel_requested,
        )

    def format(self) -> str:
        flag = " (cancel requested)" if self.cancel_requested else ""
        return f"{self.task_id} {self.name!r} label {self.label}/{self.final_label}{flag}"


@dataclass(frozen=True)
class SchedulerSnapshot:
    """Complete scheduler state at one point in time."""

    now: float
    ready: tuple[TaskInfo, ...]
    suspended: tuple[TaskInfo, ...]
    timers: int
    faults: tuple[Fault, ...]

    def format(self) -> str:
        lines = [f"Scheduler @ {self.now:.6f}"]
        for title, entries in (("Ready", self.ready), ("Suspended", self.suspended)):
            lines.append(f"{title} ({len(entries)}):")
            lines.extend(f"  {entry.format()}" for entry in entries)
        lines.append(f"Timers: {self.timers}")
        lines.append(f"Faults ({len(self.faults)}):")
        lines.extend(f"  {fault.task_id} label {fault.label}: {fault.error}" for fault in self.faults)
        return "\n".join(lines)


def snapshot(scheduler: Scheduler) -> SchedulerSnapshot:
    return SchedulerSnapshot(
        now=scheduler.clock.now(),
        ready=tuple(TaskInfo.of(task) for task in scheduler.ready_tasks()),
        suspended=tuple(TaskInfo.of(task) for task in scheduler.suspended_tasks()),
        timers=scheduler.timer_count(),
        faults=scheduler.faults,
    )


def log_snapshot(scheduler: Scheduler) -> SchedulerSnapshot:
    """Write a formatted snapshot to the log and return it."""
    state = snapshot(scheduler)
    logger.info("Scheduler snapshot\n{}", state.format())
    return state


__all__ = [
    "SchedulerSnapshot",
    "TaskInfo",
    "log_snapshot",
    "snapshot",
]
