"""Suspension throughput benchmark for the costep scheduler.

Usage
-----
    python benchmarks/bench_suspensions.py --tasks 10000 --delays 500 --seconds 0.01

Launches ``tasks`` tasks that each suspend ``delays`` times on a timer. With
cooperative scheduling the wall time should be close to ``delays * seconds``
rather than their product with ``tasks``.
"""

from __future__ import annotations

import argparse
import sys
import time
from typing import Any

from costep import RuntimeConfig, Scheduler, Scope, TaskStatus, machine


def _sleeper(delays: int, seconds: float) -> Any:
    def step(ctx):
        return ctx.delay(seconds)

    return machine(*[step] * delays, name="sleeper")


def benchmark(*, tasks: int, delays: int, seconds: float, clock: str, workers: int) -> dict[str, Any]:
    """Run the scenario once and return timing figures."""
    config = RuntimeConfig(workers=workers, clock=clock)  # type: ignore[arg-type]
    with Scheduler(config) as scheduler:
        scope = Scope(scheduler, name="bench")
        program = _sleeper(delays, seconds)
        handles = [scope.launch(program) for _ in range(tasks)]
        start = time.perf_counter()
        scheduler.run_until_idle()
        elapsed = time.perf_counter() - start
        simulated = scheduler.clock.now() if clock == "virtual" else elapsed

    completed = sum(1 for h in handles if h.status is TaskStatus.COMPLETED)
    return {
        "tasks": tasks,
        "delays": delays,
        "seconds": seconds,
        "completed": completed,
        "elapsed_s": elapsed,
        "simulated_s": simulated,
        "ideal_s": delays * seconds,
        "serial_s": tasks * delays * seconds,
        "suspensions_per_s": tasks * delays / elapsed if elapsed else float("inf"),
    }


def format_report(stats: dict[str, Any]) -> str:
    return "\n".join(
        [
            "costep suspension benchmark:",
            "  tasks={tasks} delays={delays} delay={seconds}s completed={completed}".format(**stats),
            "  elapsed={elapsed_s:.2f}s simulated={simulated_s:.2f}s ideal={ideal_s:.2f}s "
            "serial={serial_s:.0f}s".format(**stats),
            "  throughput={suspensions_per_s:,.0f} suspensions/s".format(**stats),
        ]
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark costep suspension throughput")
    parser.add_argument("--tasks", type=int, default=10_000, help="Number of concurrent tasks")
    parser.add_argument("--delays", type=int, default=500, help="Suspensions per task")
    parser.add_argument("--seconds", type=float, default=0.01, help="Length of each delay")
    parser.add_argument(
        "--clock",
        choices=("monotonic", "virtual"),
        default="monotonic",
        help="Clock driving the timers",
    )
    parser.add_argument("--workers", type=int, default=1, help="Step workers")
    args = parser.parse_args()

    stats = benchmark(
        tasks=args.tasks,
        delays=args.delays,
        seconds=args.seconds,
        clock=args.clock,
        workers=args.workers,
    )
    print(format_report(stats))
    if stats["completed"] != args.tasks:
        sys.exit(1)


if __name__ == "__main__":  # pragma: no cover - CLI script
    main()
