"""
Pytest configuration for costep tests.

Provides schedulers on both clocks and a capturing operation that hands the
test the continuation so it can resume tasks by hand.
"""

from collections.abc import Iterator

import pytest

from costep import Continuation, RuntimeConfig, Scheduler, Scope


class Capture:
    """Operation that stores each continuation instead of resuming it."""

    def __init__(self) -> None:
        self.continuations: list[Continuation] = []

    def __call__(self, k: Continuation) -> None:
        self.continuations.append(k)

    @property
    def last(self) -> Continuation:
        return self.continuations[-1]


@pytest.fixture
def capture() -> Capture:
    return Capture()


@pytest.fixture
def scheduler() -> Iterator[Scheduler]:
    """Single-worker scheduler on simulated time, recording label traces."""
    with Scheduler(RuntimeConfig(clock="virtual", debug=True)) as s:
        yield s


@pytest.fixture
def realtime_scheduler() -> Iterator[Scheduler]:
    with Scheduler(RuntimeConfig(clock="monotonic")) as s:
        yield s


@pytest.fixture
def scope(scheduler: Scheduler) -> Scope:
    return Scope(scheduler, name="test")
