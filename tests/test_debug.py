"""Tests for scheduler diagnostics and logging."""

import logging

import pytest
from loguru import logger

from costep import ErrorKind, Scheduler, Scope, machine
from costep.debug import SchedulerSnapshot, TaskInfo, log_snapshot, snapshot
from steps import finish, wait


class TestSnapshot:
    def test_ready_and_suspended(self, scheduler: Scheduler, scope: Scope, capture) -> None:
        scope.launch(machine(lambda ctx: ctx.suspend(capture), finish(1)), name="parked")
        scope.launch(machine(wait(2.0), finish(2)), name="sleeper")
        scope.launch(machine(finish(3)), name="queued")
        first, second, _ = scheduler.ready_tasks()
        scheduler.run_step(first)
        scheduler.run_step(second)

        state = snapshot(scheduler)

        assert isinstance(state, SchedulerSnapshot)
        assert [info.name for info in state.ready] == ["queued"]
        assert sorted(info.name for info in state.suspended) == ["parked", "sleeper"]
        assert state.timers == 1
        assert state.faults == ()
        assert all(info.label == 0 and info.final_label == 2 for info in state.suspended)

    def test_format_lists_everything(self, scheduler: Scheduler, scope: Scope, capture) -> None:
        handle = scope.launch(machine(lambda ctx: ctx.suspend(capture), finish(1)), name="parked")
        scheduler.run_step(scheduler.ready_tasks()[0])
        handle.cancel()

        text = snapshot(scheduler).format()

        assert text.startswith("Scheduler @ 0.000000")
        assert "Ready (1):" in text
        assert "'parked' label 0/2 (cancel requested)" in text
        assert "Suspended (0):" in text
        assert "Faults (0):" in text

    def test_faults_are_listed(self, scheduler: Scheduler, scope: Scope, capture) -> None:
        scope.launch(machine(lambda ctx: ctx.suspend(capture)))
        scheduler.run_step(scheduler.ready_tasks()[0])
        capture.last.resume()
        capture.last.resume()

        state = snapshot(scheduler)
        assert [fault.kind for fault in state.faults] == [ErrorKind.DOUBLE_RESUME]
        assert "resumed twice" in state.format()

    def test_task_info(self, scheduler: Scheduler, scope: Scope) -> None:
        handle = scope.launch(machine(finish(1), name="single"))
        info = TaskInfo.of(scheduler.ready_tasks()[0])

        assert info.task_id == str(handle.task_id)
        assert info.format().endswith("'single' label 0/1")


class TestLogging:
    def test_log_snapshot_goes_through_loguru(self, scheduler: Scheduler, scope: Scope) -> None:
        records = []
        sink_id = logger.add(lambda message: records.append(message.record), level="INFO")
        try:
            scope.launch(machine(finish(1)), name="queued")
            state = log_snapshot(scheduler)
        finally:
            logger.remove(sink_id)

        assert len(records) == 1
        assert records[0]["extra"]["component"] == "scheduler"
        assert state.format() in records[0]["message"]

    def test_protocol_violation_logged_as_error(
        self, scheduler: Scheduler, scope: Scope, capture, caplog: pytest.LogCaptureFixture
    ) -> None:
        scope.launch(machine(lambda ctx: ctx.suspend(capture)))
        scheduler.run_step(scheduler.ready_tasks()[0])
        capture.last.resume()

        with caplog.at_level(logging.ERROR, logger="costep.scheduler"):
            capture.last.resume()

        assert any("Protocol violation" in r.getMessage() for r in caplog.records)

    def test_debug_mode_logs_each_step(
        self, scheduler: Scheduler, scope: Scope, caplog: pytest.LogCaptureFixture
    ) -> None:
        scope.launch(machine(lambda ctx: None, finish("x"), name="traced"))
        with caplog.at_level(logging.DEBUG, logger="costep.scheduler"):
            scheduler.run_until_idle()

        steps = [r.getMessage() for r in caplog.records if "running label" in r.getMessage()]
        assert len(steps) == 2
        assert "'traced'" in steps[0]
