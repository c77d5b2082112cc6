"""Tests for run_blocking and launch."""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from costep import (
    ChildFailureError,
    CompletionPolicy,
    RuntimeConfig,
    Scheduler,
    Scope,
    ScopeClosedError,
    TaskCancelledError,
    TaskStatus,
    launch,
    machine,
    run_blocking,
)
from costep.ops import in_thread
from steps import boom, finish, wait

VIRTUAL = RuntimeConfig(clock="virtual")


class TestRunBlocking:
    def test_two_suspensions_then_value(self) -> None:
        with ThreadPoolExecutor(max_workers=2) as pool:

            def fetch(ctx):
                return ctx.delay(0.01)

            def compute(ctx):
                return ctx.suspend(in_thread(pool, sum, [1, 2, 3]))

            def finish_up(ctx):
                return ctx.complete(ctx.resumed * 7)

            assert run_blocking(machine(fetch, compute, finish_up)) == 42

    def test_root_error_is_raised(self) -> None:
        with pytest.raises(ValueError, match="root broke"):
            run_blocking(machine(wait(1.0), boom("root broke")), config=VIRTUAL)

    def test_timeout_cancels_root(self) -> None:
        with pytest.raises(TaskCancelledError):
            run_blocking(machine(wait(10.0), finish("too late")), config=VIRTUAL, timeout=1.0)

    def test_sibling_failure_fail_fast(self) -> None:
        def start(ctx):
            ctx.launch(machine(boom("sibling")))
            return ctx.delay(5.0)

        with pytest.raises(ChildFailureError) as info:
            run_blocking(machine(start, finish("root")), config=VIRTUAL)
        assert str(info.value.first) == "sibling"

    def test_sibling_failure_wait_all(self) -> None:
        ran = []

        def start(ctx):
            ctx.launch(machine(wait(0.5), boom("sibling")))
            return ctx.delay(1.0)

        def done(ctx):
            ran.append("root finished")
            return ctx.complete("root")

        with pytest.raises(ChildFailureError):
            run_blocking(machine(start, done), config=VIRTUAL, policy=CompletionPolicy.WAIT_ALL)
        assert ran == ["root finished"]

    def test_waits_for_fire_and_forget_siblings(self) -> None:
        finished = []

        def start(ctx):
            ctx.launch(machine(wait(3.0), lambda ctx: finished.append("sibling")))
            return ctx.complete("root")

        assert run_blocking(machine(start), config=VIRTUAL) == "root"
        assert finished == ["sibling"]

    def test_scope_closed_afterwards(self) -> None:
        scopes: list[Scope] = []

        def start(ctx):
            scopes.append(ctx.scope)

        run_blocking(machine(start), config=VIRTUAL)

        assert scopes[0].is_closed
        with pytest.raises(ScopeClosedError):
            scopes[0].launch(machine(finish(1)))

    def test_reuses_given_scheduler(self) -> None:
        with Scheduler(VIRTUAL) as scheduler:
            assert run_blocking(machine(wait(1.0), finish("a")), scheduler=scheduler) == "a"
            assert run_blocking(machine(wait(2.0), finish("b")), scheduler=scheduler) == "b"
            assert scheduler.clock.now() == pytest.approx(3.0)

    def test_nested_run_blocking_uses_its_own_scheduler(self) -> None:
        def outer(ctx):
            inner = run_blocking(machine(wait(1.0), finish("inner")), config=VIRTUAL)
            return ctx.complete(f"outer({inner})")

        assert run_blocking(machine(outer), config=VIRTUAL) == "outer(inner)"

    def test_config_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COSTEP_CLOCK", "virtual")
        started = time.monotonic()

        assert run_blocking(machine(wait(100.0), finish("simulated"))) == "simulated"
        assert time.monotonic() - started < 10.0

    def test_locals_and_name(self) -> None:
        def start(ctx):
            return ctx.complete((ctx.task.name, ctx.locals["n"]))

        assert run_blocking(machine(start), config=VIRTUAL, name="root", locals={"n": 3}) == ("root", 3)


class TestLaunch:
    def test_requires_scope(self) -> None:
        with pytest.raises(TypeError, match="owning Scope"):
            launch(None, machine(finish(1)))  # type: ignore[arg-type]

    def test_returns_immediately(self, scheduler: Scheduler, scope: Scope) -> None:
        ran = []
        handle = launch(scope, machine(lambda ctx: ran.append("ran")))

        assert handle.status is TaskStatus.READY
        assert ran == []
        scheduler.run_until_idle()
        assert ran == ["ran"]

    def test_failure_surfaces_through_scope(self, scheduler: Scheduler, scope: Scope) -> None:
        handle = launch(scope, machine(boom("detached")), name="detached")
        scheduler.run_until_idle()

        assert handle.status is TaskStatus.FAILED
        assert [owner for owner, _ in scope.failures] == [handle.task_id]

    def test_context_override(self, scheduler: Scheduler) -> None:
        scope = Scope(scheduler, context={"tenant": "a"})
        handle = launch(scope, machine(lambda ctx: ctx.complete(ctx.context["tenant"])), context={"tenant": "b"})
        scheduler.run_until_idle()

        assert handle.value() == "b"
