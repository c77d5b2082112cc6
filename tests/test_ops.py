"""Tests for the external operation adapters."""

import asyncio
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor

import pytest

from costep import Scheduler, Scope, TaskStatus, machine
from costep.executor import ThreadedAsyncioExecutor
from costep.ops import completed, delay, failed, from_awaitable, from_future, in_thread
from steps import boom, finish, wait


def _echo(ctx):
    return ctx.complete(ctx.resumed)


def _report(ctx):
    return ctx.complete(ctx.outcome)


class TestImmediate:
    def test_completed_and_failed(self, scheduler: Scheduler, scope: Scope) -> None:
        ok = scope.launch(machine(lambda ctx: ctx.suspend(completed("v")), _echo))
        err = scope.launch(machine(lambda ctx: ctx.suspend(failed(KeyError("k")), catch=True), _report))
        scheduler.run_until_idle()

        assert ok.value() == "v"
        assert isinstance(err.value().err(), KeyError)

    def test_delay_helper(self, scheduler: Scheduler, scope: Scope) -> None:
        handle = scope.launch(machine(lambda ctx: ctx.suspend(delay(scheduler, 2.5)), finish("slept")))
        scheduler.run_until_idle()

        assert handle.value() == "slept"
        assert scheduler.clock.now() == pytest.approx(2.5)


class TestThreads:
    def test_in_thread_returns_value(self, realtime_scheduler: Scheduler) -> None:
        scope = Scope(realtime_scheduler)
        with ThreadPoolExecutor(max_workers=2) as pool:
            handle = scope.launch(machine(lambda ctx: ctx.suspend(in_thread(pool, pow, 2, 10)), _echo))
            realtime_scheduler.run_until_idle(timeout=5.0)

        assert handle.value() == 1024

    def test_in_thread_error_fails_task(self, realtime_scheduler: Scheduler) -> None:
        def explode() -> None:
            raise ConnectionError("unreachable")

        scope = Scope(realtime_scheduler)
        with ThreadPoolExecutor(max_workers=1) as pool:
            handle = scope.launch(machine(lambda ctx: ctx.suspend(in_thread(pool, explode)), _echo))
            realtime_scheduler.run_until_idle(timeout=5.0)

        assert handle.status is TaskStatus.FAILED
        with pytest.raises(ConnectionError):
            handle.value()

    def test_future_resolved_elsewhere(self, realtime_scheduler: Scheduler) -> None:
        future: Future[str] = Future()
        scope = Scope(realtime_scheduler)
        handle = scope.launch(machine(lambda ctx: ctx.suspend(from_future(future)), _echo))
        threading.Timer(0.02, future.set_result, args=("resolved",)).start()
        realtime_scheduler.run_until_idle(timeout=5.0)

        assert handle.value() == "resolved"

    def test_cancelling_task_cancels_future(self, scheduler: Scheduler, scope: Scope) -> None:
        future: Future[str] = Future()
        handle = scope.launch(machine(lambda ctx: ctx.suspend(from_future(future)), _echo))
        scheduler.run_step(scheduler.ready_tasks()[0])

        handle.cancel()
        scheduler.run_until_idle()

        assert future.cancelled()
        assert handle.status is TaskStatus.CANCELLED
        assert scheduler.faults == ()

    def test_future_cancelled_elsewhere_is_an_error(self, scheduler: Scheduler, scope: Scope) -> None:
        future: Future[str] = Future()
        handle = scope.launch(machine(lambda ctx: ctx.suspend(from_future(future), catch=True), _report))
        scheduler.run_step(scheduler.ready_tasks()[0])

        future.cancel()
        scheduler.run_until_idle()

        assert isinstance(handle.value().err(), CancelledError)


class TestAsyncio:
    def test_awaitable_result(self, realtime_scheduler: Scheduler) -> None:
        async def fetch() -> int:
            await asyncio.sleep(0.01)
            return 5

        scope = Scope(realtime_scheduler)
        with ThreadedAsyncioExecutor() as executor:
            handle = scope.launch(machine(lambda ctx: ctx.suspend(from_awaitable(executor, fetch())), _echo))
            realtime_scheduler.run_until_idle(timeout=5.0)

        assert handle.value() == 5

    def test_awaitable_error(self, realtime_scheduler: Scheduler) -> None:
        async def fetch() -> int:
            raise LookupError("no such key")

        scope = Scope(realtime_scheduler)
        with ThreadedAsyncioExecutor() as executor:
            handle = scope.launch(machine(lambda ctx: ctx.suspend(from_awaitable(executor, fetch())), _echo))
            realtime_scheduler.run_until_idle(timeout=5.0)

        with pytest.raises(LookupError):
            handle.value()

    def test_cancellation_reaches_the_event_loop(self, realtime_scheduler: Scheduler) -> None:
        cancelled = threading.Event()

        async def forever() -> None:
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        scope = Scope(realtime_scheduler)
        started = time.monotonic()
        with ThreadedAsyncioExecutor() as executor:
            handle = scope.launch(machine(lambda ctx: ctx.suspend(from_awaitable(executor, forever()))))
            scope.cancel_after(0.05)
            realtime_scheduler.run_until_idle(timeout=5.0)
            assert cancelled.wait(timeout=5.0)

        assert handle.status is TaskStatus.CANCELLED
        assert time.monotonic() - started < 5.0

    def test_submit_after_shutdown(self) -> None:
        executor = ThreadedAsyncioExecutor()
        executor.shutdown()

        async def noop() -> None:
            return None

        coro = noop()
        with pytest.raises(RuntimeError, match="shut down"):
            executor.submit(coro, lambda _: None, lambda _: None)
        coro.close()


class TestJoinTask:
    def test_join_another_task(self, scheduler: Scheduler, scope: Scope) -> None:
        worker = scope.launch(machine(wait(2.0), finish(21)))
        waiter = scope.launch(machine(lambda ctx: ctx.join(worker), lambda ctx: ctx.complete(ctx.resumed * 2)))
        scheduler.run_until_idle()

        assert waiter.value() == 42

    def test_join_finished_task(self, scheduler: Scheduler, scope: Scope) -> None:
        worker = scope.launch(machine(finish("early")))
        scheduler.run_until_idle()
        waiter = scope.launch(machine(lambda ctx: ctx.join(worker), _echo))
        scheduler.run_until_idle()

        assert waiter.value() == "early"

    def test_join_failed_task_with_catch(self, scheduler: Scheduler) -> None:
        workers = Scope(scheduler)
        observers = Scope(scheduler)
        worker = workers.launch(machine(wait(1.0), boom("worker broke")))
        waiter = observers.launch(machine(lambda ctx: ctx.join(worker, catch=True), _report))
        scheduler.run_until_idle()

        error = waiter.value().err()
        assert isinstance(error, ValueError)
        assert str(error) == "worker broke"
