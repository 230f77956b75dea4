"""
Periodic task tests driven by a manual clock
"""

import pytest
from unittest.mock import AsyncMock

from task_scheduler import TaskScheduler, PeriodicTask
from conftest import settle


@pytest.mark.asyncio
class TestPeriodicTask:

    async def test_runs_immediately_then_every_interval(self, scheduler, manual_clock):
        callback = AsyncMock(return_value=False)
        task = scheduler.schedule('poll', callback, interval=3)
        await settle()
        assert callback.await_count == 1

        await manual_clock.advance(2.9)
        assert callback.await_count == 1
        await manual_clock.advance(0.1)
        assert callback.await_count == 2
        await manual_clock.advance(3)
        assert callback.await_count == 3
        assert task.running
        task.stop()

    async def test_delayed_start(self, scheduler, manual_clock):
        callback = AsyncMock(return_value=False)
        scheduler.schedule('sweep', callback, interval=60, run_immediately=False)
        await settle()
        assert callback.await_count == 0

        await manual_clock.advance(60)
        assert callback.await_count == 1
        scheduler.cancel_all()

    async def test_stops_when_callback_reports_done(self, scheduler, manual_clock):
        callback = AsyncMock(side_effect=[False, True])
        task = scheduler.schedule('poll', callback, interval=3)
        await settle()
        await manual_clock.advance(3)

        assert task.completed
        assert not task.running
        assert not scheduler.is_scheduled('poll')
        await manual_clock.advance(30)
        assert callback.await_count == 2
        assert scheduler.get('poll') is None

    async def test_cancel_stops_future_runs(self, scheduler, manual_clock):
        callback = AsyncMock(return_value=False)
        task = scheduler.schedule('poll', callback, interval=3)
        await settle()

        assert scheduler.cancel('poll') is True
        await settle()
        await manual_clock.advance(9)

        assert callback.await_count == 1
        assert task.cancelled
        assert scheduler.cancel('poll') is False

    async def test_max_runs_then_exhausted_hook(self, scheduler, manual_clock):
        callback = AsyncMock(return_value=False)
        exhausted = AsyncMock()
        task = scheduler.schedule('poll', callback, interval=3, max_runs=3, on_exhausted=exhausted)
        await settle()
        await manual_clock.advance(3)
        await manual_clock.advance(3)

        assert callback.await_count == 3
        assert task.exhausted
        exhausted.assert_awaited_once()
        assert not task.running
        await settle()
        assert scheduler.get('poll') is None

    async def test_callback_errors_do_not_end_the_loop(self, scheduler, manual_clock):
        callback = AsyncMock(side_effect=[RuntimeError("flaky"), True])
        task = scheduler.schedule('poll', callback, interval=3)
        await settle()
        assert task.running

        await manual_clock.advance(3)
        assert task.completed
        assert task.runs == 2

    async def test_one_live_task_per_key(self, scheduler):
        first = scheduler.schedule('order:1', AsyncMock(return_value=False), interval=3)
        second = scheduler.schedule('order:1', AsyncMock(return_value=False), interval=3)
        assert first is second
        scheduler.cancel_all()

    async def test_cancel_prefix(self, scheduler):
        for key in ('order:1', 'order:2', 'sweep:dns'):
            scheduler.schedule(key, AsyncMock(return_value=False), interval=3)
        await settle()

        assert scheduler.cancel_prefix('order:') == 2
        await settle()
        assert scheduler.active_keys() == ['sweep:dns']
        scheduler.cancel_all()

    async def test_wait_returns_after_stop(self, manual_clock):
        task = PeriodicTask('poll', AsyncMock(return_value=False), interval=3, clock=manual_clock).start()
        await settle()
        task.stop()
        await task.wait()
        assert task.cancelled

    async def test_default_clock_is_wall_clock(self):
        scheduler = TaskScheduler()
        assert scheduler.clock.now() > 0
