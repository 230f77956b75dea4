"""
Cancellable periodic tasks
Owns polling loops (order tracking, DNS and certificate sweeps) so callers never manage timers.
The clock is injectable: tests drive time with a manual clock instead of sleeping.
"""

import time
import asyncio
import logging
from typing import Dict, Optional, Callable, Awaitable

logger = logging.getLogger(__name__)


class SystemClock:
    """Wall clock backed by asyncio.sleep"""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicTask:
    """
    Runs callback every interval seconds until it returns True, max_runs is reached, or stop() is called

    The callback returns True when the work it tracks is finished. Exceptions raised
    by the callback are logged and count as a run; the loop keeps going.
    """

    def __init__(self, name: str, callback: Callable[[], Awaitable[bool]], interval: float,
                 clock=None, run_immediately: bool = True, max_runs: int = 0,
                 on_exhausted: Optional[Callable[[], Awaitable[None]]] = None):
        self.name = name
        self.callback = callback
        self.interval = interval
        self.clock = clock or SystemClock()
        self.run_immediately = run_immediately
        self.max_runs = max_runs
        self.on_exhausted = on_exhausted
        self.runs = 0
        self.completed = False
        self.exhausted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    def start(self) -> 'PeriodicTask':
        if self.running:
            return self
        self._task = asyncio.ensure_future(self._run())
        logger.debug(f"⏱️ Periodic task started: {self.name} (every {self.interval}s)")
        return self

    def add_done_callback(self, callback: Callable[['PeriodicTask'], None]):
        self._task.add_done_callback(lambda _: callback(self))

    def stop(self) -> bool:
        if not self.running:
            return False
        self._task.cancel()
        logger.debug(f"🛑 Periodic task stopped: {self.name} after {self.runs} runs")
        return True

    async def wait(self) -> None:
        """Wait for the loop to end (completed, exhausted or cancelled)"""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

    async def _run(self) -> None:
        if not self.run_immediately:
            await self.clock.sleep(self.interval)
        while True:
            self.runs += 1
            try:
                done = await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Periodic task {self.name} run {self.runs} failed: {e}")
                done = False

            if done:
                self.completed = True
                logger.debug(f"✅ Periodic task finished: {self.name} after {self.runs} runs")
                return

            if self.max_runs and self.runs >= self.max_runs:
                self.exhausted = True
                logger.warning(f"⚠️ Periodic task {self.name} gave up after {self.runs} runs")
                if self.on_exhausted is not None:
                    await self.on_exhausted()
                return

            await self.clock.sleep(self.interval)


class TaskScheduler:
    """Keyed registry of periodic tasks; one live task per key"""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self._tasks: Dict[str, PeriodicTask] = {}

    def schedule(self, key: str, callback: Callable[[], Awaitable[bool]], interval: float,
                 run_immediately: bool = True, max_runs: int = 0,
                 on_exhausted: Optional[Callable[[], Awaitable[None]]] = None) -> PeriodicTask:
        """Start a task under key; an already running task for the key is returned unchanged"""
        existing = self._tasks.get(key)
        if existing is not None and existing.running:
            return existing

        task = PeriodicTask(
            name=key,
            callback=callback,
            interval=interval,
            clock=self.clock,
            run_immediately=run_immediately,
            max_runs=max_runs,
            on_exhausted=on_exhausted,
        )
        self._tasks[key] = task
        task.start()
        task.add_done_callback(lambda finished: self._forget(key, finished))
        return task

    def _forget(self, key: str, task: PeriodicTask):
        # A newer task may already own the key
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def get(self, key: str) -> Optional[PeriodicTask]:
        return self._tasks.get(key)

    def is_scheduled(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and task.running

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        return task.stop() if task else False

    def cancel_prefix(self, prefix: str) -> int:
        return sum(1 for key in list(self._tasks) if key.startswith(prefix) and self.cancel(key))

    def cancel_all(self) -> int:
        count = sum(1 for key in list(self._tasks) if self.cancel(key))
        if count:
            logger.info(f"🛑 Cancelled {count} scheduled tasks")
        return count

    def active_keys(self):
        return [key for key, task in self._tasks.items() if task.running]
