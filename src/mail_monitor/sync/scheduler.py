"""Cancellable keyed timers and a fixed-interval task driver."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class KeyedTimers:
    """One pending timer per key; rescheduling a key cancels its previous timer.

    A callback that already started running is not cancelled by a later
    `schedule` of the same key.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def pending(self, key: str) -> bool:
        """Return True if a timer for `key` is waiting to fire."""
        return key in self._tasks

    def schedule(self, key: str, delay_s: float, callback: TimerCallback) -> None:
        """Run `callback` after `delay_s` unless `key` is rescheduled or cancelled first."""
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(
            self._fire(key, delay_s, callback),
            name=f"timer:{key}",
        )

    def cancel(self, key: str) -> bool:
        """Cancel the pending timer for `key`."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        """Cancel every pending timer and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until no timer is pending, including timers scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _fire(self, key: str, delay_s: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay_s)
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except Exception:
            logger.exception("Timer callback failed", extra={"item_id": key})


class IntervalDriver:
    """Runs an async function every `interval_s` seconds until stopped.

    Failures are logged and counted; they never stop the schedule.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self._interval_s = interval_s
        self._fn = fn
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop (no-op if already started)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval_s)
        while True:
            try:
                await self._fn()
            except Exception:
                self.failures += 1
                logger.exception("%s cycle failed", self.name, extra={"operation": self.name})
            self.runs += 1
            await asyncio.sleep(self._interval_s)
