"""Coalesces bursts of push notifications into one targeted sync per item."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from mail_monitor.models.remote import ItemChange
from mail_monitor.sync.channel import ChangeChannel
from mail_monitor.sync.scheduler import KeyedTimers

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ItemChange], Awaitable[object]]


class ChangeDetector:
    """Consumes a ChangeChannel and debounces notifications per item id.

    Each notification for an item restarts that item's timer; when the
    window elapses without a newer notification the handler runs once with
    the latest one.
    """

    def __init__(
        self,
        *,
        channel: ChangeChannel,
        handler: ChangeHandler,
        debounce_window_s: float = 1.0,
    ) -> None:
        self._channel = channel
        self._handler = handler
        self._window_s = debounce_window_s
        self._timers = KeyedTimers()
        self._latest: dict[str, ItemChange] = {}
        self._consumer: asyncio.Task[None] | None = None
        self.notifications_received = 0
        self.actions_executed = 0

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def pending(self) -> int:
        return len(self._timers)

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="change_detector")

    async def stop(self) -> None:
        """Stop consuming and drop pending timers."""
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        await self._timers.cancel_all()
        self._latest.clear()

    async def flush(self) -> None:
        """Wait for every pending timer to fire."""
        await self._timers.wait_idle()

    def notify(self, change: ItemChange) -> None:
        """Register one notification, restarting the item's debounce timer."""
        self.notifications_received += 1
        self._latest[change.item_id] = change
        self._timers.schedule(
            change.item_id,
            self._window_s,
            lambda key=change.item_id: self._run(key),
        )

    async def _consume(self) -> None:
        while True:
            change = await self._channel.get()
            try:
                self.notify(change)
            finally:
                self._channel.task_done()

    async def _run(self, key: str) -> None:
        change = self._latest.pop(key, None)
        if change is None:
            return
        self.actions_executed += 1
        await self._handler(change)
