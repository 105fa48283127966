"""Bounded buffer carrying change notifications from the store to the detector."""

from __future__ import annotations

import asyncio
import logging

from mail_monitor.models.remote import ItemChange

logger = logging.getLogger(__name__)


class ChangeChannel:
    """Typed bounded queue of ItemChange notifications.

    Producers never block: when the buffer is full the notification is
    dropped and counted. A later poll or full reconciliation observes the
    same item anyway.
    """

    def __init__(self, *, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[ItemChange] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, change: ItemChange) -> bool:
        """Enqueue a notification; returns False if it was dropped."""
        try:
            self._queue.put_nowait(change)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Change channel full, notification dropped",
                extra={"operation": "push", "folder": change.folder_path, "item_id": change.item_id},
            )
            return False
        return True

    async def get(self) -> ItemChange:
        """Wait for the next notification."""
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
