"""Tests for push notification debouncing and the scheduler primitives."""

from __future__ import annotations

import asyncio

from mail_monitor.models.remote import ItemChange
from mail_monitor.models.types import ChangeKind
from mail_monitor.sync.channel import ChangeChannel
from mail_monitor.sync.debounce import ChangeDetector
from mail_monitor.sync.scheduler import IntervalDriver, KeyedTimers


def test_burst_for_one_item_runs_one_action_with_latest_change() -> None:
    """N notifications inside the window coalesce into one handler call."""
    handled: list[ItemChange] = []

    async def handler(change: ItemChange) -> None:
        handled.append(change)

    async def scenario() -> ChangeDetector:
        channel = ChangeChannel()
        detector = ChangeDetector(channel=channel, handler=handler, debounce_window_s=0.2)
        detector.start()
        for _ in range(9):
            channel.publish(ItemChange(item_id="<1@x>", kind=ChangeKind.changed, folder_path="INBOX"))
            await asyncio.sleep(0.005)
        channel.publish(ItemChange(item_id="<1@x>", kind=ChangeKind.removed, folder_path="INBOX"))
        await asyncio.sleep(0.02)
        await detector.flush()
        await detector.stop()
        return detector

    detector = asyncio.run(scenario())
    assert detector.notifications_received == 10
    assert detector.actions_executed == 1
    assert [change.kind for change in handled] == [ChangeKind.removed]


def test_distinct_items_are_debounced_independently() -> None:
    """Each item id has its own timer."""
    handled: list[str] = []

    async def handler(change: ItemChange) -> None:
        handled.append(change.item_id)

    async def scenario() -> None:
        detector = ChangeDetector(channel=ChangeChannel(), handler=handler, debounce_window_s=0.02)
        for item_id in ("<1@x>", "<2@x>", "<1@x>", "<3@x>"):
            detector.notify(ItemChange(item_id=item_id, kind=ChangeKind.changed))
        await detector.flush()
        await detector.stop()

    asyncio.run(scenario())
    assert sorted(handled) == ["<1@x>", "<2@x>", "<3@x>"]


def test_handler_failure_does_not_stop_other_timers() -> None:
    """An exception in one action is logged and other keys still fire."""
    handled: list[str] = []

    async def handler(change: ItemChange) -> None:
        if change.item_id == "<bad@x>":
            raise RuntimeError("boom")
        handled.append(change.item_id)

    async def scenario() -> None:
        detector = ChangeDetector(channel=ChangeChannel(), handler=handler, debounce_window_s=0.01)
        detector.notify(ItemChange(item_id="<bad@x>", kind=ChangeKind.changed))
        detector.notify(ItemChange(item_id="<ok@x>", kind=ChangeKind.changed))
        await detector.flush()

    asyncio.run(scenario())
    assert handled == ["<ok@x>"]


def test_keyed_timer_cancel() -> None:
    """A cancelled timer never fires."""
    fired: list[str] = []

    async def scenario() -> None:
        timers = KeyedTimers()

        async def fire() -> None:
            fired.append("a")

        timers.schedule("a", 0.01, fire)
        assert timers.pending("a")
        assert timers.cancel("a")
        assert not timers.cancel("a")
        await asyncio.sleep(0.03)
        assert len(timers) == 0

    asyncio.run(scenario())
    assert fired == []


def test_interval_driver_survives_failures() -> None:
    """A failing cycle is counted and the schedule continues."""
    calls: list[int] = []

    async def cycle() -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("first cycle fails")

    async def scenario() -> IntervalDriver:
        driver = IntervalDriver(name="poll", interval_s=0.01, fn=cycle, run_immediately=True)
        driver.start()
        await asyncio.sleep(0.08)
        await driver.stop()
        assert not driver.running
        return driver

    driver = asyncio.run(scenario())
    assert driver.failures == 1
    assert len(calls) >= 3
