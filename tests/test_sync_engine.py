"""Tests for full reconciliation, polling and push handling."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import FakeMailStore, no_sleep

from mail_monitor.connection.manager import ConnectionManager
from mail_monitor.connection.retry import RetryPolicy
from mail_monitor.models.remote import ItemChange
from mail_monitor.models.types import ChangeKind, EventType
from mail_monitor.remote.base import TransientRemoteError
from mail_monitor.storage.state_db import LocalStoreError, StateDb
from mail_monitor.sync.engine import SyncEngine
from mail_monitor.sync.registry import FolderRegistry

FOLDERS = {"INBOX/Decl": "Declarations", "INBOX/Regl": "Reglements"}


async def _engine(
    store: FakeMailStore,
    db: StateDb,
    *,
    query_timeout_s: float = 5.0,
    poll_window: int = 50,
) -> SyncEngine:
    for path, category in FOLDERS.items():
        db.add_folder(folder_path=path, category=category)
    conn = ConnectionManager(
        store=store,
        retry_policy=RetryPolicy(max_retries=1),
        query_timeout_s=query_timeout_s,
        sleep=no_sleep,
    )
    assert await conn.connect()
    return SyncEngine(connection=conn, db=db, registry=FolderRegistry(db=db), poll_window=poll_window)


def test_full_reconcile_is_idempotent(store: FakeMailStore, db: StateDb) -> None:
    """A second full run over an unchanged store writes nothing."""
    store.add("INBOX/Decl", "<1@x>")
    store.add("INBOX/Decl", "<2@x>", unread=False)
    store.add("INBOX/Regl", "<3@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        first = await engine.full_reconcile()
        assert first.inserted == 3
        events_after_first = db.count_events()

        second = await engine.full_reconcile()
        assert (second.inserted, second.updated, second.treated) == (0, 0, 0)
        assert second.unchanged == 3
        assert db.count_events() == events_after_first

    asyncio.run(scenario())


def test_absent_item_is_treated_after_full_listing(store: FakeMailStore, db: StateDb) -> None:
    """An untreated item missing from a complete listing of its folder becomes treated."""
    store.add("INBOX/Decl", "<1@x>")
    store.add("INBOX/Decl", "<2@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        steady = await engine.full_reconcile()
        assert (steady.updated, steady.treated) == (0, 0)
        store.remove("<2@x>")

        report = await engine.full_reconcile()
        assert report.treated == 1
        events_after_treatment = db.count_events()

        again = await engine.full_reconcile()
        assert (again.updated, again.treated) == (0, 0)
        assert db.count_events() == events_after_treatment

    asyncio.run(scenario())

    gone = db.get_message("<2@x>")
    assert gone is not None
    assert gone.treated_time is not None
    last_event = db.events_for(gone.id)[-1]
    assert last_event.event_type == EventType.treated
    assert last_event.detail == "absent from full listing of INBOX/Decl"

    kept = db.get_message("<1@x>")
    assert kept is not None
    assert kept.treated_time is None


def test_move_between_monitored_folders_is_not_a_treatment(store: FakeMailStore, db: StateDb) -> None:
    """Listings of every folder are applied before absence is inferred."""
    store.add("INBOX/Regl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.move("<1@x>", "INBOX/Decl")
        report = await engine.full_reconcile()
        assert report.treated == 0

    asyncio.run(scenario())

    row = db.get_message("<1@x>")
    assert row is not None
    assert row.treated_time is None
    assert (row.folder_path, row.category) == ("INBOX/Decl", "Declarations")
    assert row.last_event_type == EventType.moved


def test_item_listed_in_two_folders_stays_put(store: FakeMailStore, db: StateDb) -> None:
    """A Message-ID present in two monitored folders does not bounce between them."""
    store.add("INBOX/Decl", "<dup@x>")
    store.add("INBOX/Regl", "<dup@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        first = await engine.full_reconcile()
        assert first.inserted == 1
        row = db.get_message("<dup@x>")
        assert row is not None
        held_in = row.folder_path
        events_after_first = db.count_events()

        for _ in range(2):
            report = await engine.full_reconcile()
            assert (report.inserted, report.updated, report.treated) == (0, 0, 0)
        polled = await engine.incremental_poll()
        assert polled.updated == 0

        assert db.count_events() == events_after_first
        row = db.get_message("<dup@x>")
        assert row is not None
        assert row.folder_path == held_in
        assert row.treated_time is None

    asyncio.run(scenario())


def test_poll_never_infers_absence(store: FakeMailStore, db: StateDb) -> None:
    """Polling fetches a window and never marks missing items treated."""
    for idx in range(3):
        store.add("INBOX/Decl", f"<{idx}@x>")

    async def scenario() -> None:
        engine = await _engine(store, db, poll_window=2)
        await engine.full_reconcile()
        store.remove("<0@x>")
        store.set_read("<2@x>")
        report = await engine.incremental_poll()
        assert report.updated == 1
        assert report.treated == 0

    asyncio.run(scenario())

    assert ("INBOX/Decl", 2) in store.list_calls
    row = db.get_message("<0@x>")
    assert row is not None
    assert row.treated_time is None


def test_item_without_identity_suppresses_absence_inference(store: FakeMailStore, db: StateDb) -> None:
    """A listing with an unidentifiable item is not trusted for absence."""
    store.add("INBOX/Decl", "<1@x>")
    store.add("INBOX/Decl", "<2@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.remove("<2@x>")
        store.extra_raw["INBOX/Decl"] = [{"subject": "no id", "receivedTime": "2025-01-06T10:00:00+00:00"}]
        report = await engine.full_reconcile()
        assert report.skipped_items == 1
        assert report.treated == 0

    asyncio.run(scenario())

    row = db.get_message("<2@x>")
    assert row is not None
    assert row.treated_time is None


def test_malformed_item_with_identity_is_skipped(store: FakeMailStore, db: StateDb) -> None:
    """An item failing validation is skipped but its identity still counts as present."""
    store.add("INBOX/Decl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.remove("<1@x>")
        store.extra_raw["INBOX/Decl"] = [{"id": "<1@x>", "unreadFlag": True}]
        report = await engine.full_reconcile()
        assert report.skipped_items == 1
        assert report.treated == 0

    asyncio.run(scenario())


def test_transient_folder_failure_skips_only_that_folder(store: FakeMailStore, db: StateDb) -> None:
    """A failing listing skips its folder for the cycle and infers nothing there."""
    store.add("INBOX/Decl", "<1@x>")
    store.add("INBOX/Regl", "<2@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.remove("<1@x>")
        store.add("INBOX/Regl", "<3@x>")
        store.list_errors["INBOX/Decl"] = TransientRemoteError("busy", operation="list_items")

        report = await engine.full_reconcile()
        assert report.folders_failed == ["INBOX/Decl"]
        assert report.folders_ok == ["INBOX/Regl"]
        assert report.inserted == 1
        assert report.treated == 0

    asyncio.run(scenario())


def test_listing_timeout_is_transient(store: FakeMailStore, db: StateDb) -> None:
    """A listing exceeding the query timeout fails the folder, not the cycle."""
    store.add("INBOX/Decl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db, query_timeout_s=0.05)
        store.list_delay_s = 0.5
        report = await engine.full_reconcile()
        assert sorted(report.folders_failed) == ["INBOX/Decl", "INBOX/Regl"]
        assert any("timed out" in error for error in report.errors)

    asyncio.run(scenario())


def test_poll_skips_folder_locked_by_full_reconcile(store: FakeMailStore, db: StateDb) -> None:
    """Polling leaves folders alone while a full reconciliation holds them."""
    store.add("INBOX/Decl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        async with engine.lock_for("INBOX/Decl"):
            report = await engine.incremental_poll()
        assert report.folders_skipped == ["INBOX/Decl"]
        assert report.folders_ok == ["INBOX/Regl"]

    asyncio.run(scenario())


def test_local_store_error_surfaces_after_batch(
    store: FakeMailStore,
    db: StateDb,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """One failing write does not stop the batch, but the cycle reports it."""
    store.add("INBOX/Decl", "<bad@x>")
    store.add("INBOX/Decl", "<good@x>")
    original = db.apply_observation

    def flaky(**kwargs: Any) -> Any:
        if kwargs["item"].id == "<bad@x>":
            raise LocalStoreError("disk full")
        return original(**kwargs)

    monkeypatch.setattr(db, "apply_observation", flaky)

    async def scenario() -> None:
        engine = await _engine(store, db)
        with pytest.raises(LocalStoreError):
            await engine.full_reconcile()

    asyncio.run(scenario())
    assert db.get_message("<good@x>") is not None


def test_push_change_applies_targeted_fetch(store: FakeMailStore, db: StateDb) -> None:
    """A change notification refetches the item and records the read."""
    store.add("INBOX/Decl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.set_read("<1@x>")
        result = await engine.handle_change(
            ItemChange(item_id="<1@x>", kind=ChangeKind.changed, folder_path="INBOX/Decl"),
        )
        assert result is not None
        assert result.events == [EventType.read]

    asyncio.run(scenario())


def test_push_removal_requests_full_reconcile(store: FakeMailStore, db: StateDb) -> None:
    """A vanished untreated item triggers a reconciliation of its folder, not a direct treatment."""
    store.add("INBOX/Decl", "<1@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        await engine.full_reconcile()
        store.remove("<1@x>")

        result = await engine.handle_change(
            ItemChange(item_id="<1@x>", kind=ChangeKind.removed, folder_path="INBOX/Decl"),
        )
        assert result is None
        assert engine.pending_reconciles == {"INBOX/Decl"}

        report = await engine.full_reconcile(sorted(engine.pending_reconciles))
        assert report.treated == 1
        assert engine.pending_reconciles == set()

    asyncio.run(scenario())


def test_push_for_unmonitored_unknown_item_is_ignored(store: FakeMailStore, db: StateDb) -> None:
    """Items never seen in a monitored folder are not inserted from pushes."""
    store.add("Archive", "<9@x>")

    async def scenario() -> None:
        engine = await _engine(store, db)
        result = await engine.handle_change(ItemChange(item_id="<9@x>", kind=ChangeKind.added))
        assert result is None

    asyncio.run(scenario())
    assert db.get_message("<9@x>") is None
