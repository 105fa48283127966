"""Tests for the sqlite local store."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import T0

from mail_monitor.models.remote import RemoteItem
from mail_monitor.models.types import EventType, TreatedPolicy, UpsertOutcome
from mail_monitor.storage.state_db import LocalStoreError, StateDb


def _item(**overrides: object) -> RemoteItem:
    data: dict[str, object] = {
        "id": "<a@example.com>",
        "subject": "Declaration 42",
        "sender": "client@example.com",
        "received_time": T0,
        "unread": True,
        "size": 10,
        "folder_path": "INBOX/Decl",
    }
    data.update(overrides)
    return RemoteItem.model_validate(data)


def test_insert_then_identical_observation_writes_nothing(db: StateDb) -> None:
    """A repeated observation must not create rows or events."""
    first = db.apply_observation(item=_item(), category="Declarations", now=T0)
    assert first.outcome == UpsertOutcome.inserted
    assert first.events == [EventType.received]

    second = db.apply_observation(item=_item(), category="Declarations", now=T0 + timedelta(hours=1))
    assert second.outcome == UpsertOutcome.unchanged
    assert second.events == []
    assert db.count_events() == 1

    row = db.get_message("<a@example.com>")
    assert row is not None
    assert row.updated_at == T0


def test_read_unread_and_subject_changes(db: StateDb) -> None:
    """Read flips log events; subject changes update silently."""
    db.apply_observation(item=_item(), category="Declarations", now=T0)

    read = db.apply_observation(item=_item(unread=False), category="Declarations", now=T0)
    assert read.events == [EventType.read]

    unread = db.apply_observation(item=_item(unread=True), category="Declarations", now=T0)
    assert unread.events == [EventType.unread]

    renamed = db.apply_observation(item=_item(subject="Re: Declaration 42"), category="Declarations", now=T0)
    assert renamed.outcome == UpsertOutcome.updated
    assert renamed.events == []

    row = db.get_message("<a@example.com>")
    assert row is not None
    assert row.subject == "Re: Declaration 42"
    assert row.last_event_type == EventType.unread
    assert [e.event_type for e in db.events_for(row.id)] == [
        EventType.received,
        EventType.read,
        EventType.unread,
    ]


def test_permissive_read_is_recorded_but_not_treated(db: StateDb) -> None:
    """Under the permissive policy a read is annotated but treated_time stays empty."""
    db.apply_observation(item=_item(), category="Declarations", now=T0)
    db.apply_observation(
        item=_item(unread=False),
        category="Declarations",
        policy=TreatedPolicy.permissive,
        now=T0,
    )

    row = db.get_message("<a@example.com>")
    assert row is not None
    assert row.treated_time is None
    read_event = db.events_for(row.id)[-1]
    assert read_event.event_type == EventType.read
    assert "counted as treated" in read_event.detail


def test_move_updates_category_only_for_monitored_target(db: StateDb) -> None:
    """A move into a monitored folder takes its category; an unmonitored target keeps it."""
    db.apply_observation(item=_item(), category="Declarations", now=T0)

    moved = db.apply_observation(item=_item(folder_path="INBOX/Regl"), category="Reglements", now=T0)
    assert moved.events == [EventType.moved]
    row = db.get_message("<a@example.com>")
    assert row is not None
    assert (row.folder_path, row.category) == ("INBOX/Regl", "Reglements")

    db.apply_observation(item=_item(folder_path="Archive"), category=None, now=T0)
    row = db.get_message("<a@example.com>")
    assert row is not None
    assert (row.folder_path, row.category) == ("Archive", "Reglements")


def test_explicit_treated_is_never_reverted(db: StateDb) -> None:
    """A treated signal is terminal even if a later observation lacks it."""
    db.apply_observation(item=_item(), category="Declarations", now=T0)
    treated_at = T0 + timedelta(days=2)

    result = db.apply_observation(item=_item(treated=True), category="Declarations", now=treated_at)
    assert result.events == [EventType.treated]

    again = db.apply_observation(item=_item(treated=False), category="Declarations", now=treated_at)
    assert again.outcome == UpsertOutcome.unchanged

    row = db.get_message("<a@example.com>")
    assert row is not None
    assert row.treated_time == treated_at
    assert db.mark_treated(message_id=row.id, detail="again") is False


def test_treated_time_never_precedes_received_time(db: StateDb) -> None:
    """Treatment observed with a clock behind received_time is clamped to it."""
    future = T0 + timedelta(days=3)
    db.apply_observation(item=_item(received_time=future), category="Declarations", now=T0)
    row = db.get_message("<a@example.com>")
    assert row is not None

    assert db.mark_treated(message_id=row.id, detail="absent", now=T0) is True
    row = db.get_message("<a@example.com>")
    assert row is not None
    assert row.treated_time == future


def test_unknown_item_requires_category(db: StateDb) -> None:
    """Inserting without a category is a programming error."""
    with pytest.raises(ValueError):
        db.apply_observation(item=_item(), category=None, now=T0)


def test_folder_reactivation_updates_existing_row(db: StateDb) -> None:
    """Re-adding a removed folder reactivates the same row with the new category."""
    db.add_folder(folder_path="INBOX/Decl", category="Declarations")
    assert db.remove_folder("INBOX/Decl") is True
    assert db.list_folders() == []
    assert db.remove_folder("INBOX/Decl") is False

    row = db.add_folder(folder_path="INBOX/Decl", category="Mails simples", display_name="Decl")
    assert row.is_active
    assert row.category == "Mails simples"
    assert len(db.list_folders(active_only=False)) == 1

    assert db.set_folder_category("INBOX/Decl", "Declarations") is True
    folder = db.get_folder("INBOX/Decl")
    assert folder is not None
    assert folder.category == "Declarations"


def test_purge_removes_only_old_treated_messages(db: StateDb) -> None:
    """Purge deletes treated rows older than the cutoff together with their events."""
    old = T0 - timedelta(days=400)
    db.apply_observation(item=_item(id="<old-treated@x>", received_time=old, treated=True), category="D", now=old)
    db.apply_observation(item=_item(id="<old-open@x>", received_time=old), category="D", now=old)
    db.apply_observation(item=_item(id="<new-treated@x>", treated=True), category="D", now=T0)

    deleted = db.purge_treated(older_than=T0 - timedelta(days=365))

    assert deleted == 1
    assert db.get_message("<old-treated@x>") is None
    assert db.get_message("<old-open@x>") is not None
    assert db.get_message("<new-treated@x>") is not None
    assert db.count_events() == 1 + 2
    archived = db.get_weekly_history(source="purged")
    assert [(h.week_id, h.category, h.received, h.treated) for h in archived] == [("S48-2023", "D", 1, 1)]


def test_config_values_roundtrip(db: StateDb) -> None:
    """Policy and initial stock persist in app_config."""
    assert db.get_treated_policy() == TreatedPolicy.strict
    db.set_treated_policy(TreatedPolicy.permissive)
    assert db.get_treated_policy() == TreatedPolicy.permissive

    db.set_initial_stock("Declarations", 12)
    db.set_initial_stock("Reglements", 3)
    assert db.get_initial_stock() == {"Declarations": 12, "Reglements": 3}


def test_queries_by_folder_and_category(db: StateDb) -> None:
    """Query helpers filter and count messages."""
    db.apply_observation(item=_item(id="<1@x>"), category="Declarations", now=T0)
    db.apply_observation(item=_item(id="<2@x>", folder_path="INBOX/Regl"), category="Reglements", now=T0)
    db.apply_observation(item=_item(id="<3@x>", treated=True), category="Declarations", now=T0)

    assert [m.remote_id for m in db.iter_messages(category="Declarations", treated=False)] == ["<1@x>"]
    assert db.untreated_in_folder("INBOX/Decl").keys() == {"<1@x>"}
    assert db.message_counts() == {"total": 3, "untreated": 2, "treated": 1, "unread": 3}
    assert db.counts_by_category()["Declarations"] == {"total": 2, "untreated": 1}
    assert db.counts_by_folder() == {"INBOX/Decl": 1, "INBOX/Regl": 1}
    assert [m.remote_id for m in db.recent_messages(limit=2)] == ["<3@x>", "<2@x>"]


def test_sqlite_errors_are_wrapped(db: StateDb) -> None:
    """sqlite failures surface as LocalStoreError."""
    db.close()
    with pytest.raises(LocalStoreError):
        db.message_counts()
