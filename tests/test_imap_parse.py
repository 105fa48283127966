"""Tests for IMAP response parsing and the IMAP store item mapping."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from mail_monitor.config.settings import ImapSettings
from mail_monitor.imap.client import (
    FetchSummary,
    MailboxEntry,
    _imap_quote,
    _parse_fetch_summaries,
    _parse_list_response,
    _parse_search_response,
    parse_internal_date,
)
from mail_monitor.imap.store import ImapMailStore
from mail_monitor.models.types import ChangeKind
from mail_monitor.remote.base import (
    PermanentEnvironmentError,
    SubscriptionUnavailableError,
    parse_remote_item,
)

HEADER = (
    b"Message-ID: <ABC@Example.com>\r\n"
    b"Subject: =?utf-8?q?D=C3=A9claration?=\r\n"
    b"From: Alice <ALICE@example.com>\r\n"
    b"Date: Mon, 6 Jan 2025 09:00:00 +0100\r\n"
    b"\r\n"
)


def _store(**overrides: object) -> ImapMailStore:
    values: dict[str, object] = {
        "host": "imap.example.com",
        "port": 993,
        "username": "user@example.com",
        "app_password": "secret",
        "ssl": True,
        "treated_flags": ["\\Deleted"],
    }
    values.update(overrides)
    return ImapMailStore(settings=ImapSettings.model_validate(values))


def test_parse_list_response_flags_selectability() -> None:
    """LIST parsing keeps quoted, unquoted and \\Noselect mailboxes once each."""
    lines = [
        b'* LIST (\\HasNoChildren) "/" "INBOX"\r\n',
        b'* LIST (\\HasNoChildren) "/" "Sent Messages"\r\n',
        b'* LIST (\\Noselect \\HasChildren) "/" "Archive"\r\n',
        b'* LIST (\\HasNoChildren) "/" INBOX\r\n',
    ]

    assert _parse_list_response(lines) == [
        MailboxEntry(name="INBOX", selectable=True),
        MailboxEntry(name="Sent Messages", selectable=True),
        MailboxEntry(name="Archive", selectable=False),
    ]


def test_parse_list_response_handles_literal_mailbox_name() -> None:
    """LIST parsing reads literal mailbox names from the next line."""
    lines = [
        b'* LIST (\\HasNoChildren) "/" {12}\r\n',
        b"Sent Messages\r\n",
    ]
    assert _parse_list_response(lines) == [MailboxEntry(name="Sent Messages", selectable=True)]


def test_parse_search_response() -> None:
    """UID SEARCH lines yield integers; status lines are ignored."""
    lines = [b"* SEARCH 3 10 42", b"SEARCH completed"]
    assert _parse_search_response(lines) == [3, 10, 42]


def test_parse_internal_date_converts_to_utc() -> None:
    """INTERNALDATE offsets are normalized to UTC."""
    assert parse_internal_date(b"06-Jan-2025 09:00:00 +0100") == datetime(2025, 1, 6, 8, 0, tzinfo=UTC)
    assert parse_internal_date("not a date") is None


def test_parse_fetch_summaries_with_header_literals() -> None:
    """Each FETCH item yields flags, date, size and the header literal."""
    lines = [
        b'1 FETCH (UID 7 FLAGS (\\Seen \\Deleted) INTERNALDATE "06-Jan-2025 09:00:00 +0100" '
        b"RFC822.SIZE 2048 BODY[HEADER.FIELDS (MESSAGE-ID SUBJECT FROM DATE)] {120}",
        bytearray(HEADER),
        b")",
        b'2 FETCH (UID 9 FLAGS () INTERNALDATE "07-Jan-2025 10:00:00 +0000" '
        b"RFC822.SIZE 512 BODY[HEADER.FIELDS (MESSAGE-ID SUBJECT FROM DATE)] {2}",
        bytearray(b"\r\n"),
        b")",
        b"Fetch completed.",
    ]

    summaries = _parse_fetch_summaries(lines)

    assert [s.uid for s in summaries] == [7, 9]
    assert summaries[0].flags == frozenset({"\\Seen", "\\Deleted"})
    assert summaries[0].size == 2048
    assert summaries[0].header_bytes == HEADER
    assert summaries[1].flags == frozenset()
    assert summaries[1].internal_date == datetime(2025, 1, 7, 10, 0, tzinfo=UTC)


def test_summary_maps_to_valid_remote_item() -> None:
    """Store items use the normalized Message-ID and report read and treated flags."""
    summary = FetchSummary(
        uid=7,
        flags=frozenset({"\\Seen", "\\Deleted"}),
        internal_date=datetime(2025, 1, 6, 8, 0, tzinfo=UTC),
        size=2048,
        header_bytes=HEADER,
    )

    raw = _store()._summary_to_item("INBOX/Decl", summary)
    item = parse_remote_item(raw)

    assert item.id == "<abc@example.com>"
    assert item.subject == "Déclaration"
    assert item.sender == "alice@example.com"
    assert item.is_read
    assert item.treated
    assert item.folder_path == "INBOX/Decl"


def test_summary_without_message_id_uses_fingerprint() -> None:
    """Messages lacking Message-ID get a stable fingerprint identity."""
    summary = FetchSummary(
        uid=1,
        flags=frozenset(),
        internal_date=datetime(2025, 1, 6, 8, 0, tzinfo=UTC),
        size=10,
        header_bytes=b"Subject: hello\r\n\r\n",
    )
    store = _store()
    first = store._summary_to_item("INBOX", summary)
    second = store._summary_to_item("INBOX", summary)
    assert str(first["id"]).startswith("fp:")
    assert first["id"] == second["id"]
    assert first["unread"] is True
    assert first["treated"] is False


def test_imap_store_is_poll_only_and_checks_port() -> None:
    """subscribe is unavailable and an invalid port is a permanent environment error."""

    def on_change(item_id: str, kind: ChangeKind) -> None:
        raise AssertionError("never called")

    with pytest.raises(SubscriptionUnavailableError):
        asyncio.run(_store().subscribe("INBOX", on_change))
    with pytest.raises(PermanentEnvironmentError):
        asyncio.run(_store(port=0).check_environment())


def test_imap_quote() -> None:
    """Mailbox names are quoted with escapes."""
    assert _imap_quote('Dossier "A"') == '"Dossier \\"A\\""'
    assert _imap_quote("") == '""'
