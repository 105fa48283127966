"""Tests for header normalization and message identities."""

from __future__ import annotations

from datetime import UTC, datetime

from mail_monitor.utils.email import normalize_message_id, parse_identity_headers, primary_address
from mail_monitor.utils.fingerprint import FINGERPRINT_PREFIX, compute_fingerprint, stable_item_id


def test_normalize_message_id() -> None:
    """normalize_message_id should handle empty and canonical forms."""
    assert normalize_message_id(None) is None
    assert normalize_message_id("") is None
    assert normalize_message_id("<>") is None
    assert normalize_message_id(" <ABC@EXAMPLE.COM> ") == "<abc@example.com>"
    assert normalize_message_id("<a@b> extra") == "<a@b>"


def test_primary_address() -> None:
    """primary_address lowercases the first parsed address."""
    assert primary_address("Alice <ALICE@example.com>, bob@example.com") == "alice@example.com"
    assert primary_address(None) == ""


def test_parse_identity_headers_decodes_values() -> None:
    """Encoded subjects are decoded and dates parsed as aware datetimes."""
    headers = parse_identity_headers(
        b"Message-ID: <X@Y>\r\nSubject: =?utf-8?q?R=C3=A8glement?=\r\nDate: Mon, 6 Jan 2025 09:00:00 +0000\r\n\r\n",
    )
    assert headers.message_id_norm == "<x@y>"
    assert headers.subject == "Règlement"
    assert headers.from_ is None
    assert headers.date == datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


def test_identity_prefers_message_id_then_fingerprint() -> None:
    """Message-ID wins; without it the fingerprint is deterministic and size-sensitive."""
    with_id = parse_identity_headers(b"Message-ID: <A@B>\r\nSubject: s\r\n\r\n")
    assert stable_item_id(with_id, size=10) == "<a@b>"

    without_id = parse_identity_headers(b"Subject: s\r\nFrom: a@b\r\n\r\n")
    first = stable_item_id(without_id, size=10)
    assert first.startswith(FINGERPRINT_PREFIX)
    assert first == compute_fingerprint(without_id, size=10)
    assert first != compute_fingerprint(without_id, size=11)
