"""Tests for the log formatters."""

from __future__ import annotations

import json
import logging

from mail_monitor.utils.logging import ContextLogFormatter, JsonLogFormatter


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("mail_monitor.sync", logging.WARNING, __file__, 1, "skipped %s", ("x",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_groups_sync_context() -> None:
    """Context keys go under ctx; unset ones are left out; other extras stay top-level."""
    payload = json.loads(
        JsonLogFormatter().format(_record(operation="list_items", folder="INBOX", item_id=None, inserted=3)),
    )
    assert payload["msg"] == "skipped x"
    assert payload["level"] == "WARNING"
    assert payload["ctx"] == {"operation": "list_items", "folder": "INBOX"}
    assert payload["inserted"] == 3
    assert "item_id" not in payload


def test_context_formatter_appends_present_keys() -> None:
    """The human format lists only the context keys that are set."""
    formatter = ContextLogFormatter(fmt="%(levelname)s %(message)s")
    assert formatter.format(_record(folder="INBOX")) == "WARNING skipped x [folder=INBOX]"
    assert formatter.format(_record()) == "WARNING skipped x"
