"""Validated domain models (Pydantic)."""

from __future__ import annotations

from mail_monitor.models.remote import ItemChange, RemoteFolder, RemoteItem
from mail_monitor.models.types import (
    ChangeKind,
    ConnectionState,
    EventType,
    SummaryReport,
    SyncMode,
    TreatedPolicy,
    UpsertOutcome,
)

__all__ = [
    "ChangeKind",
    "ConnectionState",
    "EventType",
    "ItemChange",
    "RemoteFolder",
    "RemoteItem",
    "SummaryReport",
    "SyncMode",
    "TreatedPolicy",
    "UpsertOutcome",
]
