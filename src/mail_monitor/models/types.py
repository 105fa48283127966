"""Shared enums and lightweight Pydantic models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from mail_monitor.models.base import AppModel


class ConnectionState(StrEnum):
    """States of the link to the remote mail store."""

    unknown = "unknown"
    connecting = "connecting"
    connected = "connected"
    failed = "failed"
    disconnected = "disconnected"
    unavailable = "unavailable"


class EventType(StrEnum):
    """Lifecycle event types recorded for a message."""

    received = "received"
    read = "read"
    unread = "unread"
    moved = "moved"
    treated = "treated"


class ChangeKind(StrEnum):
    """Kinds of push notifications emitted by the remote store."""

    added = "added"
    changed = "changed"
    removed = "removed"


class TreatedPolicy(StrEnum):
    """Which signals count as a treatment in weekly metrics."""

    strict = "strict"
    permissive = "permissive"


class SyncMode(StrEnum):
    """Reconciliation modes of the sync engine."""

    full = "full"
    poll = "poll"
    push = "push"


class UpsertOutcome(StrEnum):
    """Result of applying one observation to the local store."""

    inserted = "inserted"
    updated = "updated"
    unchanged = "unchanged"


class SummaryReport(AppModel):
    """Summarized monitoring report emitted by the CLI."""

    created_at: datetime
    sqlite_path: str
    treated_policy: TreatedPolicy
    counts: dict[str, int] = Field(default_factory=dict)
    weeks: list[dict[str, object]] = Field(default_factory=list)
