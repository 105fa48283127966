"""Pydantic models for database state."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from mail_monitor.models.base import AppModel
from mail_monitor.models.types import EventType, UpsertOutcome


class MessageRow(AppModel):
    """Row model for the messages table."""

    id: int = Field(ge=1)
    remote_id: str = Field(min_length=1)
    subject: str
    sender: str
    folder_path: str = Field(min_length=1)
    category: str
    is_read: bool
    received_time: datetime
    treated_time: datetime | None = None
    last_event_type: EventType
    size_bytes: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime

    @property
    def is_treated(self) -> bool:
        """Return True once the message reached its terminal state."""
        return self.treated_time is not None


class EventRow(AppModel):
    """Row model for the append-only events table."""

    id: int = Field(ge=1)
    message_id: int = Field(ge=1)
    event_type: EventType
    event_time: datetime
    detail: str = ""


class FolderConfigRow(AppModel):
    """Row model for the folder_configs table."""

    folder_path: str = Field(min_length=1)
    category: str = Field(min_length=1)
    display_name: str = ""
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class WeeklyBucketRow(AppModel):
    """Row model for the weekly_buckets table."""

    week_id: str = Field(pattern=r"^S\d{2}-\d{4}$")
    category: str
    received: int = Field(default=0, ge=0)
    treated: int = Field(default=0, ge=0)
    manual_adjustment: int = 0
    stock_begin: int = 0
    stock_end: int = 0

    @model_validator(mode="after")
    def _conservation(self) -> WeeklyBucketRow:
        """Reject buckets that break the stock conservation law."""
        expected = self.stock_begin + self.received - self.treated - self.manual_adjustment
        if self.stock_end != expected:
            msg = (
                f"stock_end={self.stock_end} for {self.week_id}/{self.category} "
                f"does not match computed {expected}"
            )
            raise ValueError(msg)
        return self


class WeeklyCommentRow(AppModel):
    """Row model for the weekly_comments table."""

    id: int = Field(ge=1)
    week_id: str = Field(pattern=r"^S\d{2}-\d{4}$")
    text: str = Field(min_length=1)
    author: str = ""
    created_at: datetime


class WeeklyAdjustmentRow(AppModel):
    """Row model for the weekly_adjustments table."""

    id: int = Field(ge=1)
    week_id: str = Field(pattern=r"^S\d{2}-\d{4}$")
    category: str = Field(min_length=1)
    delta: int
    reason: str = ""
    author: str = ""
    created_at: datetime


class WeeklyHistoryRow(AppModel):
    """Weekly counts kept without message rows (purged messages or imported activity)."""

    week_id: str = Field(pattern=r"^S\d{2}-\d{4}$")
    category: str = Field(min_length=1)
    source: str = "imported"
    received: int = Field(default=0, ge=0)
    treated: int = Field(default=0, ge=0)


class UpsertResult(AppModel):
    """Outcome of applying one remote observation to the local store."""

    remote_id: str
    outcome: UpsertOutcome
    events: list[EventType] = Field(default_factory=list)
    message_id: int | None = None
