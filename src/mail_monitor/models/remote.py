"""Validated shapes of remote mail store responses."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import AliasChoices, Field, field_validator

from mail_monitor.models.base import Observation
from mail_monitor.models.types import ChangeKind

NO_SUBJECT = "(no subject)"


class RemoteFolder(Observation):
    """A folder as listed by the remote store."""

    path: str = Field(min_length=1)
    display_name: str = Field(
        default="",
        validation_alias=AliasChoices("display_name", "displayName"),
    )


class RemoteItem(Observation):
    """A message as observed in a remote folder listing.

    Adapters may hand over either snake_case or camelCase keys
    (`receivedTime`, `unreadFlag`, `folderPath`).
    """

    id: str = Field(min_length=1)
    subject: str = NO_SUBJECT
    sender: str = ""
    received_time: datetime = Field(
        validation_alias=AliasChoices("received_time", "receivedTime"),
    )
    unread: bool = Field(validation_alias=AliasChoices("unread", "unreadFlag"))
    size: int = Field(default=0, ge=0)
    folder_path: str = Field(
        min_length=1,
        validation_alias=AliasChoices("folder_path", "folderPath"),
    )
    treated: bool = False

    @field_validator("subject", mode="before")
    @classmethod
    def _blank_subject(cls, value: object) -> object:
        """Replace missing or blank subjects with a placeholder."""
        if value is None:
            return NO_SUBJECT
        if isinstance(value, str) and not value.strip():
            return NO_SUBJECT
        return value

    @field_validator("sender", mode="before")
    @classmethod
    def _none_sender(cls, value: object) -> object:
        """Accept a missing sender as an empty string."""
        return "" if value is None else value

    @field_validator("received_time")
    @classmethod
    def _aware_received_time(cls, value: datetime) -> datetime:
        """Assume UTC for naive timestamps."""
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    @property
    def is_read(self) -> bool:
        """Return the read flag (inverse of the remote unread flag)."""
        return not self.unread


class ItemChange(Observation):
    """Single-item notification carried on the change channel."""

    item_id: str = Field(min_length=1)
    kind: ChangeKind
    folder_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("folder_path", "folderPath"),
    )
