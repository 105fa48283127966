"""Remote mail store capability interface and its error taxonomy."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from mail_monitor.models.remote import RemoteFolder, RemoteItem
from mail_monitor.models.types import ChangeKind

ChangeCallback = Callable[[str, ChangeKind], None]


class RemoteStoreError(RuntimeError):
    """Base class for remote store failures.

    Attributes:
        operation: Name of the remote operation that failed.
        folder: Folder path involved, if any.
        item_id: Remote item identity involved, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        folder: str | None = None,
        item_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.folder = folder
        self.item_id = item_id

    def log_context(self) -> dict[str, str | None]:
        """Return structured fields for logging `extra=`."""
        return {"operation": self.operation, "folder": self.folder, "item_id": self.item_id}


class TransientRemoteError(RemoteStoreError):
    """Timeout or momentary unavailability; retried on the next attempt or cycle."""


class PermanentEnvironmentError(RemoteStoreError):
    """The capability is structurally absent; synchronization is disabled."""


class SubscriptionUnavailableError(RemoteStoreError):
    """The store cannot push change notifications; callers fall back to polling."""


class DataIntegrityError(RemoteStoreError):
    """A remote response lacks required fields; the item is skipped."""


@runtime_checkable
class Subscription(Protocol):
    """Handle returned by `RemoteMailStore.subscribe`."""

    async def close(self) -> None:
        """Stop delivering notifications."""
        ...


@runtime_checkable
class RemoteMailStore(Protocol):
    """Capability surface the monitor needs from a remote mail store.

    Listing methods return raw mappings; `parse_remote_item` validates them so
    that a single malformed item never fails a whole listing.
    """

    async def check_environment(self) -> None:
        """Raise PermanentEnvironmentError if the store can never be reached."""
        ...

    async def open(self) -> dict[str, Any]:
        """Open the link and return capability metadata."""
        ...

    async def close(self) -> None:
        """Close the link."""
        ...

    async def probe(self) -> None:
        """Cheap liveness check; raise TransientRemoteError on failure."""
        ...

    async def list_folders(self) -> list[RemoteFolder]:
        """List folders available on the store."""
        ...

    async def list_items(
        self,
        folder_path: str,
        window_size: int | None = None,
    ) -> list[Mapping[str, Any]]:
        """List the items of a folder, newest `window_size` only when given."""
        ...

    async def get_item(self, item_id: str) -> Mapping[str, Any] | None:
        """Fetch one item by identity, or None if it no longer exists."""
        ...

    async def subscribe(self, folder_path: str, on_change: ChangeCallback) -> Subscription:
        """Register for change notifications or raise SubscriptionUnavailableError."""
        ...


def parse_remote_item(raw: Mapping[str, Any], *, folder_path: str | None = None) -> RemoteItem:
    """Validate a raw remote item.

    Args:
        raw: Mapping returned by the store adapter.
        folder_path: Folder the item was listed from, used when the item omits it.

    Returns:
        Validated RemoteItem.

    Raises:
        DataIntegrityError: If required fields are missing or malformed.
    """
    data = dict(raw)
    if folder_path is not None and not (data.get("folder_path") or data.get("folderPath")):
        data["folder_path"] = folder_path
    try:
        return RemoteItem.model_validate(data)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]})
        raise DataIntegrityError(
            f"Remote item failed validation on fields {fields}",
            operation="parse_item",
            folder=folder_path,
            item_id=str(raw.get("id")) if raw.get("id") else None,
        ) from exc
