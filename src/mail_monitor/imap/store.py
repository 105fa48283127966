"""IMAP implementation of the remote mail store capability."""

from __future__ import annotations

import logging
import ssl as ssl_module
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from mail_monitor.config.settings import ImapSettings
from mail_monitor.imap.client import FetchSummary, ImapAuthError, ImapClient, ImapError
from mail_monitor.models.remote import RemoteFolder
from mail_monitor.remote.base import (
    ChangeCallback,
    PermanentEnvironmentError,
    Subscription,
    SubscriptionUnavailableError,
    TransientRemoteError,
)
from mail_monitor.utils.email import parse_identity_headers, primary_address
from mail_monitor.utils.fingerprint import FINGERPRINT_PREFIX, stable_item_id

logger = logging.getLogger(__name__)

FETCH_CHUNK = 200


class ImapMailStore:
    """Remote mail store backed by an IMAP account.

    Item identity is the normalized Message-ID (fingerprint fallback). The
    store remembers where each identity was last listed so `get_item` can
    refetch it cheaply; items carrying one of `treated_flags` are reported as
    explicitly treated. IMAP offers no per-item push here, so `subscribe`
    always raises SubscriptionUnavailableError.
    """

    def __init__(self, *, settings: ImapSettings, timeout_seconds: float = 30.0) -> None:
        """Initialize the store.

        Args:
            settings: IMAP connection settings.
            timeout_seconds: Network timeout for individual IMAP commands.
        """
        self._s = settings
        self._timeout = timeout_seconds
        self._treated_flags = {flag.lower() for flag in settings.treated_flags}
        self._client = ImapClient(
            host=settings.host,
            port=settings.port,
            ssl=settings.ssl,
            timeout_seconds=timeout_seconds,
        )
        self._locations: dict[str, tuple[str, int]] = {}
        self._listed_folders: set[str] = set()

    async def check_environment(self) -> None:
        """Reject configurations that can never connect.

        Raises:
            PermanentEnvironmentError: On an invalid port or unusable TLS stack.
        """
        if not 0 < self._s.port < 65536:
            raise PermanentEnvironmentError(
                f"Invalid IMAP port {self._s.port}",
                operation="check_environment",
            )
        if self._s.ssl:
            try:
                ssl_module.create_default_context()
            except ssl_module.SSLError as exc:
                raise PermanentEnvironmentError(
                    f"TLS is not available: {exc}",
                    operation="check_environment",
                ) from exc

    async def open(self) -> dict[str, Any]:
        """Connect, authenticate and return server capability metadata.

        Raises:
            PermanentEnvironmentError: If credentials are rejected or IMAP4rev1 is missing.
            TransientRemoteError: On network failures or timeouts.
        """
        try:
            await self._client.connect()
            await self._client.login(username=self._s.username, app_password=self._s.app_password)
            capabilities = await self._client.capabilities()
        except ImapAuthError as exc:
            self._client.drop()
            raise PermanentEnvironmentError(str(exc), operation="open") from exc
        except (ImapError, OSError, TimeoutError) as exc:
            self._client.drop()
            raise TransientRemoteError(f"IMAP connect failed: {exc!r}", operation="open") from exc

        if capabilities and not any(cap.startswith("IMAP4") for cap in capabilities):
            await self.close()
            raise PermanentEnvironmentError(
                f"Server does not advertise IMAP4rev1: {capabilities}",
                operation="open",
            )
        return {
            "kind": "imap",
            "host": self._s.host,
            "port": self._s.port,
            "capabilities": capabilities,
            "push": False,
        }

    async def close(self) -> None:
        """Logout, ignoring errors from an already broken connection."""
        try:
            await self._client.logout()
        except (ImapError, OSError, TimeoutError) as exc:
            logger.debug("IMAP logout failed: %r", exc)
            self._client.drop()

    async def probe(self) -> None:
        """Send NOOP.

        Raises:
            TransientRemoteError: If the server does not answer.
        """
        try:
            await self._client.noop()
        except (ImapError, OSError, TimeoutError) as exc:
            self._client.drop()
            raise TransientRemoteError(f"IMAP NOOP failed: {exc!r}", operation="probe") from exc

    async def list_folders(self) -> list[RemoteFolder]:
        """List selectable folders."""
        try:
            entries = await self._client.list_mailboxes()
        except (ImapError, OSError, TimeoutError) as exc:
            raise TransientRemoteError(
                f"IMAP LIST failed: {exc!r}",
                operation="list_folders",
            ) from exc
        return [
            RemoteFolder(path=entry.name, display_name=entry.name.rsplit("/", 1)[-1])
            for entry in entries
            if entry.selectable
        ]

    async def list_items(
        self,
        folder_path: str,
        window_size: int | None = None,
    ) -> list[Mapping[str, Any]]:
        """List a folder's items, newest `window_size` only when given.

        Raises:
            TransientRemoteError: On IMAP or network failures.
        """
        try:
            uids = await self._client.search_uids(folder_path, ["ALL"])
            if window_size is not None:
                uids = uids[-window_size:]
            summaries: list[FetchSummary] = []
            for idx in range(0, len(uids), FETCH_CHUNK):
                chunk = uids[idx : idx + FETCH_CHUNK]
                summaries.extend(await self._client.fetch_summaries(folder_path, chunk))
        except (ImapError, OSError, TimeoutError) as exc:
            raise TransientRemoteError(
                f"IMAP listing failed: {exc!r}",
                operation="list_items",
                folder=folder_path,
            ) from exc

        self._listed_folders.add(folder_path)
        items = [self._summary_to_item(folder_path, summary) for summary in summaries]
        for item in items:
            self._locations[item["id"]] = (folder_path, int(item["uid"]))
        return items

    async def get_item(self, item_id: str) -> Mapping[str, Any] | None:
        """Refetch one item at its last known location, searching listed folders if it moved.

        Raises:
            TransientRemoteError: On IMAP or network failures.
        """
        try:
            location = self._locations.get(item_id)
            if location is not None:
                folder, uid = location
                found = await self._fetch_one(folder, uid, item_id)
                if found is not None:
                    return found

            if item_id.startswith(FINGERPRINT_PREFIX):
                return None

            message_id = item_id.strip("<>")
            for folder in sorted(self._listed_folders):
                uids = await self._client.search_uids(folder, ["HEADER", "Message-ID", f'"{message_id}"'])
                for uid in uids:
                    found = await self._fetch_one(folder, uid, item_id)
                    if found is not None:
                        return found
        except (ImapError, OSError, TimeoutError) as exc:
            raise TransientRemoteError(
                f"IMAP get_item failed: {exc!r}",
                operation="get_item",
                item_id=item_id,
            ) from exc
        self._locations.pop(item_id, None)
        return None

    async def subscribe(self, folder_path: str, on_change: ChangeCallback) -> Subscription:
        """IMAP change notifications are not offered by this adapter."""
        raise SubscriptionUnavailableError(
            "IMAP store is poll-only",
            operation="subscribe",
            folder=folder_path,
        )

    async def _fetch_one(self, folder: str, uid: int, item_id: str) -> Mapping[str, Any] | None:
        """Fetch a single UID and return it if it still carries `item_id`."""
        summaries = await self._client.fetch_summaries(folder, [uid])
        for summary in summaries:
            item = self._summary_to_item(folder, summary)
            if item["id"] == item_id:
                self._locations[item_id] = (folder, summary.uid)
                return item
        return None

    def _summary_to_item(self, folder_path: str, summary: FetchSummary) -> dict[str, Any]:
        """Convert a FETCH summary to the raw item mapping."""
        headers = parse_identity_headers(summary.header_bytes)
        received: datetime | None = summary.internal_date or headers.date
        flags = {flag.lower() for flag in summary.flags}
        return {
            "id": stable_item_id(headers, size=summary.size),
            "uid": summary.uid,
            "subject": headers.subject,
            "sender": primary_address(headers.from_),
            "received_time": received.astimezone(UTC) if received else None,
            "unread": "\\seen" not in flags,
            "size": summary.size,
            "folder_path": folder_path,
            "treated": bool(flags & self._treated_flags),
        }

