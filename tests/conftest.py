"""Shared fixtures: an in-memory remote mail store and a temporary sqlite store."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from mail_monitor.models.remote import RemoteFolder
from mail_monitor.models.types import ChangeKind
from mail_monitor.remote.base import (
    ChangeCallback,
    SubscriptionUnavailableError,
    TransientRemoteError,
)
from mail_monitor.storage.state_db import StateDb

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class FakeSubscription:
    """Subscription handle recording whether it was closed."""

    def __init__(self, store: FakeMailStore, folder_path: str) -> None:
        self._store = store
        self._folder_path = folder_path
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        self._store.subscribers.pop(self._folder_path, None)


class FakeMailStore:
    """In-memory RemoteMailStore with switchable failures."""

    def __init__(self) -> None:
        self.folders: dict[str, dict[str, dict[str, Any]]] = {}
        self.environment_error: Exception | None = None
        self.open_error: Exception | None = None
        self.open_failures = 0
        self.probe_error: Exception | None = None
        self.list_errors: dict[str, Exception] = {}
        self.list_delay_s = 0.0
        self.push = True
        self.subscribers: dict[str, ChangeCallback] = {}
        self.open_calls = 0
        self.close_calls = 0
        self.list_calls: list[tuple[str, int | None]] = []
        self.extra_raw: dict[str, list[dict[str, Any]]] = {}

    def add(
        self,
        folder_path: str,
        item_id: str,
        *,
        subject: str = "subject",
        unread: bool = True,
        received: datetime = T0,
        treated: bool = False,
        size: int = 100,
    ) -> dict[str, Any]:
        item = {
            "id": item_id,
            "subject": subject,
            "sender": "sender@example.com",
            "receivedTime": received.isoformat(),
            "unreadFlag": unread,
            "size": size,
            "folderPath": folder_path,
            "treated": treated,
        }
        self.folders.setdefault(folder_path, {})[item_id] = item
        return item

    def find(self, item_id: str) -> dict[str, Any] | None:
        for items in self.folders.values():
            if item_id in items:
                return items[item_id]
        return None

    def remove(self, item_id: str) -> None:
        for items in self.folders.values():
            items.pop(item_id, None)

    def move(self, item_id: str, folder_path: str) -> None:
        item = self.find(item_id)
        assert item is not None
        self.remove(item_id)
        item["folderPath"] = folder_path
        self.folders.setdefault(folder_path, {})[item_id] = item

    def set_read(self, item_id: str, read: bool = True) -> None:
        item = self.find(item_id)
        assert item is not None
        item["unreadFlag"] = not read

    def emit(self, folder_path: str, item_id: str, kind: ChangeKind = ChangeKind.changed) -> None:
        self.subscribers[folder_path](item_id, kind)

    async def check_environment(self) -> None:
        if self.environment_error is not None:
            raise self.environment_error

    async def open(self) -> dict[str, Any]:
        self.open_calls += 1
        if self.open_error is not None:
            raise self.open_error
        if self.open_failures > 0:
            self.open_failures -= 1
            raise TransientRemoteError("connection refused", operation="open")
        return {"kind": "fake", "push": self.push}

    async def close(self) -> None:
        self.close_calls += 1

    async def probe(self) -> None:
        if self.probe_error is not None:
            raise self.probe_error

    async def list_folders(self) -> list[RemoteFolder]:
        return [RemoteFolder(path=path) for path in sorted(self.folders)]

    async def list_items(
        self,
        folder_path: str,
        window_size: int | None = None,
    ) -> list[Mapping[str, Any]]:
        self.list_calls.append((folder_path, window_size))
        if self.list_delay_s:
            await asyncio.sleep(self.list_delay_s)
        if folder_path in self.list_errors:
            raise self.list_errors[folder_path]
        items = sorted(
            self.folders.get(folder_path, {}).values(),
            key=lambda item: str(item["receivedTime"]),
        )
        items = [dict(item) for item in items] + self.extra_raw.get(folder_path, [])
        if window_size is not None:
            items = items[-window_size:]
        return items

    async def get_item(self, item_id: str) -> Mapping[str, Any] | None:
        item = self.find(item_id)
        return dict(item) if item is not None else None

    async def subscribe(self, folder_path: str, on_change: ChangeCallback) -> FakeSubscription:
        if not self.push:
            raise SubscriptionUnavailableError("poll only", operation="subscribe", folder=folder_path)
        self.subscribers[folder_path] = on_change
        return FakeSubscription(self, folder_path)


async def no_sleep(_: float) -> None:
    """Backoff replacement that returns immediately."""


@pytest.fixture
def store() -> FakeMailStore:
    return FakeMailStore()


@pytest.fixture
def db(tmp_path: Path) -> Iterator[StateDb]:
    state = StateDb(sqlite_path=tmp_path / "monitor.sqlite3")
    state.init_schema()
    yield state
    state.close()
