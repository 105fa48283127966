"""Reconciliation of the local store against the remote mail store."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mail_monitor.connection.manager import ConnectionManager
from mail_monitor.models.remote import ItemChange, RemoteItem
from mail_monitor.models.state import FolderConfigRow, UpsertResult
from mail_monitor.models.types import ChangeKind, EventType, SyncMode, TreatedPolicy, UpsertOutcome
from mail_monitor.remote.base import DataIntegrityError, RemoteStoreError, parse_remote_item
from mail_monitor.storage.state_db import (
    CONFIG_LAST_FULL_SYNC,
    CONFIG_LAST_POLL_SYNC,
    LocalStoreError,
    StateDb,
)
from mail_monitor.sync.registry import FolderRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)



def _listed_in(listings: Iterable[tuple[FolderConfigRow, list[Mapping[str, Any]]]]) -> dict[str, set[str]]:
    """Map each listed item id to the folders whose listing contained it."""
    listed_in: dict[str, set[str]] = {}
    for config, raw_items in listings:
        for raw in raw_items:
            raw_id = str(raw.get("id") or "").strip()
            if raw_id:
                listed_in.setdefault(raw_id, set()).add(config.folder_path)
    return listed_in


@dataclass
class SyncReport:
    """Counters of one synchronization cycle."""

    mode: SyncMode
    started_at: datetime
    finished_at: datetime | None = None
    folders_ok: list[str] = field(default_factory=list)
    folders_failed: list[str] = field(default_factory=list)
    folders_skipped: list[str] = field(default_factory=list)
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    treated: int = 0
    skipped_items: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_s(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def record(self, result: UpsertResult) -> None:
        if result.outcome == UpsertOutcome.inserted:
            self.inserted += 1
        elif result.outcome == UpsertOutcome.updated:
            self.updated += 1
        else:
            self.unchanged += 1
        if EventType.treated in result.events:
            self.treated += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_s": self.duration_s,
            "folders_ok": list(self.folders_ok),
            "folders_failed": list(self.folders_failed),
            "folders_skipped": list(self.folders_skipped),
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "treated": self.treated,
            "skipped_items": self.skipped_items,
            "errors": list(self.errors),
        }


class SyncEngine:
    """Applies remote observations to the local store.

    Three entry points share one idempotent upsert: `full_reconcile` (the
    only mode that infers treatment from absence), `incremental_poll` and
    `handle_change`. Full reconciliation and polling exclude each other per
    folder through an asyncio.Lock; pushes are applied without locking and
    the last observation wins.
    """

    def __init__(
        self,
        *,
        connection: ConnectionManager,
        db: StateDb,
        registry: FolderRegistry,
        poll_window: int = 50,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the engine.

        Args:
            connection: Connection manager used for every remote call.
            db: Local store.
            registry: Monitored folder configuration.
            poll_window: Number of newest items fetched per folder when polling.
            now: Clock (injectable for tests).
        """
        self._conn = connection
        self._db = db
        self._registry = registry
        self._poll_window = poll_window
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._reconcile_requests: set[str] = set()
        self.last_reports: dict[SyncMode, SyncReport] = {}

    def lock_for(self, folder_path: str) -> asyncio.Lock:
        lock = self._locks.get(folder_path)
        if lock is None:
            lock = self._locks[folder_path] = asyncio.Lock()
        return lock

    @property
    def pending_reconciles(self) -> set[str]:
        """Folders for which a full reconciliation was requested."""
        return set(self._reconcile_requests)

    def request_full_reconcile(self, folder_path: str) -> None:
        if folder_path not in self._reconcile_requests:
            logger.info(
                "Full reconciliation requested",
                extra={"operation": "reconcile_request", "folder": folder_path, "item_id": None},
            )
        self._reconcile_requests.add(folder_path)

    def upsert(
        self,
        item: RemoteItem,
        folder_config: FolderConfigRow | None,
        *,
        policy: TreatedPolicy | None = None,
    ) -> UpsertResult:
        """Apply one observation; `folder_config` is None when its folder is not monitored."""
        return self._db.apply_observation(
            item=item,
            category=folder_config.category if folder_config is not None else None,
            policy=policy or self._db.get_treated_policy(),
            now=self._now(),
        )

    async def full_reconcile(self, folders: Iterable[str] | None = None) -> SyncReport:
        """Fetch every item of the target folders, upsert them, then infer treatment by absence.

        Args:
            folders: Folder paths to reconcile (defaults to all active folders).

        Returns:
            SyncReport of the cycle.

        Raises:
            LocalStoreError: After the batch, if any local write failed.
        """
        configs = self._select(folders)
        report = SyncReport(mode=SyncMode.full, started_at=self._now())
        store_error: LocalStoreError | None = None
        observed: dict[str, set[str]] = {}

        async with contextlib.AsyncExitStack() as stack:
            for config in sorted(configs, key=lambda c: c.folder_path):
                await stack.enter_async_context(self.lock_for(config.folder_path))

            policy = self._db.get_treated_policy()
            listings = await self._list_all(configs, None, report)
            listed_in = _listed_in(listings)
            for config, raw_items in listings:
                ids, complete, error = self._apply_batch(raw_items, config, policy, report, listed_in)
                store_error = store_error or error
                if complete:
                    observed[config.folder_path] = ids
                else:
                    logger.warning(
                        "Listing contained items without identity, absence inference skipped",
                        extra={"operation": "full_reconcile", "folder": config.folder_path, "item_id": None},
                    )

            for folder_path, ids in observed.items():
                try:
                    report.treated += self._infer_absence(folder_path, ids)
                except LocalStoreError as exc:
                    store_error = store_error or exc
                    report.errors.append(f"{folder_path}: {exc}")

        self._reconcile_requests.difference_update(report.folders_ok)
        return self._finish(report, store_error, CONFIG_LAST_FULL_SYNC)

    async def incremental_poll(self) -> SyncReport:
        """Fetch the newest `poll_window` items of every free folder and upsert them.

        Never infers treatment from absence: a window does not show the full folder.
        """
        report = SyncReport(mode=SyncMode.poll, started_at=self._now())
        store_error: LocalStoreError | None = None
        policy = self._db.get_treated_policy()

        async with contextlib.AsyncExitStack() as stack:
            free: list[FolderConfigRow] = []
            for config in self._registry.active():
                lock = self.lock_for(config.folder_path)
                if lock.locked():
                    report.folders_skipped.append(config.folder_path)
                    continue
                await stack.enter_async_context(lock)
                free.append(config)

            listings = await self._list_all(free, self._poll_window, report)
            listed_in = _listed_in(listings)
            for config, raw_items in listings:
                _, _, error = self._apply_batch(raw_items, config, policy, report, listed_in)
                store_error = store_error or error

        return self._finish(report, store_error, CONFIG_LAST_POLL_SYNC)

    async def handle_change(self, change: ItemChange) -> UpsertResult | None:
        """Apply one push notification with a targeted fetch.

        Returns:
            The upsert result, or None if nothing was applied.

        Raises:
            LocalStoreError: If the local write fails.
        """
        raw: Mapping[str, Any] | None = None
        if change.kind != ChangeKind.removed:
            try:
                raw = await self._conn.call(
                    "get_item",
                    lambda: self._conn.store.get_item(change.item_id),
                    folder=change.folder_path,
                    item_id=change.item_id,
                )
            except RemoteStoreError as exc:
                logger.warning("Push fetch failed: %s", exc, extra=exc.log_context())
                return None

        if raw is None:
            existing = self._db.get_message(change.item_id)
            if existing is not None and not existing.is_treated:
                self.request_full_reconcile(existing.folder_path)
            return None

        try:
            item = parse_remote_item(raw, folder_path=change.folder_path)
        except DataIntegrityError as exc:
            logger.warning("Skipping malformed pushed item: %s", exc, extra=exc.log_context())
            return None

        config = self._registry.get(item.folder_path)
        if config is None and self._db.get_message(item.id) is None:
            logger.debug(
                "Ignoring item outside monitored folders",
                extra={"operation": "handle_change", "folder": item.folder_path, "item_id": item.id},
            )
            return None

        result = self.upsert(item, config)
        if result.outcome != UpsertOutcome.unchanged:
            logger.info(
                "Push applied: %s %s",
                result.outcome.value,
                ",".join(e.value for e in result.events) or "-",
                extra={"operation": "handle_change", "folder": item.folder_path, "item_id": item.id},
            )
        return result

    def _select(self, folders: Iterable[str] | None) -> list[FolderConfigRow]:
        active = self._registry.active()
        if folders is None:
            return active
        wanted = set(folders)
        selected = [c for c in active if c.folder_path in wanted]
        for missing in sorted(wanted - {c.folder_path for c in selected}):
            logger.warning(
                "Folder is not monitored, not reconciled",
                extra={"operation": "full_reconcile", "folder": missing, "item_id": None},
            )
        return selected

    async def _list(
        self,
        folder_path: str,
        window_size: int | None,
        report: SyncReport,
    ) -> list[Mapping[str, Any]] | None:
        """List one folder; on remote failure mark it failed and return None."""
        try:
            return await self._conn.call(
                "list_items",
                lambda: self._conn.store.list_items(folder_path, window_size),
                folder=folder_path,
            )
        except RemoteStoreError as exc:
            report.folders_failed.append(folder_path)
            report.errors.append(f"{folder_path}: {exc}")
            logger.warning("Folder skipped this cycle: %s", exc, extra=exc.log_context())
            return None

    async def _list_all(
        self,
        configs: list[FolderConfigRow],
        window_size: int | None,
        report: SyncReport,
    ) -> list[tuple[FolderConfigRow, list[Mapping[str, Any]]]]:
        """List every folder of a cycle before anything is applied."""
        listings: list[tuple[FolderConfigRow, list[Mapping[str, Any]]]] = []
        for config in configs:
            raw_items = await self._list(config.folder_path, window_size, report)
            if raw_items is not None:
                listings.append((config, raw_items))
        return listings

    def _apply_batch(
        self,
        raw_items: list[Mapping[str, Any]],
        config: FolderConfigRow,
        policy: TreatedPolicy,
        report: SyncReport,
        listed_in: Mapping[str, set[str]] | None = None,
    ) -> tuple[set[str], bool, LocalStoreError | None]:
        """Upsert a folder listing.

        An item listed by several folders of the same cycle stays in the
        folder it is already stored under, as long as that folder listed it too.

        Returns:
            (ids seen, whether every item had an identity, first local store error).
        """
        ids: set[str] = set()
        complete = True
        store_error: LocalStoreError | None = None
        for raw in raw_items:
            try:
                item = parse_remote_item(raw, folder_path=config.folder_path)
            except DataIntegrityError as exc:
                report.skipped_items += 1
                raw_id = raw.get("id")
                if raw_id:
                    ids.add(str(raw_id))
                else:
                    complete = False
                logger.warning("Skipping malformed item: %s", exc, extra=exc.log_context())
                continue

            ids.add(item.id)
            if listed_in is not None and self._held_elsewhere(item, listed_in):
                report.unchanged += 1
                continue
            try:
                result = self.upsert(item, config, policy=policy)
            except LocalStoreError as exc:
                store_error = store_error or exc
                report.errors.append(f"{item.id}: {exc}")
                logger.error(
                    "Local write failed: %s",
                    exc,
                    extra={"operation": "upsert", "folder": config.folder_path, "item_id": item.id},
                )
                continue
            report.record(result)

        report.folders_ok.append(config.folder_path)
        return ids, complete, store_error

    def _held_elsewhere(self, item: RemoteItem, listed_in: Mapping[str, set[str]]) -> bool:
        folders = listed_in.get(item.id, set())
        if len(folders) < 2:
            return False
        existing = self._db.get_message(item.id)
        return (
            existing is not None
            and existing.folder_path != item.folder_path
            and existing.folder_path in folders
        )

    def _infer_absence(self, folder_path: str, observed_ids: set[str]) -> int:
        """Mark untreated messages last seen in `folder_path` but absent from it as treated."""
        treated = 0
        now = self._now()
        for remote_id, message_id in self._db.untreated_in_folder(folder_path).items():
            if remote_id in observed_ids:
                continue
            if self._db.mark_treated(
                message_id=message_id,
                detail=f"absent from full listing of {folder_path}",
                now=now,
            ):
                treated += 1
                logger.debug(
                    "Treated by absence",
                    extra={"operation": "full_reconcile", "folder": folder_path, "item_id": remote_id},
                )
        return treated

    def _finish(
        self,
        report: SyncReport,
        store_error: LocalStoreError | None,
        timestamp_key: str,
    ) -> SyncReport:
        report.finished_at = self._now()
        self.last_reports[report.mode] = report
        if report.folders_ok and store_error is None:
            try:
                self._db.set_timestamp(timestamp_key, report.finished_at)
            except LocalStoreError as exc:
                store_error = exc
        logger.info(
            "%s sync: ok=%d failed=%d skipped=%d inserted=%d updated=%d treated=%d",
            report.mode.value,
            len(report.folders_ok),
            len(report.folders_failed),
            len(report.folders_skipped),
            report.inserted,
            report.updated,
            report.treated,
            extra={"operation": f"sync.{report.mode.value}", "duration_s": report.duration_s},
        )
        if store_error is not None:
            raise store_error
        return report
