"""Wires connection, sync engine, change detector and metrics into one monitor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from mail_monitor.config.settings import AppSettings
from mail_monitor.connection.manager import ConnectionInfo, ConnectionManager
from mail_monitor.connection.retry import RetryPolicy
from mail_monitor.metrics.weekly import WeeklyAggregator
from mail_monitor.models.remote import ItemChange
from mail_monitor.models.state import FolderConfigRow
from mail_monitor.models.types import ConnectionState, TreatedPolicy
from mail_monitor.remote.base import RemoteMailStore
from mail_monitor.storage.state_db import CONFIG_LAST_FULL_SYNC, CONFIG_LAST_POLL_SYNC, StateDb
from mail_monitor.sync.channel import ChangeChannel
from mail_monitor.sync.debounce import ChangeDetector
from mail_monitor.sync.engine import SyncEngine, SyncReport
from mail_monitor.sync.registry import FolderRegistry
from mail_monitor.sync.scheduler import IntervalDriver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusSnapshot:
    """Point-in-time view of the monitor for the CLI and other consumers."""

    running: bool
    connection: ConnectionInfo | None
    treated_policy: TreatedPolicy
    last_full_sync_at: datetime | None
    last_poll_sync_at: datetime | None
    counts: dict[str, int]
    by_category: dict[str, dict[str, int]]
    by_folder: dict[str, int]
    folders: list[FolderConfigRow]
    last_reports: dict[str, dict[str, Any]] = field(default_factory=dict)
    pending_reconciles: list[str] = field(default_factory=list)
    notifications_received: int = 0
    actions_executed: int = 0
    notifications_dropped: int = 0


def build_store(settings: AppSettings) -> RemoteMailStore:
    """Create the IMAP-backed store from settings.

    Raises:
        ValueError: If IMAP settings are missing.
    """
    if settings.imap is None:
        raise ValueError(
            "IMAP settings are missing. Set at least MON_IMAP__HOST, "
            "MON_IMAP__USERNAME and MON_IMAP__APP_PASSWORD.",
        )
    from mail_monitor.imap.store import ImapMailStore

    return ImapMailStore(settings=settings.imap, timeout_seconds=settings.sync.query_timeout_s)


class MonitoringOrchestrator:
    """Owns every long-lived component of a monitoring session.

    `start()` connects, runs a full reconciliation, then keeps the store in
    sync with a poll loop, push notifications (when the store offers them)
    and periodic health checks until `stop()`.
    """

    def __init__(
        self,
        *,
        settings: AppSettings,
        store: RemoteMailStore | None = None,
        db: StateDb | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Application settings.
            store: Remote store adapter (defaults to IMAP from settings).
            db: Local store (defaults to the sqlite file from settings).
        """
        self._s = settings
        sync = settings.sync

        self._owns_db = db is None
        if db is None:
            settings.storage.root_dir.mkdir(parents=True, exist_ok=True)
            db = StateDb(sqlite_path=settings.storage.sqlite_path)
        self.db = db
        self.db.init_schema()

        self.connection = ConnectionManager(
            store=store if store is not None else build_store(settings),
            retry_policy=RetryPolicy.from_settings(sync),
            query_timeout_s=sync.query_timeout_s,
            health_check_interval_s=sync.health_check_interval_s,
            auto_reconnect=sync.auto_reconnect,
        )
        self.registry = FolderRegistry(db=self.db)
        self.engine = SyncEngine(
            connection=self.connection,
            db=self.db,
            registry=self.registry,
            poll_window=sync.poll_window,
        )
        self.aggregator = WeeklyAggregator(
            db=self.db,
            tz=ZoneInfo(settings.metrics.timezone),
            default_categories=settings.metrics.default_categories,
        )
        self.channel = ChangeChannel(maxsize=sync.channel_maxsize)
        self.detector = ChangeDetector(
            channel=self.channel,
            handler=self._handle_change,
            debounce_window_s=sync.debounce_window_s,
        )
        self._poll = IntervalDriver(
            name="poll",
            interval_s=sync.poll_interval_s,
            fn=self.poll_cycle,
        )
        self.connection.add_connected_listener(self._on_reconnected)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Connect, reconcile everything once, then start the background loops.

        Returns:
            False if the remote store is permanently unavailable.
        """
        connected = await self.connection.init()
        if self.connection.state == ConnectionState.unavailable:
            logger.error("Monitoring disabled: remote store unavailable")
            return False

        if connected:
            await self.force_resync()
            await self.refresh_subscriptions()
        else:
            for folder in self.registry.active():
                self.engine.request_full_reconcile(folder.folder_path)

        self.detector.start()
        self._poll.start()
        self._running = True
        logger.info(
            "Monitoring started",
            extra={"operation": "start", "folders": len(self.registry.active())},
        )
        return True

    async def stop(self) -> None:
        """Stop loops, close the connection and release the local store."""
        await self._poll.stop()
        await self.detector.stop()
        await self.connection.dispose()
        self._running = False
        if self._owns_db:
            self.db.close()
        logger.info("Monitoring stopped", extra={"operation": "stop"})

    async def run_until_cancelled(self) -> bool:
        """Run `start()` and wait until the task is cancelled, then `stop()`.

        Returns:
            False if monitoring could not start.
        """
        try:
            if not await self.start():
                return False
            await asyncio.Event().wait()
            return True
        finally:
            await self.stop()

    async def sync_once(self) -> SyncReport | None:
        """Connect, run one full reconciliation and disconnect.

        Returns:
            The report, or None if no connection could be established.
        """
        try:
            if not await self.connection.connect():
                return None
            return await self.force_resync()
        finally:
            await self.connection.dispose()

    async def force_resync(self) -> SyncReport:
        """Run a full reconciliation of every active folder and refresh weekly buckets."""
        report = await self.engine.full_reconcile()
        self.aggregator.recompute()
        return report

    async def poll_cycle(self) -> None:
        """One poll tick: pending full reconciliations first, then the windowed poll."""
        if not self.connection.is_connected():
            return
        changed = False
        pending = self.engine.pending_reconciles
        if pending:
            report = await self.engine.full_reconcile(sorted(pending))
            changed = _has_changes(report)
        report = await self.engine.incremental_poll()
        if changed or _has_changes(report):
            self.aggregator.recompute()

    async def refresh_subscriptions(self) -> list[str]:
        """Subscribe every active folder not yet subscribed and drop removed ones."""
        folders = [folder.folder_path for folder in self.registry.active()]
        for stale in set(self.connection.get_connection_info().subscribed_folders) - set(folders):
            await self.connection.unsubscribe(stale)
        return await self.connection.subscribe(folders, self.channel)

    def status(self) -> StatusSnapshot:
        """Return a snapshot of connection, sync and store state."""
        return StatusSnapshot(
            running=self._running,
            connection=self.connection.get_connection_info(),
            treated_policy=self.db.get_treated_policy(),
            last_full_sync_at=self.db.get_timestamp(CONFIG_LAST_FULL_SYNC),
            last_poll_sync_at=self.db.get_timestamp(CONFIG_LAST_POLL_SYNC),
            counts=self.db.message_counts(),
            by_category=self.db.counts_by_category(),
            by_folder=self.db.counts_by_folder(),
            folders=self.registry.active(),
            last_reports={mode.value: r.as_dict() for mode, r in self.engine.last_reports.items()},
            pending_reconciles=sorted(self.engine.pending_reconciles),
            notifications_received=self.detector.notifications_received,
            actions_executed=self.detector.actions_executed,
            notifications_dropped=self.channel.dropped,
        )

    async def _handle_change(self, change: ItemChange) -> None:
        result = await self.engine.handle_change(change)
        if result is not None and result.events:
            self.aggregator.recompute()

    async def _on_reconnected(self) -> None:
        # Changes made while the link was down are only visible to a full listing.
        for folder in self.registry.active():
            self.engine.request_full_reconcile(folder.folder_path)
        await self.refresh_subscriptions()


def _has_changes(report: SyncReport) -> bool:
    return bool(report.inserted or report.updated or report.treated)
