"""SQLite persistence for monitored messages, folder config and weekly metrics."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mail_monitor.metrics.weeks import week_id_for, week_sort_key
from mail_monitor.models.remote import RemoteItem
from mail_monitor.models.state import (
    EventRow,
    FolderConfigRow,
    MessageRow,
    UpsertResult,
    WeeklyAdjustmentRow,
    WeeklyBucketRow,
    WeeklyCommentRow,
    WeeklyHistoryRow,
)
from mail_monitor.models.types import EventType, TreatedPolicy, UpsertOutcome

CONFIG_TREATED_POLICY = "treated_policy"
CONFIG_INITIAL_STOCK = "initial_stock"
CONFIG_LAST_FULL_SYNC = "last_full_sync_at"
CONFIG_LAST_POLL_SYNC = "last_poll_sync_at"

SCHEMA_VERSION = 2

HISTORY_PURGED = "purged"
HISTORY_IMPORTED = "imported"


class LocalStoreError(RuntimeError):
    """Raised when the sqlite store cannot be read or written."""


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def _dt_to_iso(value: datetime) -> str:
    """Convert datetime to ISO string in UTC.

    Args:
        value: Datetime value; naive values are assumed to be UTC.

    Returns:
        ISO-formatted string in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _iso_to_dt(value: str) -> datetime:
    """Parse ISO datetime strings into timezone-aware datetimes.

    Args:
        value: ISO-formatted datetime string.

    Returns:
        Parsed datetime, defaulting to UTC if no timezone is present.
    """
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


@dataclass(frozen=True)
class LifecycleRecord:
    """Per-message timestamps consumed by the weekly aggregator."""

    message_id: int
    category: str
    received_time: datetime
    treated_time: datetime | None
    is_read: bool
    first_read_time: datetime | None


class StateDb:
    """SQLite wrapper holding the local mirror of the remote mail store.

    Every write runs in its own short transaction so that a crash mid-cycle
    leaves a valid (merely stale) store.
    """

    def __init__(self, *, sqlite_path: Path) -> None:
        """Initialize the database connection.

        Args:
            sqlite_path: Path to the sqlite database file.

        Raises:
            LocalStoreError: If the database cannot be opened.
        """
        self._sqlite_path = sqlite_path
        try:
            self._conn = sqlite3.connect(
                sqlite_path,
                timeout=30,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Cannot open sqlite database {sqlite_path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row

    @property
    def sqlite_path(self) -> Path:
        """Return the sqlite database path."""
        return self._sqlite_path

    def close(self) -> None:
        """Close the underlying sqlite connection."""
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Provide a transaction context manager.

        Raises:
            LocalStoreError: If sqlite reports an error; the transaction is rolled back.
        """
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield self._conn
            cursor.execute("COMMIT")
        except sqlite3.Error as exc:
            if self._conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise LocalStoreError(f"sqlite write failed: {exc}") from exc
        except Exception:
            if self._conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a read query, wrapping sqlite errors."""
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"sqlite read failed: {exc}") from exc

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Run a single-row read query, wrapping sqlite errors."""
        try:
            return self._conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise LocalStoreError(f"sqlite read failed: {exc}") from exc

    def init_schema(self) -> None:
        """Create tables if missing and ensure sqlite PRAGMA settings."""
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as exc:
            raise LocalStoreError(f"Cannot configure sqlite: {exc}") from exc

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  remote_id TEXT NOT NULL UNIQUE,
                  subject TEXT NOT NULL,
                  sender TEXT NOT NULL DEFAULT '',
                  folder_path TEXT NOT NULL,
                  category TEXT NOT NULL,
                  is_read INTEGER NOT NULL DEFAULT 0,
                  received_time TEXT NOT NULL,
                  treated_time TEXT,
                  last_event_type TEXT NOT NULL,
                  size_bytes INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  CHECK (treated_time IS NULL OR treated_time >= received_time)
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder_path, treated_time)",
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_category ON messages(category)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_received ON messages(received_time)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                  event_type TEXT NOT NULL,
                  event_time TEXT NOT NULL,
                  detail TEXT NOT NULL DEFAULT ''
                )
                """,
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_message ON events(message_id, event_type)",
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS folder_configs (
                  folder_path TEXT PRIMARY KEY,
                  category TEXT NOT NULL,
                  display_name TEXT NOT NULL DEFAULT '',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weekly_buckets (
                  week_id TEXT NOT NULL,
                  category TEXT NOT NULL,
                  week_year INTEGER NOT NULL,
                  week_number INTEGER NOT NULL,
                  received INTEGER NOT NULL DEFAULT 0,
                  treated INTEGER NOT NULL DEFAULT 0,
                  manual_adjustment INTEGER NOT NULL DEFAULT 0,
                  stock_begin INTEGER NOT NULL DEFAULT 0,
                  stock_end INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  UNIQUE(week_id, category)
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weekly_adjustments (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  week_id TEXT NOT NULL,
                  category TEXT NOT NULL,
                  delta INTEGER NOT NULL,
                  reason TEXT NOT NULL DEFAULT '',
                  author TEXT NOT NULL DEFAULT '',
                  created_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weekly_comments (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  week_id TEXT NOT NULL,
                  text TEXT NOT NULL,
                  author TEXT NOT NULL DEFAULT '',
                  created_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weekly_history (
                  week_id TEXT NOT NULL,
                  category TEXT NOT NULL,
                  source TEXT NOT NULL,
                  received INTEGER NOT NULL DEFAULT 0,
                  treated INTEGER NOT NULL DEFAULT 0,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY(week_id, category, source)
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_config (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    # -- messages -----------------------------------------------------------

    def get_message(self, remote_id: str) -> MessageRow | None:
        """Fetch a message by remote identity."""
        row = self._fetchone("SELECT * FROM messages WHERE remote_id=?", (remote_id,))
        return self._row_to_message(row) if row is not None else None

    def apply_observation(
        self,
        *,
        item: RemoteItem,
        category: str | None,
        policy: TreatedPolicy = TreatedPolicy.strict,
        now: datetime | None = None,
    ) -> UpsertResult:
        """Insert or update a message from a freshly observed remote item.

        Only the observed read flag, folder, subject and treated signal are
        compared. Identical observations write nothing. Each semantic change
        appends one event row. A treated message is never reverted.

        Args:
            item: Observed remote item.
            category: Category of the folder the item was observed in, or None
                when that folder is not monitored (keeps the stored category).
            policy: Active treated-definition policy, recorded in read events.
            now: Observation time (defaults to now, UTC).

        Returns:
            UpsertResult describing what happened.

        Raises:
            ValueError: If an unknown item is observed without a category.
            LocalStoreError: On sqlite failures.
        """
        now = now or _utcnow()
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM messages WHERE remote_id=?", (item.id,)).fetchone()
            if row is None:
                if category is None:
                    raise ValueError(f"Cannot insert {item.id!r} without a category")
                return self._insert_observed(conn, item=item, category=category, now=now)

            existing = self._row_to_message(row)
            changes: dict[str, Any] = {}
            events: list[tuple[EventType, str]] = []

            if existing.is_read != item.is_read:
                changes["is_read"] = int(item.is_read)
                if item.is_read:
                    detail = "marked read"
                    if policy == TreatedPolicy.permissive and not existing.is_treated:
                        detail += "; counted as treated (read-as-treated policy)"
                    events.append((EventType.read, detail))
                else:
                    events.append((EventType.unread, "marked unread"))

            if existing.folder_path != item.folder_path:
                changes["folder_path"] = item.folder_path
                if category is not None and category != existing.category:
                    changes["category"] = category
                events.append(
                    (EventType.moved, f"moved from {existing.folder_path!r} to {item.folder_path!r}"),
                )

            if existing.subject != item.subject:
                changes["subject"] = item.subject

            if item.treated and not existing.is_treated:
                changes["treated_time"] = _dt_to_iso(max(now, existing.received_time))
                events.append((EventType.treated, "treated signal observed"))

            if not changes:
                return UpsertResult(
                    remote_id=item.id,
                    outcome=UpsertOutcome.unchanged,
                    message_id=existing.id,
                )

            if events:
                changes["last_event_type"] = events[-1][0].value
            changes["updated_at"] = _dt_to_iso(now)

            assignments = ", ".join(f"{column}=?" for column in changes)
            conn.execute(
                f"UPDATE messages SET {assignments} WHERE id=?",  # noqa: S608
                (*changes.values(), existing.id),
            )
            for event_type, detail in events:
                self._insert_event(conn, existing.id, event_type, now, detail)

            return UpsertResult(
                remote_id=item.id,
                outcome=UpsertOutcome.updated,
                events=[event_type for event_type, _ in events],
                message_id=existing.id,
            )

    def _insert_observed(
        self,
        conn: sqlite3.Connection,
        *,
        item: RemoteItem,
        category: str,
        now: datetime,
    ) -> UpsertResult:
        """Insert a never-seen item with its `received` event."""
        treated_time: datetime | None = None
        last_event = EventType.received
        if item.treated:
            treated_time = max(now, item.received_time)
            last_event = EventType.treated

        cursor = conn.execute(
            """
            INSERT INTO messages(
              remote_id, subject, sender, folder_path, category, is_read,
              received_time, treated_time, last_event_type, size_bytes,
              created_at, updated_at
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.subject,
                item.sender,
                item.folder_path,
                category,
                int(item.is_read),
                _dt_to_iso(item.received_time),
                _dt_to_iso(treated_time) if treated_time else None,
                last_event.value,
                item.size,
                _dt_to_iso(now),
                _dt_to_iso(now),
            ),
        )
        message_id = int(cursor.lastrowid or 0)
        events = [EventType.received]
        self._insert_event(
            conn,
            message_id,
            EventType.received,
            item.received_time,
            f"first seen in {item.folder_path!r}",
        )
        if treated_time is not None:
            events.append(EventType.treated)
            self._insert_event(conn, message_id, EventType.treated, treated_time, "treated signal observed")
        return UpsertResult(
            remote_id=item.id,
            outcome=UpsertOutcome.inserted,
            events=events,
            message_id=message_id,
        )

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        message_id: int,
        event_type: EventType,
        when: datetime,
        detail: str,
    ) -> None:
        """Append one row to the event log."""
        conn.execute(
            "INSERT INTO events(message_id, event_type, event_time, detail) VALUES(?, ?, ?, ?)",
            (message_id, event_type.value, _dt_to_iso(when), detail),
        )

    def mark_treated(self, *, message_id: int, detail: str, now: datetime | None = None) -> bool:
        """Mark an untreated message as treated.

        Args:
            message_id: Message row ID.
            detail: Event detail explaining the treatment.
            now: Treatment time (defaults to now, UTC); never before received_time.

        Returns:
            True if the message transitioned, False if it was already treated or missing.
        """
        now = now or _utcnow()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT received_time FROM messages WHERE id=? AND treated_time IS NULL",
                (message_id,),
            ).fetchone()
            if row is None:
                return False
            treated_time = max(now, _iso_to_dt(str(row["received_time"])))
            conn.execute(
                """
                UPDATE messages
                SET treated_time=?, last_event_type=?, updated_at=?
                WHERE id=? AND treated_time IS NULL
                """,
                (_dt_to_iso(treated_time), EventType.treated.value, _dt_to_iso(now), message_id),
            )
            self._insert_event(conn, message_id, EventType.treated, treated_time, detail)
            return True

    def untreated_in_folder(self, folder_path: str) -> dict[str, int]:
        """Return remote_id → row id for untreated messages last seen in a folder."""
        rows = self._fetchall(
            "SELECT id, remote_id FROM messages WHERE folder_path=? AND treated_time IS NULL",
            (folder_path,),
        )
        return {str(row["remote_id"]): int(row["id"]) for row in rows}

    def iter_messages(
        self,
        *,
        folder_path: str | None = None,
        category: str | None = None,
        received_from: datetime | None = None,
        received_until: datetime | None = None,
        treated: bool | None = None,
    ) -> Iterator[MessageRow]:
        """Iterate messages filtered by folder, category, received range and state.

        Args:
            folder_path: Only messages last seen in this folder.
            category: Only messages of this category.
            received_from: Inclusive lower bound on received_time.
            received_until: Exclusive upper bound on received_time.
            treated: True for treated only, False for untreated only.

        Yields:
            MessageRow instances ordered by received_time.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if folder_path is not None:
            clauses.append("folder_path=?")
            params.append(folder_path)
        if category is not None:
            clauses.append("category=?")
            params.append(category)
        if received_from is not None:
            clauses.append("received_time>=?")
            params.append(_dt_to_iso(received_from))
        if received_until is not None:
            clauses.append("received_time<?")
            params.append(_dt_to_iso(received_until))
        if treated is True:
            clauses.append("treated_time IS NOT NULL")
        elif treated is False:
            clauses.append("treated_time IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM messages {where} ORDER BY received_time, id",  # noqa: S608
            params,
        )
        for row in rows:
            yield self._row_to_message(row)

    def recent_messages(self, *, limit: int = 20) -> list[MessageRow]:
        """Return the most recently received messages."""
        rows = self._fetchall(
            "SELECT * FROM messages ORDER BY received_time DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_message(row) for row in rows]

    def events_for(self, message_id: int) -> list[EventRow]:
        """Return the event history of a message, oldest first."""
        rows = self._fetchall(
            "SELECT * FROM events WHERE message_id=? ORDER BY id",
            (message_id,),
        )
        return [
            EventRow(
                id=int(row["id"]),
                message_id=int(row["message_id"]),
                event_type=EventType(str(row["event_type"])),
                event_time=_iso_to_dt(str(row["event_time"])),
                detail=str(row["detail"]),
            )
            for row in rows
        ]

    def count_events(self) -> int:
        """Return the total number of event rows."""
        row = self._fetchone("SELECT COUNT(*) AS c FROM events")
        return int(row["c"]) if row else 0

    def message_counts(self) -> dict[str, int]:
        """Return total / untreated / treated / unread message counts."""
        row = self._fetchone(
            """
            SELECT
              COUNT(*) AS total,
              SUM(CASE WHEN treated_time IS NULL THEN 1 ELSE 0 END) AS untreated,
              SUM(CASE WHEN treated_time IS NOT NULL THEN 1 ELSE 0 END) AS treated,
              SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END) AS unread
            FROM messages
            """,
        )
        if row is None:
            return {"total": 0, "untreated": 0, "treated": 0, "unread": 0}
        return {key: int(row[key] or 0) for key in ("total", "untreated", "treated", "unread")}

    def counts_by_category(self) -> dict[str, dict[str, int]]:
        """Return per-category total and untreated counts."""
        rows = self._fetchall(
            """
            SELECT category,
                   COUNT(*) AS total,
                   SUM(CASE WHEN treated_time IS NULL THEN 1 ELSE 0 END) AS untreated
            FROM messages GROUP BY category ORDER BY category
            """,
        )
        return {
            str(row["category"]): {"total": int(row["total"]), "untreated": int(row["untreated"] or 0)}
            for row in rows
        }

    def counts_by_folder(self) -> dict[str, int]:
        """Return untreated message counts per folder."""
        rows = self._fetchall(
            """
            SELECT folder_path, COUNT(*) AS c FROM messages
            WHERE treated_time IS NULL GROUP BY folder_path ORDER BY folder_path
            """,
        )
        return {str(row["folder_path"]): int(row["c"]) for row in rows}

    def lifecycle_records(self) -> list[LifecycleRecord]:
        """Return timestamps of every message for weekly aggregation."""
        rows = self._fetchall(
            """
            SELECT m.id, m.category, m.received_time, m.treated_time, m.is_read,
                   (SELECT MIN(e.event_time) FROM events e
                     WHERE e.message_id = m.id AND e.event_type = 'read') AS first_read_time
            FROM messages m
            ORDER BY m.id
            """,
        )
        return [
            LifecycleRecord(
                message_id=int(row["id"]),
                category=str(row["category"]),
                received_time=_iso_to_dt(str(row["received_time"])),
                treated_time=_iso_to_dt(str(row["treated_time"])) if row["treated_time"] else None,
                is_read=bool(row["is_read"]),
                first_read_time=(
                    _iso_to_dt(str(row["first_read_time"])) if row["first_read_time"] else None
                ),
            )
            for row in rows
        ]

    def purge_treated(
        self,
        *,
        older_than: datetime,
        week_of: Callable[[datetime], str] | None = None,
    ) -> int:
        """Delete treated messages received before a cutoff, with their events.

        The weekly received/treated counts of the deleted messages are folded
        into ``weekly_history`` in the same transaction, so weekly buckets
        recomputed afterwards keep their past figures.

        Args:
            older_than: Exclusive received_time cutoff.
            week_of: Maps a timestamp to its week id (UTC ISO weeks by default).

        Returns:
            Number of messages deleted.
        """
        week_of = week_of or week_id_for
        cutoff = _dt_to_iso(older_than)
        now = _dt_to_iso(_utcnow())
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT category, received_time, treated_time FROM messages
                WHERE treated_time IS NOT NULL AND received_time < ?
                """,
                (cutoff,),
            ).fetchall()
            counts: dict[tuple[str, str], list[int]] = {}
            for row in rows:
                category = str(row["category"])
                received_key = (week_of(_iso_to_dt(str(row["received_time"]))), category)
                treated_key = (week_of(_iso_to_dt(str(row["treated_time"]))), category)
                counts.setdefault(received_key, [0, 0])[0] += 1
                counts.setdefault(treated_key, [0, 0])[1] += 1
            for (week_id, category), (received, treated) in counts.items():
                conn.execute(
                    """
                    INSERT INTO weekly_history(week_id, category, source, received, treated, updated_at)
                    VALUES(?, ?, ?, ?, ?, ?)
                    ON CONFLICT(week_id, category, source) DO UPDATE SET
                      received=received + excluded.received,
                      treated=treated + excluded.treated,
                      updated_at=excluded.updated_at
                    """,
                    (week_id, category, HISTORY_PURGED, received, treated, now),
                )

            conn.execute(
                """
                DELETE FROM events WHERE message_id IN (
                  SELECT id FROM messages WHERE treated_time IS NOT NULL AND received_time < ?
                )
                """,
                (cutoff,),
            )
            res = conn.execute(
                "DELETE FROM messages WHERE treated_time IS NOT NULL AND received_time < ?",
                (cutoff,),
            )
            return int(res.rowcount)

    # -- folder configuration -------------------------------------------------

    def add_folder(self, *, folder_path: str, category: str, display_name: str = "") -> FolderConfigRow:
        """Insert a folder config, or reactivate and update an existing path.

        Args:
            folder_path: Remote folder path.
            category: Category assigned to messages of this folder.
            display_name: Human label.

        Returns:
            The active folder config row.
        """
        path = folder_path.strip()
        if not path:
            raise ValueError("folder_path must not be blank")
        if not category.strip():
            raise ValueError("category must not be blank")
        now = _dt_to_iso(_utcnow())
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO folder_configs(folder_path, category, display_name, is_active, created_at, updated_at)
                VALUES(?, ?, ?, 1, ?, ?)
                ON CONFLICT(folder_path) DO UPDATE SET
                  category=excluded.category,
                  display_name=excluded.display_name,
                  is_active=1,
                  updated_at=excluded.updated_at
                """,
                (path, category.strip(), display_name.strip(), now, now),
            )
            row = conn.execute("SELECT * FROM folder_configs WHERE folder_path=?", (path,)).fetchone()
            assert row is not None
            return self._row_to_folder(row)

    def remove_folder(self, folder_path: str) -> bool:
        """Deactivate a folder config; returns False if no active row matched."""
        with self.transaction() as conn:
            res = conn.execute(
                "UPDATE folder_configs SET is_active=0, updated_at=? WHERE folder_path=? AND is_active=1",
                (_dt_to_iso(_utcnow()), folder_path),
            )
            return res.rowcount > 0

    def set_folder_category(self, folder_path: str, category: str) -> bool:
        """Change the category of an active folder config."""
        if not category.strip():
            raise ValueError("category must not be blank")
        with self.transaction() as conn:
            res = conn.execute(
                "UPDATE folder_configs SET category=?, updated_at=? WHERE folder_path=? AND is_active=1",
                (category.strip(), _dt_to_iso(_utcnow()), folder_path),
            )
            return res.rowcount > 0

    def get_folder(self, folder_path: str, *, include_inactive: bool = False) -> FolderConfigRow | None:
        """Fetch a folder config by path."""
        sql = "SELECT * FROM folder_configs WHERE folder_path=?"
        if not include_inactive:
            sql += " AND is_active=1"
        row = self._fetchone(sql, (folder_path,))
        return self._row_to_folder(row) if row is not None else None

    def list_folders(self, *, active_only: bool = True) -> list[FolderConfigRow]:
        """List folder configs ordered by path."""
        sql = "SELECT * FROM folder_configs"
        if active_only:
            sql += " WHERE is_active=1"
        rows = self._fetchall(sql + " ORDER BY folder_path")
        return [self._row_to_folder(row) for row in rows]

    # -- app config -----------------------------------------------------------

    def get_config(self, key: str, default: str | None = None) -> str | None:
        """Return a raw config value."""
        row = self._fetchone("SELECT value FROM app_config WHERE key=?", (key,))
        return str(row["value"]) if row is not None else default

    def set_config(self, key: str, value: str) -> None:
        """Insert or replace a raw config value."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_config(key, value, updated_at) VALUES(?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, _dt_to_iso(_utcnow())),
            )

    def get_treated_policy(self) -> TreatedPolicy:
        """Return the stored treated-definition policy (strict by default)."""
        raw = self.get_config(CONFIG_TREATED_POLICY, TreatedPolicy.strict.value)
        try:
            return TreatedPolicy(raw)
        except ValueError:
            return TreatedPolicy.strict

    def set_treated_policy(self, policy: TreatedPolicy) -> None:
        """Persist the treated-definition policy."""
        self.set_config(CONFIG_TREATED_POLICY, policy.value)

    def get_initial_stock(self) -> dict[str, int]:
        """Return the per-category stock carried into the first computed week."""
        raw = self.get_config(CONFIG_INITIAL_STOCK)
        if not raw:
            return {}
        data = json.loads(raw)
        return {str(key): int(value) for key, value in data.items()}

    def set_initial_stock(self, category: str, value: int) -> None:
        """Set the starting stock of one category."""
        stock = self.get_initial_stock()
        stock[category] = int(value)
        self.set_config(CONFIG_INITIAL_STOCK, json.dumps(stock, sort_keys=True, ensure_ascii=False))

    def get_timestamp(self, key: str) -> datetime | None:
        """Return a timestamp stored in app_config."""
        raw = self.get_config(key)
        return _iso_to_dt(raw) if raw else None

    def set_timestamp(self, key: str, value: datetime) -> None:
        """Store a timestamp in app_config."""
        self.set_config(key, _dt_to_iso(value))

    # -- weekly metrics -------------------------------------------------------

    def save_weekly_buckets(self, buckets: Sequence[WeeklyBucketRow]) -> None:
        """Replace the stored weekly buckets with a freshly computed set."""
        now = _dt_to_iso(_utcnow())
        with self.transaction() as conn:
            conn.execute("DELETE FROM weekly_buckets")
            for bucket in buckets:
                number, year = (int(part) for part in bucket.week_id[1:].split("-"))
                conn.execute(
                    """
                    INSERT INTO weekly_buckets(
                      week_id, category, week_year, week_number, received, treated,
                      manual_adjustment, stock_begin, stock_end, updated_at
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(week_id, category) DO UPDATE SET
                      received=excluded.received,
                      treated=excluded.treated,
                      manual_adjustment=excluded.manual_adjustment,
                      stock_begin=excluded.stock_begin,
                      stock_end=excluded.stock_end,
                      updated_at=excluded.updated_at
                    """,
                    (
                        bucket.week_id,
                        bucket.category,
                        year,
                        number,
                        bucket.received,
                        bucket.treated,
                        bucket.manual_adjustment,
                        bucket.stock_begin,
                        bucket.stock_end,
                        now,
                    ),
                )

    def get_weekly_history(self, *, source: str | None = None) -> list[WeeklyHistoryRow]:
        """Return counts kept outside the messages table (purged or imported), oldest week first."""
        where = "WHERE source=?" if source is not None else ""
        rows = self._fetchall(
            f"SELECT * FROM weekly_history {where} ORDER BY category, source",  # noqa: S608
            (source,) if source is not None else (),
        )
        history = [
            WeeklyHistoryRow(
                week_id=str(row["week_id"]),
                category=str(row["category"]),
                source=str(row["source"]),
                received=int(row["received"]),
                treated=int(row["treated"]),
            )
            for row in rows
        ]
        history.sort(key=lambda row: (week_sort_key(row.week_id), row.category, row.source))
        return history

    def replace_imported_history(self, rows: Sequence[WeeklyHistoryRow]) -> int:
        """Replace the imported weekly counts for every (week, category) present in `rows`.

        Returns:
            Number of rows written.
        """
        now = _dt_to_iso(_utcnow())
        with self.transaction() as conn:
            for row in rows:
                conn.execute(
                    """
                    INSERT INTO weekly_history(week_id, category, source, received, treated, updated_at)
                    VALUES(?, ?, ?, ?, ?, ?)
                    ON CONFLICT(week_id, category, source) DO UPDATE SET
                      received=excluded.received,
                      treated=excluded.treated,
                      updated_at=excluded.updated_at
                    """,
                    (row.week_id, row.category, HISTORY_IMPORTED, row.received, row.treated, now),
                )
        return len(rows)

    def get_weekly_buckets(
        self,
        *,
        week_ids: Sequence[str] | None = None,
        category: str | None = None,
    ) -> list[WeeklyBucketRow]:
        """Return stored buckets, oldest week first."""
        clauses: list[str] = []
        params: list[Any] = []
        if week_ids is not None:
            if not week_ids:
                return []
            clauses.append(f"week_id IN ({', '.join('?' for _ in week_ids)})")
            params.extend(week_ids)
        if category is not None:
            clauses.append("category=?")
            params.append(category)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM weekly_buckets {where} ORDER BY week_year, week_number, category",  # noqa: S608
            params,
        )
        return [
            WeeklyBucketRow(
                week_id=str(row["week_id"]),
                category=str(row["category"]),
                received=int(row["received"]),
                treated=int(row["treated"]),
                manual_adjustment=int(row["manual_adjustment"]),
                stock_begin=int(row["stock_begin"]),
                stock_end=int(row["stock_end"]),
            )
            for row in rows
        ]

    def add_adjustment(
        self,
        *,
        week_id: str,
        category: str,
        delta: int,
        reason: str = "",
        author: str = "",
    ) -> WeeklyAdjustmentRow:
        """Append a signed manual adjustment for a (week, category)."""
        now = _utcnow()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO weekly_adjustments(week_id, category, delta, reason, author, created_at)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (week_id, category, int(delta), reason, author, _dt_to_iso(now)),
            )
            return WeeklyAdjustmentRow(
                id=int(cursor.lastrowid or 0),
                week_id=week_id,
                category=category,
                delta=int(delta),
                reason=reason,
                author=author,
                created_at=now,
            )

    def list_adjustments(self, *, week_id: str | None = None) -> list[WeeklyAdjustmentRow]:
        """List manual adjustments, optionally for one week."""
        if week_id is None:
            rows = self._fetchall("SELECT * FROM weekly_adjustments ORDER BY id")
        else:
            rows = self._fetchall(
                "SELECT * FROM weekly_adjustments WHERE week_id=? ORDER BY id",
                (week_id,),
            )
        return [
            WeeklyAdjustmentRow(
                id=int(row["id"]),
                week_id=str(row["week_id"]),
                category=str(row["category"]),
                delta=int(row["delta"]),
                reason=str(row["reason"]),
                author=str(row["author"]),
                created_at=_iso_to_dt(str(row["created_at"])),
            )
            for row in rows
        ]

    def add_comment(self, *, week_id: str, text: str, author: str = "") -> WeeklyCommentRow:
        """Attach a free-text comment to a week."""
        now = _utcnow()
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO weekly_comments(week_id, text, author, created_at) VALUES(?, ?, ?, ?)",
                (week_id, text, author, _dt_to_iso(now)),
            )
            return WeeklyCommentRow(
                id=int(cursor.lastrowid or 0),
                week_id=week_id,
                text=text,
                author=author,
                created_at=now,
            )

    def list_comments(self, *, week_id: str | None = None) -> list[WeeklyCommentRow]:
        """List comments, optionally for one week, oldest first."""
        if week_id is None:
            rows = self._fetchall("SELECT * FROM weekly_comments ORDER BY id")
        else:
            rows = self._fetchall(
                "SELECT * FROM weekly_comments WHERE week_id=? ORDER BY id",
                (week_id,),
            )
        return [
            WeeklyCommentRow(
                id=int(row["id"]),
                week_id=str(row["week_id"]),
                text=str(row["text"]),
                author=str(row["author"]),
                created_at=_iso_to_dt(str(row["created_at"])),
            )
            for row in rows
        ]

    def update_comment(self, comment_id: int, *, text: str) -> bool:
        """Replace the text of a comment."""
        with self.transaction() as conn:
            res = conn.execute("UPDATE weekly_comments SET text=? WHERE id=?", (text, comment_id))
            return res.rowcount > 0

    def delete_comment(self, comment_id: int) -> bool:
        """Delete a comment."""
        with self.transaction() as conn:
            res = conn.execute("DELETE FROM weekly_comments WHERE id=?", (comment_id,))
            return res.rowcount > 0

    # -- row conversion -------------------------------------------------------

    def _row_to_message(self, row: Mapping[str, Any]) -> MessageRow:
        """Convert a sqlite row to a MessageRow."""
        return MessageRow(
            id=int(row["id"]),
            remote_id=str(row["remote_id"]),
            subject=str(row["subject"]),
            sender=str(row["sender"]),
            folder_path=str(row["folder_path"]),
            category=str(row["category"]),
            is_read=bool(row["is_read"]),
            received_time=_iso_to_dt(str(row["received_time"])),
            treated_time=_iso_to_dt(str(row["treated_time"])) if row["treated_time"] else None,
            last_event_type=EventType(str(row["last_event_type"])),
            size_bytes=int(row["size_bytes"]),
            created_at=_iso_to_dt(str(row["created_at"])),
            updated_at=_iso_to_dt(str(row["updated_at"])),
        )

    def _row_to_folder(self, row: Mapping[str, Any]) -> FolderConfigRow:
        """Convert a sqlite row to a FolderConfigRow."""
        return FolderConfigRow(
            folder_path=str(row["folder_path"]),
            category=str(row["category"]),
            display_name=str(row["display_name"]),
            is_active=bool(row["is_active"]),
            created_at=_iso_to_dt(str(row["created_at"])),
            updated_at=_iso_to_dt(str(row["updated_at"])),
        )
