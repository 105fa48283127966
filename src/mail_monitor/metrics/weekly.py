"""Weekly received / treated / stock rollups per category."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime, tzinfo

from mail_monitor.metrics.weeks import iter_week_ids, parse_week_id, week_id_for, week_sort_key
from mail_monitor.models.state import WeeklyAdjustmentRow, WeeklyBucketRow, WeeklyCommentRow, WeeklyHistoryRow
from mail_monitor.models.types import TreatedPolicy
from mail_monitor.storage.state_db import StateDb

logger = logging.getLogger(__name__)

BucketKey = tuple[str, str]


class WeeklyAggregator:
    """Derives weekly buckets from the synchronized message store.

    Buckets are always recomputed from the stored messages plus the weekly
    history kept for purged and imported activity, so the result depends
    only on that data, the adjustments, the initial stock and the active
    policy. Stock is chained week to week per category:
    ``stock_end = stock_begin + received - treated - manual_adjustment``.
    """

    def __init__(
        self,
        *,
        db: StateDb,
        tz: tzinfo = UTC,
        default_categories: Iterable[str] = (),
    ) -> None:
        self._db = db
        self._tz = tz
        self._default_categories = [c for c in default_categories if c.strip()]

    @property
    def policy(self) -> TreatedPolicy:
        """Return the persisted treated-definition policy."""
        return self._db.get_treated_policy()

    def current_week(self, now: datetime | None = None) -> str:
        """Return the id of the week containing `now` (defaults to the current time)."""
        return week_id_for(now or datetime.now(tz=UTC), tz=self._tz)

    def recompute(self, *, until: datetime | None = None) -> list[WeeklyBucketRow]:
        """Recompute and persist every bucket up to the week of `until`.

        Args:
            until: Last instant to cover (defaults to now).

        Returns:
            Buckets ordered by category then week.
        """
        policy = self._db.get_treated_policy()
        end_week = self.current_week(until)
        end_key = week_sort_key(end_week)

        received: Counter[BucketKey] = Counter()
        treated: Counter[BucketKey] = Counter()
        adjustments: Counter[BucketKey] = Counter()
        categories: set[str] = set(self._default_categories)
        data_weeks: set[str] = set()

        for record in self._db.lifecycle_records():
            categories.add(record.category)
            received_week = week_id_for(record.received_time, tz=self._tz)
            received[(received_week, record.category)] += 1
            data_weeks.add(received_week)

            treated_at: datetime | None = record.treated_time
            if treated_at is None and policy == TreatedPolicy.permissive and record.is_read:
                treated_at = record.first_read_time or record.received_time
            if treated_at is not None:
                treated_week = week_id_for(treated_at, tz=self._tz)
                treated[(treated_week, record.category)] += 1
                data_weeks.add(treated_week)

        for entry in self._db.get_weekly_history():
            categories.add(entry.category)
            received[(entry.week_id, entry.category)] += entry.received
            treated[(entry.week_id, entry.category)] += entry.treated
            data_weeks.add(entry.week_id)

        for adjustment in self._db.list_adjustments():
            categories.add(adjustment.category)
            adjustments[(adjustment.week_id, adjustment.category)] += adjustment.delta
            data_weeks.add(adjustment.week_id)

        categories.update(folder.category for folder in self._db.list_folders())
        initial_stock = self._db.get_initial_stock()
        categories.update(initial_stock)

        past_weeks = [w for w in data_weeks if week_sort_key(w) <= end_key]
        start_week = min(past_weeks, key=week_sort_key) if past_weeks else end_week

        buckets: list[WeeklyBucketRow] = []
        for category in sorted(categories):
            stock = initial_stock.get(category, 0)
            for week_id in iter_week_ids(start_week, end_week):
                key = (week_id, category)
                stock_end = stock + received[key] - treated[key] - adjustments[key]
                buckets.append(
                    WeeklyBucketRow(
                        week_id=week_id,
                        category=category,
                        received=received[key],
                        treated=treated[key],
                        manual_adjustment=adjustments[key],
                        stock_begin=stock,
                        stock_end=stock_end,
                    ),
                )
                stock = stock_end

        self._db.save_weekly_buckets(buckets)
        logger.info(
            "Weekly buckets recomputed",
            extra={
                "policy": policy.value,
                "start_week": start_week,
                "end_week": end_week,
                "categories": len(categories),
                "buckets": len(buckets),
            },
        )
        return buckets

    def get_buckets(
        self,
        *,
        start_week: str | None = None,
        end_week: str | None = None,
        category: str | None = None,
    ) -> list[WeeklyBucketRow]:
        """Return stored buckets within an inclusive week range."""
        low = week_sort_key(start_week) if start_week else None
        high = week_sort_key(end_week) if end_week else None
        result = []
        for bucket in self._db.get_weekly_buckets(category=category):
            key = week_sort_key(bucket.week_id)
            if low is not None and key < low:
                continue
            if high is not None and key > high:
                continue
            result.append(bucket)
        return result

    def set_policy(self, policy: TreatedPolicy) -> list[WeeklyBucketRow]:
        """Persist the treated-definition policy, then recompute."""
        self._db.set_treated_policy(policy)
        logger.info("Treated policy changed", extra={"policy": policy.value})
        return self.recompute()

    def set_initial_stock(self, category: str, value: int) -> list[WeeklyBucketRow]:
        """Set the stock carried into the first computed week of a category, then recompute."""
        if not category.strip():
            raise ValueError("category must not be blank")
        self._db.set_initial_stock(category.strip(), value)
        return self.recompute()

    def add_adjustment(
        self,
        *,
        week_id: str,
        category: str,
        delta: int,
        reason: str = "",
        author: str = "",
    ) -> WeeklyAdjustmentRow:
        """Record a manual stock correction for a (week, category) and recompute."""
        parse_week_id(week_id)
        if not category.strip():
            raise ValueError("category must not be blank")
        row = self._db.add_adjustment(
            week_id=week_id,
            category=category.strip(),
            delta=delta,
            reason=reason,
            author=author,
        )
        self.recompute()
        return row

    def add_comment(self, *, week_id: str, text: str, author: str = "") -> WeeklyCommentRow:
        """Attach a comment to a week."""
        parse_week_id(week_id)
        if not text.strip():
            raise ValueError("comment text must not be blank")
        return self._db.add_comment(week_id=week_id, text=text.strip(), author=author)

    def purge_treated(self, *, older_than: datetime) -> int:
        """Delete old treated messages, keeping their weekly counts, then recompute."""
        deleted = self._db.purge_treated(
            older_than=older_than,
            week_of=lambda value: week_id_for(value, tz=self._tz),
        )
        logger.info("Purged treated messages", extra={"deleted": deleted, "cutoff": older_than.isoformat()})
        self.recompute()
        return deleted

    def import_history(self, rows: Iterable[WeeklyHistoryRow]) -> int:
        """Seed weekly received/treated counts from past activity, then recompute.

        Re-importing a (week, category) replaces its previous imported counts.
        """
        batch = list(rows)
        for row in batch:
            parse_week_id(row.week_id)
        written = self._db.replace_imported_history(batch)
        logger.info("Imported weekly history", extra={"rows": written})
        self.recompute()
        return written
