"""Typer CLI for the mailbox monitor."""

from __future__ import annotations

import asyncio
import csv
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mail_monitor.config.settings import AppSettings, load_settings
from mail_monitor.metrics.weekly import WeeklyAggregator
from mail_monitor.metrics.weeks import parse_week_id, previous_week_id
from mail_monitor.models.state import WeeklyHistoryRow
from mail_monitor.models.types import SummaryReport, TreatedPolicy
from mail_monitor.pipeline.monitor import MonitoringOrchestrator
from mail_monitor.remote.base import RemoteStoreError
from mail_monitor.storage.state_db import (
    CONFIG_LAST_FULL_SYNC,
    CONFIG_LAST_POLL_SYNC,
    LocalStoreError,
    StateDb,
)
from mail_monitor.sync.registry import FolderRegistry
from mail_monitor.utils.logging import configure_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Keep a local sqlite mirror of a mailbox in sync and report weekly workload metrics.",
)
folders_app = typer.Typer(no_args_is_help=True, help="Manage monitored folders.")
weekly_app = typer.Typer(no_args_is_help=True, help="Weekly received/treated/stock metrics.")
comment_app = typer.Typer(no_args_is_help=True, help="Comments attached to weeks.")
policy_app = typer.Typer(no_args_is_help=True, help="Treated-definition policy.")
stock_app = typer.Typer(no_args_is_help=True, help="Initial stock per category.")
app.add_typer(folders_app, name="folders")
app.add_typer(weekly_app, name="weekly")
weekly_app.add_typer(comment_app, name="comment")
app.add_typer(policy_app, name="policy")
app.add_typer(stock_app, name="stock")

console = Console()

ENV_FILE_OPTION = typer.Option(
    None,
    "--env-file",
    exists=True,
    dir_okay=False,
    help="Optional path to a .env file (in addition to environment variables).",
)


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load settings, exiting with code 2 when they are invalid.

    Args:
        env_file: Optional path to a .env file.

    Returns:
        Validated application settings.
    """
    try:
        settings = load_settings(env_file=env_file)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration:\n{exc}", err=True)
        raise typer.Exit(code=2) from None
    configure_logging(settings=settings.logging)
    return settings


@contextmanager
def open_db(settings: AppSettings) -> Iterator[StateDb]:
    """Open the sqlite store, mapping local store errors to exit code 1."""
    settings.storage.root_dir.mkdir(parents=True, exist_ok=True)
    try:
        db = StateDb(sqlite_path=settings.storage.sqlite_path)
    except LocalStoreError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from None
    try:
        db.init_schema()
        yield db
    except LocalStoreError as exc:
        logger.error("Local store error: %s", exc)
        typer.echo(f"Local store error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        db.close()


def _aggregator(settings: AppSettings, db: StateDb) -> WeeklyAggregator:
    return WeeklyAggregator(
        db=db,
        tz=ZoneInfo(settings.metrics.timezone),
        default_categories=settings.metrics.default_categories,
    )


def _orchestrator(settings: AppSettings) -> MonitoringOrchestrator:
    try:
        return MonitoringOrchestrator(settings=settings)
    except ValueError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from None


def _fmt_dt(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


@app.command("run")
def run_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Monitor continuously until interrupted (Ctrl-C)."""
    settings = load_app_settings(env_file=env_file)
    orchestrator = _orchestrator(settings)
    console.print(f"[bold blue]Monitoring[/bold blue] {settings.storage.sqlite_path}")
    try:
        started = asyncio.run(orchestrator.run_until_cancelled())
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None
    except LocalStoreError as exc:
        typer.echo(f"Local store error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not started:
        typer.echo("Remote store unavailable; monitoring disabled.", err=True)
        raise typer.Exit(code=1)


@app.command("sync")
def sync_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Connect once, run a full reconciliation and print its report."""
    settings = load_app_settings(env_file=env_file)
    orchestrator = _orchestrator(settings)
    try:
        with console.status("[bold green]Reconciling folders...[/bold green]"):
            report = asyncio.run(orchestrator.sync_once())
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None
    except LocalStoreError as exc:
        typer.echo(f"Local store error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        orchestrator.db.close()

    if report is None:
        info = orchestrator.connection.get_connection_info()
        typer.echo(f"Could not connect ({info.state.value}): {info.last_error}", err=True)
        raise typer.Exit(code=1)

    table = Table(title="Full reconciliation")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key in ("inserted", "updated", "unchanged", "treated", "skipped_items"):
        table.add_row(key, str(getattr(report, key)))
    table.add_row("folders ok", str(len(report.folders_ok)))
    table.add_row("folders failed", ", ".join(report.folders_failed) or "0")
    table.add_row("duration (s)", f"{report.duration_s or 0:.2f}")
    console.print(table)
    if report.folders_failed:
        raise typer.Exit(code=1)


@app.command("status")
def status_cmd(
    *,
    recent: int = typer.Option(0, "--recent", min=0, max=500, help="Also list the N most recent messages."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Show local message counts and the last synchronization times."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        counts = db.message_counts()
        by_category = db.counts_by_category()
        by_folder = db.counts_by_folder()
        policy = db.get_treated_policy()
        last_full = db.get_timestamp(CONFIG_LAST_FULL_SYNC)
        last_poll = db.get_timestamp(CONFIG_LAST_POLL_SYNC)
        recent_rows = db.recent_messages(limit=recent) if recent else []

    console.print(f"Database: {settings.storage.sqlite_path}")
    console.print(f"Policy: [bold]{policy.value}[/bold]")
    console.print(f"Last full sync: {_fmt_dt(last_full)}  Last poll: {_fmt_dt(last_poll)}")
    console.print(
        f"Messages: {counts['total']} (untreated {counts['untreated']}, "
        f"treated {counts['treated']}, unread {counts['unread']})",
    )

    table = Table(title="By category")
    table.add_column("Category")
    table.add_column("Total", justify="right")
    table.add_column("Untreated", justify="right")
    for category, values in by_category.items():
        table.add_row(category, str(values["total"]), str(values["untreated"]))
    console.print(table)

    if by_folder:
        folder_table = Table(title="Untreated by folder")
        folder_table.add_column("Folder")
        folder_table.add_column("Untreated", justify="right")
        for folder, count in by_folder.items():
            folder_table.add_row(folder, str(count))
        console.print(folder_table)

    if recent_rows:
        recent_table = Table(title="Recent messages")
        for column in ("Received", "Category", "Folder", "Subject", "Read", "Treated"):
            recent_table.add_column(column)
        for row in recent_rows:
            recent_table.add_row(
                _fmt_dt(row.received_time),
                row.category,
                row.folder_path,
                row.subject,
                "yes" if row.is_read else "no",
                _fmt_dt(row.treated_time),
            )
        console.print(recent_table)


@app.command("history")
def history_cmd(
    remote_id: str = typer.Argument(..., help="Remote identity, e.g. <abc@example.com>."),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Print the lifecycle events recorded for one message."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        message = db.get_message(remote_id)
        events = db.events_for(message.id) if message is not None else []
    if message is None:
        typer.echo(f"Unknown message: {remote_id}", err=True)
        raise typer.Exit(code=1)

    console.print(f"[bold]{message.subject}[/bold] ({message.category}, {message.folder_path})")
    table = Table(title="Events")
    for column in ("Time", "Event", "Detail"):
        table.add_column(column)
    for event in events:
        table.add_row(_fmt_dt(event.event_time), event.event_type.value, event.detail)
    console.print(table)


@folders_app.command("list")
def folders_list_cmd(
    *,
    env_file: Path | None = ENV_FILE_OPTION,
    all_: bool = typer.Option(False, "--all", help="Include removed folders."),
) -> None:
    """List monitored folders."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        registry = FolderRegistry(db=db)
        rows = registry.all() if all_ else registry.active()

    table = Table(title="Folders")
    table.add_column("Path")
    table.add_column("Category")
    table.add_column("Display name")
    table.add_column("Active")
    for row in rows:
        table.add_row(row.folder_path, row.category, row.display_name, "yes" if row.is_active else "no")
    console.print(table)


@folders_app.command("add")
def folders_add_cmd(
    folder_path: str = typer.Argument(..., help="Remote folder path, e.g. INBOX/Declarations."),
    category: str = typer.Argument(..., help="Category counted in weekly metrics."),
    *,
    display_name: str = typer.Option("", "--display-name", help="Human label."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Monitor a folder (re-adding a removed folder reactivates it)."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        try:
            row = FolderRegistry(db=db).add(folder_path, category, display_name=display_name)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Monitoring {row.folder_path} as {row.category}")


@folders_app.command("remove")
def folders_remove_cmd(
    folder_path: str = typer.Argument(...),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Stop monitoring a folder."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        removed = FolderRegistry(db=db).remove(folder_path)
    if not removed:
        typer.echo(f"Not monitored: {folder_path}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Removed {folder_path}")


@folders_app.command("set-category")
def folders_set_category_cmd(
    folder_path: str = typer.Argument(...),
    category: str = typer.Argument(...),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Change the category of a monitored folder."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        try:
            updated = FolderRegistry(db=db).set_category(folder_path, category)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    if not updated:
        typer.echo(f"Not monitored: {folder_path}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{folder_path} -> {category}")


@folders_app.command("discover")
def folders_discover_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """List the folders available on the remote store."""
    settings = load_app_settings(env_file=env_file)
    orchestrator = _orchestrator(settings)

    async def _discover() -> list[str]:
        try:
            if not await orchestrator.connection.connect():
                return []
            return [folder.path for folder in await orchestrator.connection.list_folders()]
        finally:
            await orchestrator.connection.dispose()

    try:
        with console.status("[bold green]Listing remote folders...[/bold green]"):
            paths = asyncio.run(_discover())
    except RemoteStoreError as exc:
        typer.echo(f"Listing failed: {exc}", err=True)
        raise typer.Exit(code=1) from None
    finally:
        monitored = {row.folder_path: row.category for row in orchestrator.registry.active()}
        orchestrator.db.close()

    if not orchestrator.connection.get_connection_info().last_connected_at:
        typer.echo("Could not connect to the remote store.", err=True)
        raise typer.Exit(code=1)

    table = Table(title="Remote folders")
    table.add_column("Path")
    table.add_column("Monitored as")
    for path in paths:
        table.add_row(path, monitored.get(path, ""))
    console.print(table)


@weekly_app.command("show")
def weekly_show_cmd(
    *,
    weeks: int = typer.Option(8, "--weeks", min=1, max=520, help="Number of weeks to show."),
    category: str | None = typer.Option(None, "--category", help="Only this category."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Recompute weekly buckets and print the most recent weeks."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        aggregator = _aggregator(settings, db)
        aggregator.recompute()
        end_week = aggregator.current_week()
        start_week = end_week
        for _ in range(weeks - 1):
            start_week = previous_week_id(start_week)
        buckets = aggregator.get_buckets(start_week=start_week, end_week=end_week, category=category)
        comments = db.list_comments()
        policy = db.get_treated_policy()

    table = Table(title=f"Weekly metrics ({policy.value})")
    for column in ("Week", "Category"):
        table.add_column(column)
    for column in ("Begin", "Received", "Treated", "Adj.", "End"):
        table.add_column(column, justify="right")
    for bucket in buckets:
        table.add_row(
            bucket.week_id,
            bucket.category,
            str(bucket.stock_begin),
            str(bucket.received),
            str(bucket.treated),
            str(bucket.manual_adjustment),
            str(bucket.stock_end),
        )
    console.print(table)

    shown = {bucket.week_id for bucket in buckets}
    for comment in comments:
        if comment.week_id in shown:
            console.print(f"[dim]{comment.week_id} #{comment.id}[/dim] {comment.text} ({comment.author or '-'})")


@weekly_app.command("adjust")
def weekly_adjust_cmd(
    week_id: str = typer.Argument(..., help="Week id such as S05-2025."),
    category: str = typer.Argument(...),
    *,
    delta: int = typer.Option(..., "--delta", help="Signed correction subtracted from the stock."),
    reason: str = typer.Option("", "--reason"),
    author: str = typer.Option("", "--author"),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Record a manual stock adjustment for a week and category."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        try:
            row = _aggregator(settings, db).add_adjustment(
                week_id=week_id,
                category=category,
                delta=delta,
                reason=reason,
                author=author,
            )
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Adjustment #{row.id}: {row.week_id} {row.category} {row.delta:+d}")


@weekly_app.command("import")
def weekly_import_cmd(
    csv_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV with week_id,category,received,treated."),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Seed weekly counts from past activity exported before monitoring began.

    Re-importing a week and category replaces the counts imported for it earlier.
    """
    settings = load_app_settings(env_file=env_file)
    try:
        with csv_path.open(newline="", encoding="utf-8-sig") as fh:
            rows = [
                WeeklyHistoryRow(
                    week_id=(record.get("week_id") or "").strip(),
                    category=(record.get("category") or "").strip(),
                    received=int(record.get("received") or 0),
                    treated=int(record.get("treated") or 0),
                )
                for record in csv.DictReader(fh)
            ]
    except (ValueError, ValidationError) as exc:
        typer.echo(f"Invalid history file {csv_path}: {exc}", err=True)
        raise typer.Exit(code=2) from None

    with open_db(settings) as db:
        try:
            written = _aggregator(settings, db).import_history(rows)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Imported {written} weekly rows from {csv_path.name}")


@comment_app.command("add")
def comment_add_cmd(
    week_id: str = typer.Argument(...),
    text: str = typer.Argument(...),
    *,
    author: str = typer.Option("", "--author"),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Attach a comment to a week."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        try:
            row = _aggregator(settings, db).add_comment(week_id=week_id, text=text, author=author)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Comment #{row.id} added to {row.week_id}")


@comment_app.command("list")
def comment_list_cmd(
    week_id: str | None = typer.Argument(None),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """List comments, optionally for one week."""
    settings = load_app_settings(env_file=env_file)
    if week_id is not None:
        try:
            parse_week_id(week_id)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    with open_db(settings) as db:
        rows = db.list_comments(week_id=week_id)

    table = Table(title="Comments")
    for column in ("ID", "Week", "Author", "Created", "Text"):
        table.add_column(column)
    for row in rows:
        table.add_row(str(row.id), row.week_id, row.author, _fmt_dt(row.created_at), row.text)
    console.print(table)


@comment_app.command("delete")
def comment_delete_cmd(
    comment_id: int = typer.Argument(...),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Delete a comment."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        deleted = db.delete_comment(comment_id)
    if not deleted:
        typer.echo(f"No comment #{comment_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deleted comment #{comment_id}")


@policy_app.command("show")
def policy_show_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Show the active treated-definition policy."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        policy = db.get_treated_policy()
    typer.echo(policy.value)


@policy_app.command("set")
def policy_set_cmd(
    policy: TreatedPolicy = typer.Argument(..., help="strict: explicit treatment only; permissive: read counts."),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Switch the treated-definition policy and recompute weekly buckets."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        buckets = _aggregator(settings, db).set_policy(policy)
    typer.echo(f"Policy set to {policy.value}; {len(buckets)} buckets recomputed")


@stock_app.command("set")
def stock_set_cmd(
    category: str = typer.Argument(...),
    value: int = typer.Argument(..., help="Stock at the start of the first computed week."),
    *,
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Set the initial stock of a category and recompute weekly buckets."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        try:
            _aggregator(settings, db).set_initial_stock(category, value)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from None
    typer.echo(f"Initial stock of {category} set to {value}")


@app.command("purge")
def purge_cmd(
    *,
    days: int | None = typer.Option(None, "--days", min=1, help="Retention in days (default from settings)."),
    env_file: Path | None = ENV_FILE_OPTION,
) -> None:
    """Delete treated messages older than the retention period.

    Their weekly counts are kept, so past weekly figures do not change.
    """
    settings = load_app_settings(env_file=env_file)
    retention = days or settings.storage.retention_days
    cutoff = datetime.now(tz=UTC) - timedelta(days=retention)
    with open_db(settings) as db:
        deleted = _aggregator(settings, db).purge_treated(older_than=cutoff)
    typer.echo(f"Purged {deleted} treated messages received before {cutoff.date().isoformat()}")


@app.command("report")
def report_cmd(*, env_file: Path | None = ENV_FILE_OPTION) -> None:
    """Export a JSON summary (counts and weekly buckets) to the reports directory."""
    settings = load_app_settings(env_file=env_file)
    with open_db(settings) as db:
        buckets = _aggregator(settings, db).recompute()
        report = SummaryReport(
            created_at=datetime.now(tz=UTC),
            sqlite_path=str(settings.storage.sqlite_path),
            treated_policy=db.get_treated_policy(),
            counts=db.message_counts(),
            weeks=[bucket.model_dump() for bucket in buckets],
        )

    settings.storage.reports_dir.mkdir(parents=True, exist_ok=True)
    stamp = report.created_at.strftime("%Y%m%dT%H%M%SZ")
    out_path = settings.storage.reports_dir / f"summary-{stamp}.json"
    out_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    typer.echo(f"Wrote {out_path}")
