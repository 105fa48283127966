"""Tests for the local-only CLI commands."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from mail_monitor.cli.app import app
from mail_monitor.storage.state_db import StateDb

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MON_STORAGE__ROOT_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MON_LOGGING__JSON_LOGS", "false")
    return tmp_path / "data"


def test_folder_and_policy_commands(data_dir: Path) -> None:
    """Folders and the treated policy persist across invocations."""
    result = runner.invoke(app, ["folders", "add", "INBOX/Decl", "Declarations"])
    assert result.exit_code == 0, result.output
    assert "Monitoring INBOX/Decl as Declarations" in result.output

    result = runner.invoke(app, ["folders", "remove", "INBOX/Other"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["policy", "set", "permissive"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["policy", "show"])
    assert result.output.strip() == "permissive"
    assert (data_dir / "monitor.sqlite3").exists()


def test_weekly_commands_validate_week_ids(data_dir: Path) -> None:
    """Invalid week ids exit with code 2; valid ones are recorded."""
    result = runner.invoke(app, ["weekly", "adjust", "S99-2025", "Declarations", "--delta", "1"])
    assert result.exit_code == 2

    result = runner.invoke(app, ["weekly", "comment", "add", "S02-2025", "Backlog cleared"])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["weekly", "comment", "delete", "42"])
    assert result.exit_code == 1


def test_report_writes_summary_json(data_dir: Path) -> None:
    """The report command writes a timestamped JSON file."""
    runner.invoke(app, ["stock", "set", "Declarations", "4"])
    result = runner.invoke(app, ["report"])
    assert result.exit_code == 0, result.output

    files = list((data_dir / "reports").glob("summary-*.json"))
    assert len(files) == 1
    assert '"treated_policy": "strict"' in files[0].read_text(encoding="utf-8")


def test_status_and_history_on_empty_store(data_dir: Path) -> None:
    """Status works on an empty store; unknown messages have no history."""
    result = runner.invoke(app, ["status", "--recent", "5"])
    assert result.exit_code == 0, result.output
    assert "Messages: 0" in result.output

    result = runner.invoke(app, ["history", "<missing@x>"])
    assert result.exit_code == 1


def test_weekly_import_seeds_history(data_dir: Path, tmp_path: Path) -> None:
    """Imported weekly counts feed the recomputed buckets; bad files exit with code 2."""
    history = tmp_path / "activity.csv"
    history.write_text(
        "week_id,category,received,treated\nS01-2025,Declarations,12,9\nS02-2025,Declarations,4,6\n",
        encoding="utf-8",
    )
    result = runner.invoke(app, ["weekly", "import", str(history)])
    assert result.exit_code == 0, result.output
    assert "Imported 2 weekly rows" in result.output

    bad = tmp_path / "bad.csv"
    bad.write_text("week_id,category,received,treated\nS99-2025,Declarations,1,0\n", encoding="utf-8")
    assert runner.invoke(app, ["weekly", "import", str(bad)]).exit_code == 2

    result = runner.invoke(app, ["purge", "--days", "30"])
    assert result.exit_code == 0, result.output

    db = StateDb(sqlite_path=data_dir / "monitor.sqlite3")
    try:
        assert [(h.week_id, h.received, h.treated) for h in db.get_weekly_history(source="imported")] == [
            ("S01-2025", 12, 9),
            ("S02-2025", 4, 6),
        ]
        second = db.get_weekly_buckets(week_ids=["S02-2025"], category="Declarations")[0]
        assert (second.stock_begin, second.stock_end) == (3, 1)
    finally:
        db.close()
