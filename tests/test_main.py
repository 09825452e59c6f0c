"""Tests for the CLI entrypoint (main.main)."""

from __future__ import annotations

import csv
import json
from pathlib import Path
from unittest.mock import patch

import pytest

import main
from models import ImportReport

HISTORY = {"history": [{"id": "55", "title": "T", "author": "a", "fandom": "F", "words": "1,500"}]}


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "load_dotenv", lambda: None)
    monkeypatch.delenv("ARCHIVE_PASSWORD", raising=False)


def test_exports_only_run_writes_csv(tmp_path: Path) -> None:
    history = tmp_path / "history.json"
    history.write_text(json.dumps(HISTORY), encoding="utf-8")
    output = tmp_path / "library.csv"

    code = main.main(["--no-live", "--username", "reader", "--history", str(history), "--csv-path", str(output)])

    assert code == 0
    with output.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh))
    assert [(r["owner"], r["external_id"], r["resolved_status"]) for r in rows] == [("reader", "55", "completed")]


def test_dry_run_leaves_no_file(tmp_path: Path) -> None:
    history = tmp_path / "history.json"
    history.write_text(json.dumps(HISTORY), encoding="utf-8")
    output = tmp_path / "library.csv"

    code = main.main(["--no-live", "--history", str(history), "--csv-path", str(output), "--dry-run"])

    assert code == 0
    assert not output.exists()


def test_nothing_to_import_exits_non_zero(tmp_path: Path) -> None:
    assert main.main(["--no-live", "--csv-path", str(tmp_path / "library.csv")]) == 1


def test_missing_export_file_exits_non_zero(tmp_path: Path) -> None:
    assert main.main(["--no-live", "--history", str(tmp_path / "missing.json")]) == 1


def test_supabase_without_config_exits_non_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

    with patch("main.run_import") as mock_run:
        assert main.main(["--no-live", "--store", "supabase"]) == 1

    mock_run.assert_not_called()


def test_password_comes_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ARCHIVE_PASSWORD", "from-env")

    with patch("main.run_import", return_value=ImportReport(success=True)) as mock_run:
        code = main.main(["--username", "reader", "--csv-path", str(tmp_path / "library.csv")])

    assert code == 0
    request = mock_run.call_args.args[0]
    assert request.identity == "reader"
    assert request.secret == "from-env"
    assert request.live is True
