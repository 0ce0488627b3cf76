"""Console commands through Typer's test runner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from ledger_categorizer.cli import app
from ledger_categorizer.learning_loop import create_rule_version
from ledger_categorizer.persistence import SqlStore
from typer.testing import CliRunner

from tests.helpers.db import bootstrap_sqlite_db

runner = CliRunner()


@pytest.fixture(autouse=True)
def _in_tmp_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # Keeps load_dotenv away from any developer .env.
    monkeypatch.chdir(tmp_path)


def _write_transactions(tmp_path: Path) -> Path:
    path = tmp_path / "transactions.json"
    path.write_text(
        json.dumps(
            [
                {
                    "id": "coffee",
                    "date": "2024-03-04",
                    "amount_cents": -550,
                    "merchant_name": "Starbucks",
                    "mcc": "5814",
                    "description": "STARBUCKS #1234",
                },
                {"id": "payout", "date": "2024-03-04", "amount_cents": 500, "merchant_name": "Stripe",
                 "description": "Payout transfer"},
            ]
        ),
        encoding="utf-8",
    )
    return path


def test_categorize_rules_only(tmp_path: Path) -> None:
    result = runner.invoke(app, ["categorize", str(_write_transactions(tmp_path)), "--no-llm", "--org-id", "org-1"])

    assert result.exit_code == 0, result.output
    lines = [line for line in result.output.splitlines() if "\t" in line]
    assert lines == ["coffee\tmeals\t0.980\tpass1\tok", "payout\t\t\t\treview"]


def test_categorize_requires_api_key(tmp_path: Path) -> None:
    result = runner.invoke(app, ["categorize", str(_write_transactions(tmp_path))])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY is not set" in result.output


def test_categorize_rejects_bad_input(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text('{"id": "x"}', encoding="utf-8")
    result = runner.invoke(app, ["categorize", str(bad), "--no-llm"])
    assert result.exit_code == 1
    assert "invalid transactions file" in result.output

    missing = runner.invoke(app, ["categorize", str(tmp_path / "missing.json"), "--no-llm"])
    assert missing.exit_code == 1
    assert "File not found" in missing.output


def test_categorize_reports_bad_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEDGER_CATEGORIZER_HYBRID_THRESHOLD", "very")
    result = runner.invoke(app, ["categorize", str(_write_transactions(tmp_path)), "--no-llm"])
    assert result.exit_code == 1
    assert "invalid LEDGER_CATEGORIZER_* setting" in result.output


def test_unknown_log_level_is_reported() -> None:
    result = runner.invoke(app, ["--log-level", "chatty", "validate-rules"])
    assert result.exit_code == 1
    assert "unknown log level" in result.output


def test_validate_rules_default_ruleset() -> None:
    result = runner.invoke(app, ["validate-rules"])
    assert result.exit_code == 0, result.output
    assert "Rules checked:" in result.output


def test_validate_rules_flags_org_conflicts(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "cli.sqlite3")
    create_rule_version(
        SqlStore(database_url=url),
        org_id="org-1",
        rule_type="mcc",
        pattern="5814",
        category_id="office_admin",
        confidence=0.9,
        source="learned",
    )

    result = runner.invoke(app, ["validate-rules", "--org-id", "org-1", "--database-url", url])

    assert result.exit_code == 1
    assert "[CRITICAL] mcc_conflict: MCC 5814" in result.output


def test_drift_check_without_database() -> None:
    result = runner.invoke(app, ["drift-check", "--org-id", "org-1", "--as-of", "2024-03-13"])
    assert result.exit_code == 0, result.output
    assert "DATABASE_URL is not set" in result.output
    assert "alerts=0 snapshot_date=2024-03-13" in result.output


def test_drift_check_rejects_bad_date() -> None:
    result = runner.invoke(app, ["drift-check", "--org-id", "org-1", "--as-of", "13/03/2024"])
    assert result.exit_code == 1
    assert "invalid --as-of date" in result.output


def test_promote_without_canary_fails(tmp_path: Path) -> None:
    url = bootstrap_sqlite_db(tmp_path / "cli.sqlite3")
    rv = create_rule_version(
        SqlStore(database_url=url),
        org_id="org-1",
        rule_type="vendor",
        pattern="Blue Bottle",
        category_id="meals",
        confidence=0.9,
        source="learned",
    )

    result = runner.invoke(app, ["promote", rv.id, "--actor", "admin", "--database-url", url])

    assert result.exit_code == 1
    assert "no canary result" in result.output
