# ruff: noqa: I001
"""Typer console interface for ``ledger_categorizer``.

Every command loads ``.env`` from the working directory (without overriding
already-set variables) and configures package logging first. Commands that
need storage use :class:`persistence.SqlStore` when ``--database-url`` or
``DATABASE_URL`` is set and fall back to an empty in-memory store otherwise.
Business logic lives in ``ledger_categorizer.api``.
"""

from __future__ import annotations

import json
import os
from datetime import date
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging
from .store import InMemoryStore, Store


# ---- Small module-level helpers ---------------------------------------------


def _open_store(database_url: str | None) -> Store:
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        typer.echo("Warning: DATABASE_URL is not set; using an empty in-memory store.", err=True)
        return InMemoryStore()

    # Deferred so commands that never touch the database skip SQLAlchemy setup.
    from .persistence import SqlStore

    return SqlStore(database_url=url)


def _load_transactions(path: Path, org_id: str) -> list[Any]:
    """Read a JSON array of transaction objects.

    Each object needs ``id``, ``date`` (ISO) and ``amount_cents``;
    ``org_id`` defaults to the ``--org-id`` option.
    """

    from .models import Transaction

    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, list):
        raise ValueError("expected a JSON array of transaction objects")
    out = []
    for i, item in enumerate(payload):
        if not isinstance(item, dict):
            raise ValueError(f"item {i} is not an object")
        rec = dict(item)
        rec.setdefault("org_id", org_id)
        rec.setdefault("id", f"tx-{i}")
        if isinstance(rec.get("date"), str):
            rec["date"] = date.fromisoformat(rec["date"])
        out.append(Transaction.from_record(rec))
    return out


def _fmt_conf(value: float | None) -> str:
    return "" if value is None else f"{value:.3f}"


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Hybrid transaction categorization (rules first, OpenAI fallback) with a "
        "canary-gated rule learning loop and drift detection."
    ),
)

# Module-level option objects keep calls out of parameter defaults (ruff B008).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
ACTOR_OPTION: OptionInfo = typer.Option(..., "--actor", help="Identifier recorded on audit entries.")


@app.command("categorize")
def categorize_cmd(
    input_path: Annotated[Path, typer.Argument(help="JSON array of transactions", dir_okay=False)],
    *,
    org_id: str = typer.Option("default", help="Organization the transactions belong to."),
    no_llm: bool = typer.Option(False, "--no-llm", help="Disable the model fallback."),
) -> None:
    """Categorize transactions from a JSON file and print one line per result."""

    from .api import categorize_batch
    from .config import load_hybrid_config_from_env
    from .openai_client import OpenAIModelClient

    try:
        cfg = load_hybrid_config_from_env()
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    model_client = None
    if cfg.enable_llm and not no_llm:
        if not os.getenv("OPENAI_API_KEY"):
            typer.echo("Error: OPENAI_API_KEY is not set (use --no-llm for rules only).", err=True)
            raise typer.Exit(1)
        model_client = OpenAIModelClient(cfg.model, timeout_sec=cfg.retry.timeout_sec)

    try:
        txs = _load_transactions(input_path, org_id)
    except FileNotFoundError as e:
        typer.echo(f"Error: File not found: {input_path}", err=True)
        raise typer.Exit(1) from e
    except (ValueError, TypeError) as e:
        typer.echo(f"Error: invalid transactions file: {e}", err=True)
        raise typer.Exit(1) from e

    outcomes = categorize_batch(txs, model_client=model_client, config=cfg)
    for o in outcomes:
        typer.echo(
            "\t".join(
                [
                    o.tx_id,
                    o.category_id or "",
                    _fmt_conf(o.confidence),
                    o.source or "",
                    "review" if o.needs_review else "ok",
                ]
            )
        )


@app.command("validate-rules")
def validate_rules_cmd(
    *,
    org_id: str | None = typer.Option(None, help="Also check this organization's rule versions."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Report rule conflicts; exits with status 1 when any is critical."""

    from .api import format_report, validate_ruleset
    from .models import RuleVersion
    from .rules.ruleset import DEFAULT_RULESET

    versions: list[RuleVersion] = []
    if org_id is not None:
        store = _open_store(database_url)
        versions = [RuleVersion.from_record(r) for r in store.query("rule_versions", {"org_id": org_id})]
    report = validate_ruleset(DEFAULT_RULESET, versions)
    typer.echo(format_report(report))
    if report.has_critical:
        raise typer.Exit(1)


@app.command("learn-rules")
def learn_rules_cmd(
    *,
    org_id: str = typer.Option(..., help="Organization to learn from."),
    min_support: int = typer.Option(3, min=1, help="Minimum agreeing corrections per pattern."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Create inactive learned rule versions from correction patterns."""

    from .api import learn_rules_from_corrections

    store = _open_store(database_url)
    for rv in learn_rules_from_corrections(store, org_id, min_support=min_support):
        typer.echo(f"{rv.id}\t{rv.rule_type}\t{rv.pattern}\t{rv.category_id}\tv{rv.version}")


@app.command("canary")
def canary_cmd(
    rule_version_id: str,
    *,
    promote: bool = typer.Option(False, help="Promote the version when the canary passes."),
    actor: str = typer.Option("cli", "--actor", help="Identifier recorded on audit entries."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Run a canary test for a rule version."""

    from .api import canary_and_promote, run_canary_test
    from .errors import PreconditionError

    store = _open_store(database_url)
    try:
        if promote:
            result, promoted = canary_and_promote(store, rule_version_id, actor_id=actor)
        else:
            result, promoted = run_canary_test(store, rule_version_id), None
    except PreconditionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    status = "inconclusive" if result.inconclusive else ("passed" if result.passed else "failed")
    typer.echo(
        f"{status}: sample={result.sample_size} accuracy={result.accuracy:.3f} "
        f"threshold={result.threshold:.2f} promoted={promoted is not None}"
    )
    if not result.passed:
        raise typer.Exit(1)


@app.command("promote")
def promote_cmd(
    rule_version_id: str,
    *,
    actor: str = ACTOR_OPTION,
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Activate a rule version whose latest canary passed."""

    from .api import promote_rule_version
    from .errors import PreconditionError

    store = _open_store(database_url)
    try:
        rv = promote_rule_version(store, rule_version_id, actor_id=actor)
    except PreconditionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(f"promoted {rv.id} (v{rv.version})")


@app.command("rollback")
def rollback_cmd(
    rule_version_id: str,
    *,
    actor: str = ACTOR_OPTION,
    reason: str = typer.Option("rollback", help="Reason stored on the deactivated version."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Deactivate a rule version and reactivate its parent."""

    from .api import rollback_rule_version
    from .errors import PreconditionError

    store = _open_store(database_url)
    try:
        parent = rollback_rule_version(store, rule_version_id, actor_id=actor, reason=reason)
    except PreconditionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    typer.echo(f"restored {parent.id} (v{parent.version})")


@app.command("drift-check")
def drift_check_cmd(
    *,
    org_id: str = typer.Option(..., help="Organization to check."),
    as_of: str | None = typer.Option(None, help="Snapshot date (YYYY-MM-DD); defaults to today."),
    threshold_pct: float = typer.Option(10.0, help="Minimum percentage change that raises an alert."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Snapshot the week, compare with the previous one and print alerts."""

    from .api import run_weekly_drift_check
    from .config import DriftConfig

    try:
        day = date.fromisoformat(as_of) if as_of else None
    except ValueError as e:
        typer.echo(f"Error: invalid --as-of date: {as_of}", err=True)
        raise typer.Exit(1) from e
    store = _open_store(database_url)
    report = run_weekly_drift_check(store, org_id, as_of=day, config=DriftConfig(threshold_pct=threshold_pct))
    for a in report.alerts:
        typer.echo(
            f"[{a.severity.upper()}] {a.metric_name}: "
            f"{a.previous_value:.3f} -> {a.current_value:.3f} ({a.change_pct:.1f}%)"
        )
    typer.echo(f"alerts={len(report.alerts)} snapshot_date={report.snapshot_date.isoformat()}")


@app.callback()
def _root(
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level name or number (default: LEDGER_CATEGORIZER_LOG_LEVEL, then INFO)."
    ),
) -> None:
    """Load ``.env`` from the current working directory and configure logging."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    try:
        configure_logging(log_level)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()
