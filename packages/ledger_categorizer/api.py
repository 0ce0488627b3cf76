"""Public API surface for ``ledger_categorizer``.

Stable import point for callers (the CLI, services, tests). Implementations
live in the feature modules and are re-exported here unchanged.
"""

from __future__ import annotations

from .drift import acknowledge_alert, run_weekly_drift_check, unacknowledged_alerts
from .effectiveness import track_rule_effectiveness
from .hybrid import categorize_batch, categorize_pending, categorize_transaction, load_org_ruleset
from .learning_loop import (
    canary_and_promote,
    create_rule_version,
    learn_rules_from_corrections,
    promote_rule_version,
    record_correction,
    rollback_rule_version,
    run_canary_test,
)
from .oscillation import get_unresolved_oscillations, resolve_oscillation
from .pass1 import categorize_pass1
from .validator import format_report, validate_ruleset

__all__ = [
    "acknowledge_alert",
    "canary_and_promote",
    "categorize_batch",
    "categorize_pass1",
    "categorize_pending",
    "categorize_transaction",
    "create_rule_version",
    "format_report",
    "get_unresolved_oscillations",
    "learn_rules_from_corrections",
    "load_org_ruleset",
    "promote_rule_version",
    "record_correction",
    "resolve_oscillation",
    "rollback_rule_version",
    "run_canary_test",
    "run_weekly_drift_check",
    "track_rule_effectiveness",
    "unacknowledged_alerts",
    "validate_ruleset",
]
