"""Hybrid transaction categorization with a self-improving rule engine.

This module only re-exports the public API functions and model types; there
is no runtime logic here.
"""

from .api import (
    acknowledge_alert,
    canary_and_promote,
    categorize_batch,
    categorize_pass1,
    categorize_pending,
    categorize_transaction,
    create_rule_version,
    format_report,
    get_unresolved_oscillations,
    learn_rules_from_corrections,
    load_org_ruleset,
    promote_rule_version,
    record_correction,
    resolve_oscillation,
    rollback_rule_version,
    run_canary_test,
    run_weekly_drift_check,
    track_rule_effectiveness,
    unacknowledged_alerts,
    validate_ruleset,
)
from .config import CanaryConfig, DriftConfig, HybridConfig, OscillationConfig, RetryPolicy
from .errors import CategorizerError, PreconditionError, RecordNotFoundError
from .models import (
    CanaryTestResult,
    CategorizationOutcome,
    Correction,
    DriftAlert,
    Oscillation,
    Pass1Result,
    Pass2Result,
    RuleVersion,
    Transaction,
)
from .store import InMemoryStore, Store

__all__ = [
    # API
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
    # Config
    "CanaryConfig",
    "DriftConfig",
    "HybridConfig",
    "OscillationConfig",
    "RetryPolicy",
    # Errors
    "CategorizerError",
    "PreconditionError",
    "RecordNotFoundError",
    # Models
    "CanaryTestResult",
    "CategorizationOutcome",
    "Correction",
    "DriftAlert",
    "Oscillation",
    "Pass1Result",
    "Pass2Result",
    "RuleVersion",
    "Transaction",
    # Storage
    "InMemoryStore",
    "Store",
]
