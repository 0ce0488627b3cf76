"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the categorization engine's tables used by
``ledger_categorizer``.
"""

from .categorizer import (
    STORE_TABLES,
    Base,
    LcAuditLog,
    LcCanaryResult,
    LcConfidenceSnapshot,
    LcCorrection,
    LcDistributionSnapshot,
    LcDriftAlert,
    LcOscillation,
    LcRuleEffectiveness,
    LcRuleVersion,
    LcTransaction,
)

__all__ = [
    "Base",
    "LcAuditLog",
    "LcCanaryResult",
    "LcConfidenceSnapshot",
    "LcCorrection",
    "LcDistributionSnapshot",
    "LcDriftAlert",
    "LcOscillation",
    "LcRuleEffectiveness",
    "LcRuleVersion",
    "LcTransaction",
    "STORE_TABLES",
]
