from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Portable across PostgreSQL and SQLite.
_NOW = text("CURRENT_TIMESTAMP")


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: lc_transactions
# ---------------------------


class LcTransaction(Base):
    __tablename__ = "lc_transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'USD'"))
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    merchant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mcc: Mapped[str | None] = mapped_column(String(4), nullable=True)
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    source: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'unknown'"))
    # Which engine produced ``category_id``: pass1, llm or manual.
    decision_source: Mapped[str | None] = mapped_column(String, nullable=True)
    raw: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("confidence IS NULL OR (confidence >= 0 AND confidence <= 1)", name="ck_lc_tx_confidence"),
        Index("ix_lc_transactions_org_date", "org_id", "date"),
    )


# ---------------------------
# Learning loop
# ---------------------------


class LcRuleVersion(Base):
    __tablename__ = "lc_rule_versions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    rule_type: Mapped[str] = mapped_column(String, nullable=False)
    pattern: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_version_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("lc_rule_versions.id"), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # ``metadata`` is reserved on declarative classes; keep the column name.
    rule_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("org_id", "rule_type", "pattern", "version", name="uq_lc_rule_versions_lineage"),
        CheckConstraint("rule_type IN ('mcc', 'vendor', 'keyword')", name="ck_lc_rule_type"),
        CheckConstraint("source IN ('manual', 'learned')", name="ck_lc_rule_source"),
    )


class LcCanaryResult(Base):
    __tablename__ = "lc_canary_results"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    rule_version_id: Mapped[str] = mapped_column(
        String, ForeignKey("lc_rule_versions.id"), nullable=False, index=True
    )
    sample_size: Mapped[int] = mapped_column(Integer, nullable=False)
    correct: Mapped[int] = mapped_column(Integer, nullable=False)
    incorrect: Mapped[int] = mapped_column(Integer, nullable=False)
    accuracy: Mapped[float] = mapped_column(Float, nullable=False)
    precision: Mapped[float | None] = mapped_column(Float, nullable=True)
    recall: Mapped[float | None] = mapped_column(Float, nullable=True)
    f1_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    inconclusive: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    promoted: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)


class LcCorrection(Base):
    __tablename__ = "lc_corrections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    tx_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    old_category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    new_category_id: Mapped[str] = mapped_column(String, nullable=False)
    actor_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)


class LcOscillation(Base):
    __tablename__ = "lc_oscillations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    tx_id: Mapped[str] = mapped_column(String, nullable=False)
    # List of {category_id, at (ISO-8601), actor_id}.
    sequence: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    oscillation_count: Mapped[int] = mapped_column(Integer, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    final_category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("org_id", "tx_id", name="uq_lc_oscillations_tx"),)


class LcRuleEffectiveness(Base):
    __tablename__ = "lc_rule_effectiveness"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    rule_version_id: Mapped[str] = mapped_column(String, ForeignKey("lc_rule_versions.id"), nullable=False)
    measurement_date: Mapped[date] = mapped_column(Date, nullable=False)
    applications_count: Mapped[int] = mapped_column(Integer, nullable=False)
    correct_count: Mapped[int] = mapped_column(Integer, nullable=False)
    incorrect_count: Mapped[int] = mapped_column(Integer, nullable=False)
    avg_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    precision: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "rule_version_id", "measurement_date", name="uq_lc_rule_effectiveness_day"),
    )


# ---------------------------
# Drift
# ---------------------------


class LcDistributionSnapshot(Base):
    __tablename__ = "lc_distribution_snapshots"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[str] = mapped_column(String, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_transactions: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage: Mapped[float] = mapped_column(Float, nullable=False)
    avg_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    source_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "snapshot_date", "category_id", name="uq_lc_distribution_snapshot"),
    )


class LcConfidenceSnapshot(Base):
    __tablename__ = "lc_confidence_snapshots"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    avg_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    median_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    p25_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    p75_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    p90_confidence: Mapped[float] = mapped_column(Float, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False)
    low_confidence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    medium_confidence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    high_confidence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("org_id", "snapshot_date", "source", name="uq_lc_confidence_snapshot"),)


class LcDriftAlert(Base):
    __tablename__ = "lc_drift_alerts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False)
    alert_type: Mapped[str] = mapped_column(String, nullable=False)
    metric_name: Mapped[str] = mapped_column(String, nullable=False)
    detection_date: Mapped[date] = mapped_column(Date, nullable=False)
    current_value: Mapped[float] = mapped_column(Float, nullable=False)
    previous_value: Mapped[float] = mapped_column(Float, nullable=False)
    change_pct: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_pct: Mapped[float] = mapped_column(Float, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("org_id", "metric_name", "detection_date", name="uq_lc_drift_alert_day"),
        CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_lc_drift_severity"),
    )


class LcAuditLog(Base):
    __tablename__ = "lc_audit_log"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=_NOW)


# Store table name -> ORM class.
STORE_TABLES: dict[str, type[Base]] = {
    "transactions": LcTransaction,
    "rule_versions": LcRuleVersion,
    "canary_results": LcCanaryResult,
    "corrections": LcCorrection,
    "oscillations": LcOscillation,
    "rule_effectiveness": LcRuleEffectiveness,
    "distribution_snapshots": LcDistributionSnapshot,
    "confidence_snapshots": LcConfidenceSnapshot,
    "drift_alerts": LcDriftAlert,
    "audit_log": LcAuditLog,
}
