# ruff: noqa: I001
"""Oscillation, rule effectiveness and drift monitoring tables.

Revision ID: 0002_lc_monitoring
Revises: 0001_lc_core
Create Date: 2026-10-09
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0002_lc_monitoring"
down_revision: str | None = "0001_lc_core"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_NOW = sa.text("CURRENT_TIMESTAMP")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # One row per transaction; repeated detections update it in place.
    op.create_table(
        "lc_oscillations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("tx_id", sa.String(), nullable=False),
        sa.Column("sequence", _JSON, nullable=False),
        sa.Column("oscillation_count", sa.Integer(), nullable=False),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("final_category_id", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "tx_id", name="uq_lc_oscillations_tx"),
    )

    op.create_table(
        "lc_rule_effectiveness",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("rule_version_id", sa.String(), nullable=False),
        sa.Column("measurement_date", sa.Date(), nullable=False),
        sa.Column("applications_count", sa.Integer(), nullable=False),
        sa.Column("correct_count", sa.Integer(), nullable=False),
        sa.Column("incorrect_count", sa.Integer(), nullable=False),
        sa.Column("avg_confidence", sa.Float(), nullable=True),
        sa.Column("precision", sa.Float(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["rule_version_id"], ["lc_rule_versions.id"], name="fk_lc_effectiveness_rule_version"
        ),
        sa.UniqueConstraint(
            "org_id", "rule_version_id", "measurement_date", name="uq_lc_rule_effectiveness_day"
        ),
    )

    op.create_table(
        "lc_distribution_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("category_id", sa.String(), nullable=False),
        sa.Column("transaction_count", sa.Integer(), nullable=False),
        sa.Column("total_transactions", sa.Integer(), nullable=False),
        sa.Column("percentage", sa.Float(), nullable=False),
        sa.Column("avg_confidence", sa.Float(), nullable=True),
        sa.Column("source_breakdown", _JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "snapshot_date", "category_id", name="uq_lc_distribution_snapshot"),
    )

    op.create_table(
        "lc_confidence_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("avg_confidence", sa.Float(), nullable=False),
        sa.Column("median_confidence", sa.Float(), nullable=False),
        sa.Column("p25_confidence", sa.Float(), nullable=False),
        sa.Column("p75_confidence", sa.Float(), nullable=False),
        sa.Column("p90_confidence", sa.Float(), nullable=False),
        sa.Column("transaction_count", sa.Integer(), nullable=False),
        sa.Column("low_confidence_count", sa.Integer(), nullable=False),
        sa.Column("medium_confidence_count", sa.Integer(), nullable=False),
        sa.Column("high_confidence_count", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "snapshot_date", "source", name="uq_lc_confidence_snapshot"),
    )

    op.create_table(
        "lc_drift_alerts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("alert_type", sa.String(), nullable=False),
        sa.Column("metric_name", sa.String(), nullable=False),
        sa.Column("detection_date", sa.Date(), nullable=False),
        sa.Column("current_value", sa.Float(), nullable=False),
        sa.Column("previous_value", sa.Float(), nullable=False),
        sa.Column("change_pct", sa.Float(), nullable=False),
        sa.Column("threshold_pct", sa.Float(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_by", sa.String(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "metric_name", "detection_date", name="uq_lc_drift_alert_day"),
        sa.CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="ck_lc_drift_severity"),
    )


def downgrade() -> None:
    op.drop_table("lc_drift_alerts")
    op.drop_table("lc_confidence_snapshots")
    op.drop_table("lc_distribution_snapshots")
    op.drop_table("lc_rule_effectiveness")
    op.drop_table("lc_oscillations")
