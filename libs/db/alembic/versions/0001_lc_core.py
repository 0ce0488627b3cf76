# ruff: noqa: I001
"""Categorizer core tables: transactions, rule lineage, canaries, corrections, audit log.

Revision ID: 0001_lc_core
Revises: None
Create Date: 2026-10-05
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_lc_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
_NOW = sa.text("CURRENT_TIMESTAMP")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW)


def upgrade() -> None:
    # lc_transactions
    op.create_table(
        "lc_transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("merchant_name", sa.String(), nullable=True),
        sa.Column("mcc", sa.String(4), nullable=True),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("source", sa.String(), nullable=False, server_default=sa.text("'unknown'")),
        sa.Column("decision_source", sa.String(), nullable=True),
        sa.Column("raw", _JSON, nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_lc_tx_confidence",
        ),
    )
    op.create_index("ix_lc_transactions_org_id", "lc_transactions", ["org_id"], unique=False)
    op.create_index("ix_lc_transactions_org_date", "lc_transactions", ["org_id", "date"], unique=False)

    # lc_rule_versions: one lineage per (org_id, rule_type, pattern)
    op.create_table(
        "lc_rule_versions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("pattern", sa.String(), nullable=False),
        sa.Column("category_id", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("parent_version_id", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deactivated_by", sa.String(), nullable=True),
        sa.Column("deactivation_reason", sa.Text(), nullable=True),
        sa.Column("metadata", _JSON, nullable=False),
        sa.ForeignKeyConstraint(
            ["parent_version_id"], ["lc_rule_versions.id"], name="fk_lc_rule_versions_parent"
        ),
        sa.UniqueConstraint("org_id", "rule_type", "pattern", "version", name="uq_lc_rule_versions_lineage"),
        sa.CheckConstraint("rule_type IN ('mcc', 'vendor', 'keyword')", name="ck_lc_rule_type"),
        sa.CheckConstraint("source IN ('manual', 'learned')", name="ck_lc_rule_source"),
    )

    op.create_table(
        "lc_canary_results",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("rule_version_id", sa.String(), nullable=False),
        sa.Column("sample_size", sa.Integer(), nullable=False),
        sa.Column("correct", sa.Integer(), nullable=False),
        sa.Column("incorrect", sa.Integer(), nullable=False),
        sa.Column("accuracy", sa.Float(), nullable=False),
        sa.Column("precision", sa.Float(), nullable=True),
        sa.Column("recall", sa.Float(), nullable=True),
        sa.Column("f1_score", sa.Float(), nullable=True),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("passed", sa.Boolean(), nullable=False),
        sa.Column("inconclusive", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("promoted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.ForeignKeyConstraint(["rule_version_id"], ["lc_rule_versions.id"], name="fk_lc_canary_rule_version"),
    )
    op.create_index(
        "ix_lc_canary_results_rule_version_id", "lc_canary_results", ["rule_version_id"], unique=False
    )

    op.create_table(
        "lc_corrections",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("tx_id", sa.String(), nullable=False),
        sa.Column("old_category_id", sa.String(), nullable=True),
        sa.Column("new_category_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_lc_corrections_tx_id", "lc_corrections", ["tx_id"], unique=False)

    op.create_table(
        "lc_audit_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("details", _JSON, nullable=False),
        _created_at(),
    )
    op.create_index("ix_lc_audit_log_org_id", "lc_audit_log", ["org_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_lc_audit_log_org_id", table_name="lc_audit_log")
    op.drop_table("lc_audit_log")
    op.drop_index("ix_lc_corrections_tx_id", table_name="lc_corrections")
    op.drop_table("lc_corrections")
    op.drop_index("ix_lc_canary_results_rule_version_id", table_name="lc_canary_results")
    op.drop_table("lc_canary_results")
    op.drop_table("lc_rule_versions")
    op.drop_index("ix_lc_transactions_org_date", table_name="lc_transactions")
    op.drop_index("ix_lc_transactions_org_id", table_name="lc_transactions")
    op.drop_table("lc_transactions")
