# ruff: noqa: I001
"""Expense triage core tables.

Revision ID: 0001_et_core
Revises: None
Create Date: 2026-10-18
"""

from __future__ import annotations  # ruff: noqa: I001

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_et_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, *, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # et_taxonomy_nodes
    op.create_table(
        "et_taxonomy_nodes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "parent_id",
            sa.String(64),
            sa.ForeignKey("et_taxonomy_nodes.id"),
            nullable=True,
        ),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "parent_id IS NULL OR parent_id <> id",
            name="ck_et_taxonomy_not_self_parent",
        ),
    )
    # Case-insensitive sibling uniqueness; the root scope is keyed by a sentinel.
    op.execute(
        "CREATE UNIQUE INDEX uniq_et_taxonomy_sibling_name "
        "ON et_taxonomy_nodes (coalesce(parent_id, '__root__'), lower(name))"
    )

    # et_transactions
    op.create_table(
        "et_transactions",
        sa.Column("id", sa.CHAR(64), primary_key=True),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("merchant", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("raw_fields", sa.JSON(), nullable=False),
        sa.Column("parent_id", sa.CHAR(64), sa.ForeignKey("et_transactions.id"), nullable=True),
        sa.Column("is_child", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_et_transactions_batch_id", "et_transactions", ["batch_id"])
    op.create_index("ix_et_transactions_parent_id", "et_transactions", ["parent_id"])

    # et_resolutions
    op.create_table(
        "et_resolutions",
        sa.Column(
            "transaction_id",
            sa.CHAR(64),
            sa.ForeignKey("et_transactions.id"),
            primary_key=True,
        ),
        sa.Column(
            "taxonomy_node_id",
            sa.String(64),
            sa.ForeignKey("et_taxonomy_nodes.id"),
            nullable=False,
        ),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("annotation", sa.Text(), nullable=True),
        _timestamp("resolved_at"),
        sa.CheckConstraint(
            "source in ('auto','manual','retryAuto')", name="ck_et_resolution_source"
        ),
        sa.CheckConstraint(
            "confidence >= 0 AND confidence <= 1", name="ck_et_resolution_confidence"
        ),
    )

    # et_review_items
    op.create_table(
        "et_review_items",
        sa.Column("id", sa.String(80), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.CHAR(64),
            sa.ForeignKey("et_transactions.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("suggestion", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("retrying_since", nullable=True),
        sa.Column("resolved_as", sa.String(), nullable=True),
        _timestamp("created_at"),
        _timestamp("resolved_at", nullable=True),
        sa.CheckConstraint(
            (
                "reason in ('lowConfidence','ambiguousCounterparty','newTaxonomySuggestion',"
                "'duplicateTaxonomySuggested','shouldSplit','classifierFailure')"
            ),
            name="ck_et_review_reason",
        ),
        sa.CheckConstraint("status in ('pending','resolved')", name="ck_et_review_status"),
        sa.CheckConstraint(
            "resolved_as IS NULL OR resolved_as in ('categorized','split')",
            name="ck_et_review_resolved_as",
        ),
    )
    op.create_index("ix_et_review_items_batch_id", "et_review_items", ["batch_id"])

    # et_batch_runs
    op.create_table(
        "et_batch_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("categorized_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("review_queue_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'processing'")),
        _timestamp("started_at"),
        _timestamp("completed_at", nullable=True),
        _timestamp("finalized_at", nullable=True),
        sa.CheckConstraint(
            "status in ('processing','categorizationDone','completed','failed')",
            name="ck_et_batch_status",
        ),
    )

    # et_outcome_log
    op.create_table(
        "et_outcome_log",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("transaction_id", sa.CHAR(64), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        _timestamp("recorded_at"),
        sa.UniqueConstraint("batch_id", "transaction_id", name="uniq_et_outcome_batch_tx"),
        sa.CheckConstraint(
            "kind in ('categorized','queued','failed')", name="ck_et_outcome_kind"
        ),
    )


def downgrade() -> None:
    op.drop_table("et_outcome_log")
    op.drop_table("et_batch_runs")
    op.drop_index("ix_et_review_items_batch_id", table_name="et_review_items")
    op.drop_table("et_review_items")
    op.drop_table("et_resolutions")
    op.drop_index("ix_et_transactions_parent_id", table_name="et_transactions")
    op.drop_index("ix_et_transactions_batch_id", table_name="et_transactions")
    op.drop_table("et_transactions")
    op.execute("DROP INDEX IF EXISTS uniq_et_taxonomy_sibling_name")
    op.drop_table("et_taxonomy_nodes")
