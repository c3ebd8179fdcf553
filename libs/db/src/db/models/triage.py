from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
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
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    literal_column,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import expression as sa_expr


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: et_taxonomy_nodes
# ---------------------------


class EtTaxonomyNode(Base):
    __tablename__ = "et_taxonomy_nodes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Sibling names are unique case-insensitively via the functional index
    # declared below the class (coalesce(parent_id,'__root__'), lower(name)).
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # NULL only for the synthetic root.
    parent_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("et_taxonomy_nodes.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "parent_id IS NULL OR parent_id <> id",
            name="ck_et_taxonomy_not_self_parent",
        ),
    )


Index(
    "uniq_et_taxonomy_sibling_name",
    func.coalesce(EtTaxonomyNode.parent_id, literal_column("'__root__'")),
    func.lower(EtTaxonomyNode.name),
    unique=True,
)


# ---------------------------
# Core: et_transactions
# ---------------------------


class EtTransaction(Base):
    __tablename__ = "et_transactions"

    # Content-addressed SHA-256 hex id; re-ingestion upserts in place.
    id: Mapped[str] = mapped_column(CHAR(64), primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    merchant: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    raw_fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    # One-level split linkage; children are never split again.
    parent_id: Mapped[str | None] = mapped_column(
        CHAR(64), ForeignKey("et_transactions.id"), nullable=True, index=True
    )
    is_child: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_expr.false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# et_resolutions (one per non-split transaction)
# ---------------------------


class EtResolution(Base):
    __tablename__ = "et_resolutions"

    transaction_id: Mapped[str] = mapped_column(
        CHAR(64), ForeignKey("et_transactions.id"), primary_key=True
    )
    taxonomy_node_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("et_taxonomy_nodes.id"), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    source: Mapped[str] = mapped_column(String, nullable=False)
    # Free-form human note passed back to the classifier on re-classification.
    annotation: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "source in ('auto','manual','retryAuto')",
            name="ck_et_resolution_source",
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_et_resolution_confidence",
        ),
    )


# ---------------------------
# et_review_items (one per transaction at a time)
# ---------------------------


class EtReviewItem(Base):
    __tablename__ = "et_review_items"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        CHAR(64), ForeignKey("et_transactions.id"), nullable=False, unique=True
    )
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    suggestion: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'pending'"))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    retrying_since: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_as: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            (
                "reason in ('lowConfidence','ambiguousCounterparty','newTaxonomySuggestion',"
                "'duplicateTaxonomySuggested','shouldSplit','classifierFailure')"
            ),
            name="ck_et_review_reason",
        ),
        CheckConstraint("status in ('pending','resolved')", name="ck_et_review_status"),
        CheckConstraint(
            "resolved_as IS NULL OR resolved_as in ('categorized','split')",
            name="ck_et_review_resolved_as",
        ),
    )


# ---------------------------
# et_batch_runs
# ---------------------------


class EtBatchRun(Base):
    __tablename__ = "et_batch_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    categorized_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    review_queue_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'processing'")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    # Set on processing -> categorizationDone.
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set on categorizationDone -> completed.
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status in ('processing','categorizationDone','completed','failed')",
            name="ck_et_batch_status",
        ),
    )


# ---------------------------
# et_outcome_log (durable fold source for batch counters)
# ---------------------------


class EtOutcomeLog(Base):
    __tablename__ = "et_outcome_log"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_id: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("batch_id", "transaction_id", name="uniq_et_outcome_batch_tx"),
        CheckConstraint(
            "kind in ('categorized','queued','failed')",
            name="ck_et_outcome_kind",
        ),
    )


__all__ = [
    "Base",
    "EtBatchRun",
    "EtOutcomeLog",
    "EtResolution",
    "EtReviewItem",
    "EtTaxonomyNode",
    "EtTransaction",
]
