# ruff: noqa: I001
"""Persistence integration for expense_triage.

Functions here read and write transactions, resolutions and batch runs in the
shared database owned by ``libs/db``. They rely on SQLAlchemy ORM models from
``db.models.triage`` and a session provided by ``db.client``; callers own the
transaction scope.

Scope:
- Upsert transactions keyed by their derived id (re-ingestion is idempotent).
- Insert split children.
- Upsert resolutions keyed by transaction id; annotate them.
- Create and read batch runs.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db.models.triage import EtBatchRun, EtResolution, EtTaxonomyNode, EtTransaction
from .errors import (
    TaxonomyNodeNotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from .identity import derive_transaction_id, normalize_amount, normalize_date, normalize_text
from .models import BatchRun, Resolution, ResolutionSource, Transaction

# Record keys accepted for the counterparty label, in precedence order.
_LABEL_KEYS: tuple[str, ...] = ("counterpartyLabel", "counterparty_label", "merchant")


def dialect_insert(session: Session, model: Any):
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect."""

    name = session.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert(model)
    if name == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"ON CONFLICT upserts are not supported for dialect {name!r}")


def _label_of(record: Mapping[str, Any]) -> str:
    for key in _LABEL_KEYS:
        value = normalize_text(record.get(key))
        if value:
            return value
    return ""


def transaction_from_record(record: Mapping[str, Any], *, batch_id: str) -> Transaction:
    """Normalize one raw ingestion record into a ``Transaction`` with its derived id.

    Raises ``ValidationError`` when ``date`` or ``amount`` cannot be parsed.
    """

    try:
        tx_date = normalize_date(record.get("date"))
        amount = normalize_amount(record.get("amount"))
    except ValueError as e:
        raise ValidationError(str(e)) from e
    description = normalize_text(record.get("description"))
    label = _label_of(record)
    return Transaction(
        id=derive_transaction_id(tx_date, description, amount, label),
        batch_id=batch_id,
        date=tx_date,
        amount=amount,
        merchant=label,
        description=description,
        raw_fields=dict(record),
    )


def _to_transaction(row: EtTransaction) -> Transaction:
    return Transaction(
        id=row.id,
        batch_id=row.batch_id,
        date=row.date,
        amount=normalize_amount(row.amount),
        merchant=row.merchant or "",
        description=row.description or "",
        raw_fields=dict(row.raw_fields or {}),
        parent_id=row.parent_id,
        is_child=bool(row.is_child),
    )


def _json_safe(raw: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in raw.items():
        out[str(k)] = v if isinstance(v, (str, int, float, bool, type(None))) else str(v)
    return out


def upsert_transactions(session: Session, transactions: Iterable[Transaction]) -> int:
    """Insert or update transactions keyed by ``id``.

    Identity fields are immutable for a given id, so a conflict only moves the
    row to the newest batch and refreshes ``raw_fields``. Duplicates within
    ``transactions`` collapse to the last occurrence. Returns the number of
    distinct ids written.
    """

    by_id: dict[str, Transaction] = {}
    for tx in transactions:
        by_id[tx.id] = tx
    if not by_id:
        return 0

    now = func.now()
    payloads = [
        {
            "id": tx.id,
            "batch_id": tx.batch_id,
            "date": tx.date,
            "amount": tx.amount,
            "merchant": tx.merchant,
            "description": tx.description,
            "raw_fields": _json_safe(tx.raw_fields),
            "parent_id": tx.parent_id,
            "is_child": tx.is_child,
            "updated_at": now,
        }
        for tx in by_id.values()
    ]
    stmt = dialect_insert(session, EtTransaction).values(payloads)
    stmt = stmt.on_conflict_do_update(
        index_elements=[EtTransaction.id],
        set_={
            "batch_id": stmt.excluded.batch_id,
            "raw_fields": stmt.excluded.raw_fields,
            "updated_at": now,
        },
    )
    session.execute(stmt)
    return len(payloads)


def insert_child_transactions(session: Session, children: Sequence[Transaction]) -> int:
    """Insert split children, ignoring ids that already exist. Returns rows inserted."""

    inserted = 0
    for child in children:
        stmt = (
            dialect_insert(session, EtTransaction)
            .values(
                id=child.id,
                batch_id=child.batch_id,
                date=child.date,
                amount=child.amount,
                merchant=child.merchant,
                description=child.description,
                raw_fields=_json_safe(child.raw_fields),
                parent_id=child.parent_id,
                is_child=True,
            )
            .on_conflict_do_nothing(index_elements=[EtTransaction.id])
        )
        inserted += session.execute(stmt).rowcount or 0
    return inserted


def get_transaction(session: Session, transaction_id: str) -> Transaction | None:
    row = session.get(EtTransaction, transaction_id)
    return _to_transaction(row) if row is not None else None


def require_transaction(session: Session, transaction_id: str) -> Transaction:
    tx = get_transaction(session, transaction_id)
    if tx is None:
        raise TransactionNotFoundError(f"Transaction not found: {transaction_id!r}")
    return tx


def is_split_parent(session: Session, transaction_id: str) -> bool:
    """True once ``transaction_id`` has child rows; a split parent is settled for good."""

    row = session.execute(
        select(EtTransaction.id).where(EtTransaction.parent_id == transaction_id).limit(1)
    ).first()
    return row is not None


def list_children(session: Session, parent_id: str) -> list[Transaction]:
    rows = session.execute(
        select(EtTransaction)
        .where(EtTransaction.parent_id == parent_id)
        .order_by(EtTransaction.created_at, EtTransaction.id)
    ).scalars()
    return [_to_transaction(r) for r in rows]


# ---------------------------
# Resolutions
# ---------------------------


def _to_resolution(row: EtResolution) -> Resolution:
    return Resolution(
        transaction_id=row.transaction_id,
        taxonomy_node_id=row.taxonomy_node_id,
        confidence=float(row.confidence),
        reasoning=row.reasoning or "",
        source=row.source,  # type: ignore[arg-type]
        resolved_at=row.resolved_at,
        annotation=row.annotation,
    )


def get_resolution(session: Session, transaction_id: str) -> Resolution | None:
    row = session.get(EtResolution, transaction_id)
    return _to_resolution(row) if row is not None else None


def save_resolution(
    session: Session,
    *,
    transaction_id: str,
    node_id: str,
    confidence: float,
    reasoning: str,
    source: ResolutionSource,
) -> None:
    """Upsert the Resolution for ``transaction_id``.

    An existing annotation is preserved. Raises ``TaxonomyNodeNotFoundError``
    for an unknown node and ``ValidationError`` when the transaction was split.
    """

    if session.get(EtTaxonomyNode, node_id) is None:
        raise TaxonomyNodeNotFoundError(f"Taxonomy node not found: {node_id!r}")
    if is_split_parent(session, transaction_id):
        raise ValidationError(f"Transaction {transaction_id} was split and cannot be resolved")

    now = func.now()
    stmt = dialect_insert(session, EtResolution).values(
        transaction_id=transaction_id,
        taxonomy_node_id=node_id,
        confidence=max(0.0, min(1.0, float(confidence))),
        reasoning=reasoning or "",
        source=source,
        resolved_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[EtResolution.transaction_id],
        set_={
            "taxonomy_node_id": stmt.excluded.taxonomy_node_id,
            "confidence": stmt.excluded.confidence,
            "reasoning": stmt.excluded.reasoning,
            "source": stmt.excluded.source,
            "resolved_at": now,
        },
    )
    session.execute(stmt)


def annotate_resolution(session: Session, *, transaction_id: str, annotation: str | None) -> None:
    """Attach (or clear, with ``None``/blank) a human note on a categorized transaction."""

    text = (annotation or "").strip() or None
    res = session.execute(
        update(EtResolution)
        .where(EtResolution.transaction_id == transaction_id)
        .values(annotation=text)
    )
    if not res.rowcount:
        raise TransactionNotFoundError(
            f"Transaction {transaction_id!r} has no resolution to annotate"
        )


# ---------------------------
# Batch runs
# ---------------------------


def _to_batch(row: EtBatchRun) -> BatchRun:
    return BatchRun(
        id=row.id,
        total_items=row.total_items,
        categorized_count=row.categorized_count,
        review_queue_count=row.review_queue_count,
        failed_count=row.failed_count,
        status=row.status,  # type: ignore[arg-type]
        started_at=row.started_at,
        completed_at=row.completed_at,
        finalized_at=row.finalized_at,
    )


def create_batch_run(session: Session, *, batch_id: str, total_items: int) -> None:
    stmt = (
        dialect_insert(session, EtBatchRun)
        .values(id=batch_id, total_items=total_items, status="processing")
        .on_conflict_do_nothing(index_elements=[EtBatchRun.id])
    )
    if not session.execute(stmt).rowcount:
        raise ValidationError(f"Batch already exists: {batch_id!r}")


def get_batch_run(session: Session, batch_id: str) -> BatchRun | None:
    row = session.execute(
        select(EtBatchRun)
        .where(EtBatchRun.id == batch_id)
        .execution_options(populate_existing=True)
    ).scalar()
    return _to_batch(row) if row is not None else None


def list_batch_runs(session: Session, *, status: str | None = None) -> list[BatchRun]:
    """Return batch runs newest first, optionally only those in ``status``."""

    stmt = select(EtBatchRun).order_by(EtBatchRun.started_at.desc(), EtBatchRun.id)
    if status is not None:
        stmt = stmt.where(EtBatchRun.status == status)
    return [_to_batch(r) for r in session.execute(stmt).scalars()]


def add_batch_items(session: Session, *, batch_id: str, count: int) -> None:
    """Atomically raise ``total_items`` (split children join their parent's batch)."""

    session.execute(
        update(EtBatchRun)
        .where(EtBatchRun.id == batch_id)
        .values(total_items=EtBatchRun.total_items + count)
    )


__all__ = [
    "add_batch_items",
    "annotate_resolution",
    "create_batch_run",
    "dialect_insert",
    "get_batch_run",
    "get_resolution",
    "get_transaction",
    "insert_child_transactions",
    "is_split_parent",
    "list_batch_runs",
    "list_children",
    "require_transaction",
    "save_resolution",
    "transaction_from_record",
    "upsert_transactions",
]
