"""Durable review queue storage.

One review item exists per transaction at a time (``id = "review_" + txid``).
Enqueueing an already-queued transaction re-opens and overwrites the item, so
redelivered classification work stays idempotent. Status changes use
compare-and-swap updates on ``status = 'pending'`` so concurrent resolvers
cannot both win.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

from db.models.triage import EtReviewItem
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import ReviewItemNotFoundError
from .models import ReviewItem, ReviewReason, Suggestion
from .persistence import dialect_insert

_REVIEW_ID_PREFIX = "review_"


def review_item_id(transaction_id: str) -> str:
    return f"{_REVIEW_ID_PREFIX}{transaction_id}"


def _to_item(row: EtReviewItem) -> ReviewItem:
    return ReviewItem(
        id=row.id,
        transaction_id=row.transaction_id,
        batch_id=row.batch_id,
        reason=row.reason,  # type: ignore[arg-type]
        suggestion=Suggestion.model_validate(row.suggestion) if row.suggestion else None,
        status=row.status,  # type: ignore[arg-type]
        retry_count=row.retry_count,
        retrying_since=row.retrying_since,
        resolved_as=row.resolved_as,
    )


def enqueue_review(
    session: Session,
    *,
    transaction_id: str,
    batch_id: str,
    reason: ReviewReason,
    suggestion: Suggestion | None = None,
) -> str:
    """Create or re-open the review item for ``transaction_id`` and return its id."""

    item_id = review_item_id(transaction_id)
    payload = suggestion.to_wire() if suggestion is not None else None
    stmt = dialect_insert(session, EtReviewItem).values(
        id=item_id,
        transaction_id=transaction_id,
        batch_id=batch_id,
        reason=reason,
        suggestion=payload,
        status="pending",
        retry_count=0,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[EtReviewItem.id],
        set_={
            "batch_id": stmt.excluded.batch_id,
            "reason": stmt.excluded.reason,
            "suggestion": stmt.excluded.suggestion,
            "status": "pending",
            "retry_count": 0,
            "retrying_since": None,
            "resolved_as": None,
            "resolved_at": None,
        },
    )
    session.execute(stmt)
    return item_id


def get_review_item(session: Session, item_id: str) -> ReviewItem | None:
    row = session.execute(
        select(EtReviewItem)
        .where(EtReviewItem.id == item_id)
        .execution_options(populate_existing=True)
    ).scalar()
    return _to_item(row) if row is not None else None


def require_review_item(session: Session, item_id: str) -> ReviewItem:
    item = get_review_item(session, item_id)
    if item is None:
        raise ReviewItemNotFoundError(f"Review item not found: {item_id!r}")
    return item


def list_pending(
    session: Session,
    *,
    reasons: Sequence[str] | None = None,
    batch_id: str | None = None,
) -> list[ReviewItem]:
    stmt = select(EtReviewItem).where(EtReviewItem.status == "pending")
    if reasons:
        stmt = stmt.where(EtReviewItem.reason.in_(list(reasons)))
    if batch_id is not None:
        stmt = stmt.where(EtReviewItem.batch_id == batch_id)
    rows = session.execute(stmt.order_by(EtReviewItem.created_at, EtReviewItem.id)).scalars()
    return [_to_item(r) for r in rows]


def count_pending(session: Session, *, batch_id: str) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(EtReviewItem)
            .where(EtReviewItem.batch_id == batch_id, EtReviewItem.status == "pending")
        ).scalar_one()
    )


def mark_retrying(session: Session, item_id: str) -> bool:
    """Stamp ``retrying_since`` on a pending item; ``False`` when it is no longer pending."""

    res = session.execute(
        update(EtReviewItem)
        .where(EtReviewItem.id == item_id, EtReviewItem.status == "pending")
        .values(retrying_since=datetime.now(UTC))
    )
    return bool(res.rowcount)


def clear_retrying(session: Session, item_id: str) -> None:
    session.execute(
        update(EtReviewItem).where(EtReviewItem.id == item_id).values(retrying_since=None)
    )


def update_suggestion(session: Session, item_id: str, suggestion: Suggestion) -> bool:
    """Replace the suggestion of a pending item and bump ``retry_count``."""

    res = session.execute(
        update(EtReviewItem)
        .where(EtReviewItem.id == item_id, EtReviewItem.status == "pending")
        .values(
            suggestion=suggestion.to_wire(),
            retry_count=EtReviewItem.retry_count + 1,
            retrying_since=None,
        )
    )
    return bool(res.rowcount)


def resolve_review_item(session: Session, item_id: str, *, resolved_as: str) -> bool:
    """Flip a pending item to ``resolved``. Returns ``False`` if it was not pending."""

    res = session.execute(
        update(EtReviewItem)
        .where(EtReviewItem.id == item_id, EtReviewItem.status == "pending")
        .values(
            status="resolved",
            resolved_as=resolved_as,
            resolved_at=datetime.now(UTC),
            retrying_since=None,
        )
    )
    return bool(res.rowcount)


__all__ = [
    "clear_retrying",
    "count_pending",
    "enqueue_review",
    "get_review_item",
    "list_pending",
    "mark_retrying",
    "require_review_item",
    "resolve_review_item",
    "review_item_id",
    "update_suggestion",
]
