"""Read-only reports over batches: listings, stats and batch-to-batch comparison.

Batch membership
----------------
A transaction belongs to a batch when it was last ingested into it
(``et_transactions.batch_id``) or when the batch logged an outcome for it.
Re-ingested transactions therefore count in every batch that processed them.
Split parents are left out of every figure; their children carry the
categories.

Confidence buckets: ``high >= 0.8``, ``0.6 <= medium < 0.8``, ``low < 0.6``.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from db.models.triage import EtOutcomeLog, EtResolution, EtTransaction
from sqlalchemy import select, union
from sqlalchemy.orm import Session

from .errors import BatchNotFoundError
from .logging_setup import get_logger
from .models import (
    BatchComparison,
    BatchStats,
    BatchSummary,
    CategoryChange,
    CategoryCount,
    ConfidenceBuckets,
    TaxonomyNode,
    UncategorizedTransaction,
)
from .persistence import get_batch_run, list_batch_runs
from .review_queue import count_pending
from .taxonomy import load_taxonomy, node_path

HIGH_CONFIDENCE: float = 0.8
MEDIUM_CONFIDENCE: float = 0.6

_UNKNOWN_NODE = "Unknown"

_logger = get_logger("expense_triage.reports")


def _require_batch(session: Session, batch_id: str) -> None:
    if get_batch_run(session, batch_id) is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id!r}")


def _leaf_members(batch_id: str):
    """WHERE clauses selecting the non-parent transactions of ``batch_id``."""

    members = union(
        select(EtTransaction.id).where(EtTransaction.batch_id == batch_id),
        select(EtOutcomeLog.transaction_id).where(EtOutcomeLog.batch_id == batch_id),
    ).subquery()
    parents = select(EtTransaction.parent_id).where(EtTransaction.parent_id.is_not(None))
    return (
        EtTransaction.id.in_(select(members.c.id)),
        EtTransaction.id.not_in(parents),
    )


def bucket_of(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def _describe(nodes: Sequence[TaxonomyNode], node_id: str) -> tuple[str, str]:
    by_id = {n.id: n for n in nodes}
    node = by_id.get(node_id)
    if node is None:
        return _UNKNOWN_NODE, ""
    return node.name, node_path(nodes, node_id)


def list_batches(session: Session, *, status: str | None = None) -> list[BatchSummary]:
    return [b.summary() for b in list_batch_runs(session, status=status)]


def batch_stats(session: Session, batch_id: str) -> BatchStats:
    """Category distribution and confidence profile of one batch.

    ``categorizedCount`` counts member transactions that carry a Resolution,
    ``reviewQueueCount`` the batch's pending review items, and
    ``uncategorizedCount`` whatever is left (never negative). Percentages are
    relative to ``totalItems``.
    """

    _require_batch(session, batch_id)
    rows = session.execute(
        select(EtTransaction.id, EtResolution.taxonomy_node_id, EtResolution.confidence)
        .outerjoin(EtResolution, EtResolution.transaction_id == EtTransaction.id)
        .where(*_leaf_members(batch_id))
    ).all()

    total = len(rows)
    resolved = [(node_id, float(conf)) for _tx_id, node_id, conf in rows if node_id is not None]
    categorized = len(resolved)
    queued = count_pending(session, batch_id=batch_id)

    buckets = Counter(bucket_of(conf) for _node_id, conf in resolved)
    average = sum(conf for _node_id, conf in resolved) / categorized if categorized else 0.0

    nodes = load_taxonomy(session)
    distribution: list[CategoryCount] = []
    counts = Counter(node_id for node_id, _conf in resolved)
    for node_id, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
        name, path = _describe(nodes, node_id)
        distribution.append(
            CategoryCount(
                node_id=node_id,
                node_name=name,
                node_path=path,
                count=count,
                percentage=count / total * 100 if total else 0.0,
            )
        )

    _logger.debug(
        "batch_stats:done batch_id=%s total=%d categorized=%d queued=%d",
        batch_id,
        total,
        categorized,
        queued,
    )
    return BatchStats(
        batch_id=batch_id,
        total_items=total,
        categorized_count=categorized,
        review_queue_count=queued,
        uncategorized_count=max(0, total - categorized - queued),
        average_confidence=average,
        category_distribution=distribution,
        confidence_distribution=ConfidenceBuckets(**buckets),
    )


def uncategorized_transactions(
    session: Session, batch_id: str
) -> list[UncategorizedTransaction]:
    """Member transactions without a Resolution, newest first.

    Includes transactions that are waiting in the review queue.
    """

    _require_batch(session, batch_id)
    rows = session.execute(
        select(EtTransaction)
        .outerjoin(EtResolution, EtResolution.transaction_id == EtTransaction.id)
        .where(EtResolution.transaction_id.is_(None), *_leaf_members(batch_id))
        .order_by(EtTransaction.date.desc(), EtTransaction.id)
    ).scalars()
    return [
        UncategorizedTransaction(
            transaction_id=r.id,
            batch_id=r.batch_id,
            tx_date=r.date,
            amount=r.amount,
            merchant=r.merchant,
            description=r.description,
        )
        for r in rows
    ]


def compare_batches(session: Session, first_id: str, second_id: str) -> BatchComparison:
    """Differences are ``second - first``; category changes sort by the largest move."""

    first = batch_stats(session, first_id)
    second = batch_stats(session, second_id)
    before = {c.node_id: c for c in first.category_distribution}
    after = {c.node_id: c for c in second.category_distribution}

    changes: list[CategoryChange] = []
    for node_id in before.keys() | after.keys():
        known = after.get(node_id) or before[node_id]
        first_count = before[node_id].count if node_id in before else 0
        second_count = after[node_id].count if node_id in after else 0
        changes.append(
            CategoryChange(
                node_id=node_id,
                node_name=known.node_name,
                node_path=known.node_path,
                first_count=first_count,
                second_count=second_count,
                diff=second_count - first_count,
            )
        )
    changes.sort(key=lambda c: (-abs(c.diff), c.node_id))

    return BatchComparison(
        first=first,
        second=second,
        total_items_diff=second.total_items - first.total_items,
        categorized_count_diff=second.categorized_count - first.categorized_count,
        average_confidence_diff=second.average_confidence - first.average_confidence,
        category_changes=changes,
    )


__all__ = [
    "HIGH_CONFIDENCE",
    "MEDIUM_CONFIDENCE",
    "batch_stats",
    "bucket_of",
    "compare_batches",
    "list_batches",
    "uncategorized_transactions",
]
