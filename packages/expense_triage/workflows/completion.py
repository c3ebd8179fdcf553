"""Batch completion aggregator.

Outcome signals may arrive batched, out of order and more than once. Each is
appended to ``et_outcome_log`` (unique per ``(batch, transaction)``); only a
first-seen entry increments the matching batch counter, using an atomic
``SET x = x + 1`` update. Counters therefore never decrement and never double
count.

Status transitions are compare-and-swap updates, so re-evaluating the same
state any number of times transitions at most once:

- ``processing -> categorizationDone`` when
  ``categorized + reviewQueue + failed >= totalItems``;
- ``categorizationDone -> completed`` when, additionally, no review item of
  the batch is pending.

Each transition dispatches ``batch/categorization.done`` or
``batch/completed`` exactly once.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from db.client import session_scope
from db.models.triage import EtBatchRun, EtOutcomeLog, EtReviewItem
from sqlalchemy import and_, exists, update
from sqlalchemy.orm import Session

from ..errors import BatchNotFoundError
from ..logging_setup import get_logger
from ..models import BatchStatusReadout
from ..persistence import dialect_insert, get_batch_run
from .signals import (
    BATCH_CATEGORIZATION_DONE,
    BATCH_COMPLETED,
    BatchTransition,
    OutcomeSignal,
    ReviewResolved,
    Signal,
)
from .substrate import StepContext, Substrate

_COUNTER_BY_KIND = {
    "categorized": EtBatchRun.categorized_count,
    "queued": EtBatchRun.review_queue_count,
    "failed": EtBatchRun.failed_count,
}

_logger = get_logger("expense_triage.workflows.completion")


def record_outcomes(session: Session, outcomes: Iterable[OutcomeSignal]) -> set[str]:
    """Fold outcome signals into batch counters; return the batch ids touched."""

    touched: set[str] = set()
    for o in outcomes:
        stmt = (
            dialect_insert(session, EtOutcomeLog)
            .values(
                batch_id=o.batch_id,
                transaction_id=o.transaction_id,
                kind=o.kind,
                reason=o.reason,
            )
            .on_conflict_do_nothing(
                index_elements=[EtOutcomeLog.batch_id, EtOutcomeLog.transaction_id]
            )
        )
        if not session.execute(stmt).rowcount:
            _logger.debug(
                "record_outcomes:duplicate batch_id=%s transaction_id=%s",
                o.batch_id,
                o.transaction_id,
            )
            continue
        counter = _COUNTER_BY_KIND[o.kind]
        res = session.execute(
            update(EtBatchRun)
            .where(EtBatchRun.id == o.batch_id)
            .values({counter.key: counter + 1})
        )
        if not res.rowcount:
            _logger.warning("record_outcomes:unknown_batch batch_id=%s", o.batch_id)
            continue
        touched.add(o.batch_id)
    return touched


def evaluate_batch(session: Session, batch_id: str) -> list[str]:
    """Apply any due status transitions for ``batch_id``; return the transitions made."""

    now = datetime.now(UTC)
    settled = (
        EtBatchRun.categorized_count + EtBatchRun.review_queue_count + EtBatchRun.failed_count
        >= EtBatchRun.total_items
    )
    transitions: list[str] = []

    res = session.execute(
        update(EtBatchRun)
        .where(EtBatchRun.id == batch_id, EtBatchRun.status == "processing", settled)
        .values(status="categorizationDone", completed_at=now)
    )
    if res.rowcount:
        transitions.append("categorizationDone")

    pending = exists().where(
        and_(EtReviewItem.batch_id == batch_id, EtReviewItem.status == "pending")
    )
    res = session.execute(
        update(EtBatchRun)
        .where(
            EtBatchRun.id == batch_id,
            EtBatchRun.status == "categorizationDone",
            settled,
            ~pending,
        )
        .values(status="completed", finalized_at=now)
    )
    if res.rowcount:
        transitions.append("completed")
    return transitions


def transition_signals(batch_id: str, transitions: Iterable[str]) -> list[Signal]:
    names = {"categorizationDone": BATCH_CATEGORIZATION_DONE, "completed": BATCH_COMPLETED}
    return [
        BatchTransition(batch_id=batch_id, status=t).to_signal(names[t]) for t in transitions
    ]


def evaluate_and_collect(database_url: str, batch_ids: Iterable[str]) -> list[Signal]:
    """Evaluate each batch in its own transaction; return the signals to dispatch."""

    out: list[Signal] = []
    for batch_id in sorted(set(batch_ids)):
        with session_scope(database_url=database_url) as s:
            transitions = evaluate_batch(s, batch_id)
        if transitions:
            _logger.info(
                "evaluate_batch:transition batch_id=%s transitions=%s",
                batch_id,
                ",".join(transitions),
            )
        out.extend(transition_signals(batch_id, transitions))
    return out


def batch_status(session: Session, batch_id: str) -> BatchStatusReadout:
    batch = get_batch_run(session, batch_id)
    if batch is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id!r}")
    return batch.readout()


def abandon_batch(session: Session, batch_id: str) -> bool:
    """Mark a batch ``failed`` so queued categorize work for it is skipped.

    Work already running is not revoked. Returns ``False`` when the batch had
    already completed or failed.
    """

    if get_batch_run(session, batch_id) is None:
        raise BatchNotFoundError(f"Batch not found: {batch_id!r}")
    res = session.execute(
        update(EtBatchRun)
        .where(
            EtBatchRun.id == batch_id,
            EtBatchRun.status.in_(["processing", "categorizationDone"]),
        )
        .values(status="failed")
    )
    return bool(res.rowcount)


def await_batch_categorization(
    substrate: Substrate, batch_id: str, *, timeout: float
) -> BatchTransition | None:
    """Suspend until ``batch_id`` reaches ``categorizationDone`` (``None`` on timeout)."""

    signal = substrate.wait_for_signal(
        BATCH_CATEGORIZATION_DONE, match={"batchId": batch_id}, timeout=timeout
    )
    return BatchTransition.model_validate(signal.data) if signal is not None else None


# ---- Durable handlers ----------------------------------------------------------


def track_outcomes(ctx: StepContext, *, database_url: str) -> int:
    """Batched handler for ``transactions/outcome``."""

    outcomes = [OutcomeSignal.model_validate(s.data) for s in ctx.signals]

    def _fold() -> list[str]:
        with session_scope(database_url=database_url) as s:
            return sorted(record_outcomes(s, outcomes))

    touched = ctx.run("record-outcomes", _fold)
    signals = ctx.run("evaluate-batches", lambda: evaluate_and_collect(database_url, touched))
    if signals:
        ctx.send("emit-transitions", signals)
    _logger.debug(
        "track_outcomes:done received=%d batches=%d transitions=%d",
        len(outcomes),
        len(touched),
        len(signals),
    )
    return len(outcomes)


def track_review_resolution(ctx: StepContext, *, database_url: str) -> None:
    """Re-evaluate batches whose review queue just shrank (``review/item.resolved``)."""

    batch_ids = sorted({ReviewResolved.model_validate(s.data).batch_id for s in ctx.signals})
    signals = ctx.run("evaluate-batches", lambda: evaluate_and_collect(database_url, batch_ids))
    if signals:
        ctx.send("emit-transitions", signals)


__all__ = [
    "abandon_batch",
    "await_batch_categorization",
    "batch_status",
    "evaluate_and_collect",
    "evaluate_batch",
    "record_outcomes",
    "track_outcomes",
    "track_review_resolution",
    "transition_signals",
]
