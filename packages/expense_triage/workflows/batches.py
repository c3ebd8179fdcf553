"""Batch ingestion: normalize records, persist them and fan out categorize requests."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from db.client import session_scope

from ..logging_setup import get_logger
from ..persistence import create_batch_run, transaction_from_record, upsert_transactions
from .completion import evaluate_and_collect
from .signals import CATEGORIZE_REQUESTED, CategorizeRequested, Signal

_logger = get_logger("expense_triage.workflows.batches")


@dataclass(frozen=True, slots=True)
class BatchStart:
    batch_id: str
    transaction_ids: tuple[str, ...]

    @property
    def total_items(self) -> int:
        return len(self.transaction_ids)


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


def start_batch(
    records: Iterable[Mapping[str, Any]],
    *,
    database_url: str,
    dispatch: Callable[[Signal], None],
    batch_id: str | None = None,
) -> BatchStart:
    """Ingest ``records`` as a new batch and request categorization of each item.

    Records are normalized and keyed by their derived identity, so duplicates
    within the input collapse to one transaction and re-ingesting a known
    transaction moves it into this batch. Every record is validated before
    anything is written. An empty batch transitions to ``categorizationDone``
    immediately.
    """

    bid = batch_id or new_batch_id()
    txs = [transaction_from_record(r, batch_id=bid) for r in records]
    ordered_ids = list(dict.fromkeys(tx.id for tx in txs))

    with session_scope(database_url=database_url) as s:
        create_batch_run(s, batch_id=bid, total_items=len(ordered_ids))
        upsert_transactions(s, txs)

    _logger.info(
        "start_batch:persisted batch_id=%s records=%d distinct=%d",
        bid,
        len(txs),
        len(ordered_ids),
    )
    for tx_id in ordered_ids:
        dispatch(
            CategorizeRequested(batch_id=bid, transaction_id=tx_id).to_signal(CATEGORIZE_REQUESTED)
        )
    for signal in evaluate_and_collect(database_url, [bid]):
        dispatch(signal)
    return BatchStart(batch_id=bid, transaction_ids=tuple(ordered_ids))


__all__ = ["BatchStart", "new_batch_id", "start_batch"]
