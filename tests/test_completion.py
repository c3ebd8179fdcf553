from __future__ import annotations

import pytest
from db.client import session_scope

from expense_triage.errors import BatchNotFoundError
from expense_triage.review_queue import enqueue_review, resolve_review_item
from expense_triage.workflows.completion import batch_status, evaluate_batch, record_outcomes
from expense_triage.workflows.signals import (
    BATCH_CATEGORIZATION_DONE,
    BATCH_COMPLETED,
    OUTCOME_RECORDED,
    OutcomeSignal,
)
from expense_triage.workflows.substrate import FunctionSpec, StepContext

from tests.helpers.classifier_stub import ScriptedClassifier, categorize, make_service
from tests.helpers.db import add_batch, record


def _outcome(batch_id: str, tx_id: str, kind: str, reason: str | None = None) -> OutcomeSignal:
    return OutcomeSignal(batch_id=batch_id, transaction_id=tx_id, kind=kind, reason=reason)


def test_counters_fold_first_seen_outcomes_only(db_url: str) -> None:
    a, b, c = add_batch(
        db_url, "b1", [record("A", "1.00"), record("B", "2.00"), record("C", "3.00")]
    )
    with session_scope(database_url=db_url) as s:
        touched = record_outcomes(
            s,
            [
                _outcome("b1", a, "categorized"),
                _outcome("b1", a, "categorized"),
                _outcome("b1", b, "queued", "lowConfidence"),
            ],
        )
        # A later, different outcome for the same item never double counts.
        record_outcomes(s, [_outcome("b1", b, "categorized")])
        readout = batch_status(s, "b1")

    assert touched == {"b1"}
    assert (readout.categorized_count, readout.review_queue_count, readout.failed_count) == (
        1,
        1,
        0,
    )
    assert readout.status == "processing"


def test_transitions_happen_once_and_in_order(db_url: str) -> None:
    a, b = add_batch(db_url, "b2", [record("A", "1.00"), record("B", "2.00")])
    with session_scope(database_url=db_url) as s:
        enqueue_review(s, transaction_id=b, batch_id="b2", reason="lowConfidence")

    with session_scope(database_url=db_url) as s:
        record_outcomes(s, [_outcome("b2", a, "categorized")])
        assert evaluate_batch(s, "b2") == []
        record_outcomes(s, [_outcome("b2", b, "queued", "lowConfidence")])
        assert evaluate_batch(s, "b2") == ["categorizationDone"]
        assert evaluate_batch(s, "b2") == []
        assert batch_status(s, "b2").status == "categorizationDone"

    with session_scope(database_url=db_url) as s:
        assert resolve_review_item(s, f"review_{b}", resolved_as="categorized")
        assert evaluate_batch(s, "b2") == ["completed"]
        assert evaluate_batch(s, "b2") == []
        # Replaying every outcome after completion changes nothing.
        record_outcomes(
            s, [_outcome("b2", a, "categorized"), _outcome("b2", b, "queued", "lowConfidence")]
        )
        assert evaluate_batch(s, "b2") == []
        readout = batch_status(s, "b2")

    assert readout.status == "completed"
    assert readout.categorized_count + readout.review_queue_count == 2


def test_unknown_batch(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        assert record_outcomes(s, [_outcome("nope", "x" * 64, "failed")]) == set()
        with pytest.raises(BatchNotFoundError):
            batch_status(s, "nope")


def test_redelivered_signals_emit_one_transition(db_url: str) -> None:
    service = make_service(db_url, ScriptedClassifier(lambda tx: categorize("5", 0.9)))
    transitions: list[tuple[str, str]] = []

    def _listen(ctx: StepContext) -> None:
        transitions.append((ctx.event.name, ctx.event.data["batchId"]))

    for name in (BATCH_CATEGORIZATION_DONE, BATCH_COMPLETED):
        service.substrate.register(
            FunctionSpec(fn_id=f"listen:{name}", trigger=name, handler=_listen)
        )

    started = service.start_batch([record("Latte", "4.50"), record("Mocha", "5.00")])
    for tx_id in started.transaction_ids:
        service.substrate.dispatch(
            _outcome(started.batch_id, tx_id, "categorized").to_signal(OUTCOME_RECORDED)
        )

    assert transitions == [
        (BATCH_CATEGORIZATION_DONE, started.batch_id),
        (BATCH_COMPLETED, started.batch_id),
    ]
    assert service.batch_status(started.batch_id).categorized_count == 2


def test_empty_batch_finishes_immediately(db_url: str) -> None:
    service = make_service(db_url, ScriptedClassifier(lambda tx: categorize("5", 0.9)))
    started = service.start_batch([])

    assert service.await_batch_categorization(started.batch_id, timeout=0) is not None
    readout = service.batch_status(started.batch_id)
    assert readout.total_items == 0
    assert readout.status == "completed"
