from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest
from typer.testing import CliRunner

import expense_triage.api as api_mod
from expense_triage.cli import app
from expense_triage.config import TriageSettings
from expense_triage.errors import BatchNotFoundError
from expense_triage.models import ChildSpec, SplitRequest, Transaction
from expense_triage.reports import bucket_of

from tests.helpers.classifier_stub import ScriptedClassifier, categorize, make_service, needs_review
from tests.helpers.db import add_batch, record

ANSWERS = {
    "Latte": categorize("5", 0.95),
    "Cappuccino": categorize("5", 0.9),
    "Matcha": categorize("5", 0.9),
    "Gym": categorize("5", 0.55),
    "Rent": categorize("1", 0.75),
}


def _service(db_url: str):
    def decide(tx: Transaction):
        return ANSWERS.get(tx.description) or needs_review("no idea")

    return make_service(
        db_url,
        ScriptedClassifier(decide),
        settings=TriageSettings(
            throttle_limit=0, retry_throttle_limit=0, confidence_threshold=0.5
        ),
    )


@pytest.mark.parametrize(
    ("confidence", "bucket"),
    [(1.0, "high"), (0.8, "high"), (0.79, "medium"), (0.6, "medium"), (0.59, "low")],
)
def test_confidence_buckets(confidence: float, bucket: str) -> None:
    assert bucket_of(confidence) == bucket


def test_batch_stats(db_url: str) -> None:
    service = _service(db_url)
    started = service.start_batch(
        [
            record("Latte", "4.50"),
            record("Gym", "40.00"),
            record("Rent", "1800.00", label="Landlord"),
            record("Wire 8812", "300.00", label="ACME"),
        ]
    )

    stats = service.batch_stats(started.batch_id)

    assert (stats.total_items, stats.categorized_count) == (4, 3)
    assert (stats.review_queue_count, stats.uncategorized_count) == (1, 0)
    assert stats.average_confidence == pytest.approx((0.95 + 0.55 + 0.75) / 3)
    buckets = stats.confidence_distribution
    assert (buckets.high, buckets.medium, buckets.low) == (1, 1, 1)
    top, second = stats.category_distribution
    assert (top.node_id, top.node_name) == ("5", "Discretionary")
    assert top.node_path == "Root > Discretionary"
    assert (top.count, top.percentage) == (2, 50.0)
    assert (second.node_id, second.count, second.percentage) == ("1", 1, 25.0)
    wire = stats.to_wire()
    assert wire["confidenceDistribution"] == {"high": 1, "medium": 1, "low": 1}
    assert wire["categoryDistribution"][0]["nodePath"] == "Root > Discretionary"


def test_uncategorized_transactions_newest_first(db_url: str) -> None:
    older, newer = add_batch(
        db_url,
        "b-idle",
        [
            record("Hardware", "12.00", date="2025-02-01"),
            record("Paint", "30.00", date="2025-02-03"),
        ],
    )
    service = _service(db_url)

    rows = service.uncategorized_transactions("b-idle")

    assert [r.transaction_id for r in rows] == [newer, older]
    assert rows[0].to_wire()["date"] == "2025-02-03"
    stats = service.batch_stats("b-idle")
    assert (stats.total_items, stats.uncategorized_count, stats.average_confidence) == (2, 2, 0.0)
    assert stats.category_distribution == []


def test_queued_transactions_are_uncategorized(db_url: str) -> None:
    service = _service(db_url)
    started = service.start_batch([record("Latte", "4.50"), record("Wire 8812", "9.00")])
    _latte, wire = started.transaction_ids

    assert [r.transaction_id for r in service.uncategorized_transactions(started.batch_id)] == [
        wire
    ]


def test_split_parent_is_left_out_of_reports(db_url: str) -> None:
    (parent,) = add_batch(db_url, "b-split", [record("Costco run", "60.00")])
    service = _service(db_url)
    service.split_transaction(
        SplitRequest(
            parent_id=parent,
            children=[
                ChildSpec(description="Latte", amount=Decimal("10.00")),
                ChildSpec(description="Rent", amount=Decimal("50.00")),
            ],
        )
    )

    stats = service.batch_stats("b-split")

    assert (stats.total_items, stats.categorized_count, stats.uncategorized_count) == (2, 2, 0)
    assert service.uncategorized_transactions("b-split") == []


def test_compare_batches(db_url: str) -> None:
    service = _service(db_url)
    first = service.start_batch([record("Latte", "4.50"), record("Rent", "1800.00")])
    second = service.start_batch(
        [record("Cappuccino", "5.00"), record("Matcha", "5.50"), record("Gym", "40.00")]
    )

    cmp = service.compare_batches(first.batch_id, second.batch_id)

    assert (cmp.total_items_diff, cmp.categorized_count_diff) == (1, 1)
    assert cmp.average_confidence_diff == pytest.approx((0.9 + 0.9 + 0.55) / 3 - 0.85)
    assert [(c.node_id, c.first_count, c.second_count, c.diff) for c in cmp.category_changes] == [
        ("5", 1, 3, 2),
        ("1", 1, 0, -1),
    ]
    assert cmp.category_changes[1].node_path == "Root > Fixed Costs"


def test_list_batches_and_status_filter(db_url: str) -> None:
    service = _service(db_url)
    done = service.start_batch([record("Latte", "4.50")])
    add_batch(db_url, "b-idle", [record("Paint", "30.00")])

    summaries = service.list_batches()
    assert {s.batch_id for s in summaries} == {done.batch_id, "b-idle"}
    assert [s.batch_id for s in service.list_batches(status="completed")] == [done.batch_id]
    (idle,) = service.list_batches(status="processing")
    assert (idle.batch_id, idle.total_items, idle.categorized_count) == ("b-idle", 1, 0)
    assert idle.to_wire()["startedAt"]


def test_unknown_batch_is_rejected(db_url: str) -> None:
    service = _service(db_url)
    with pytest.raises(BatchNotFoundError):
        service.batch_stats("nope")
    with pytest.raises(BatchNotFoundError):
        service.uncategorized_transactions("nope")
    with pytest.raises(BatchNotFoundError):
        service.compare_batches("nope", "nope")


# ---- CLI ---------------------------------------------------------------------------


def test_cli_reports(db_url: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service = _service(db_url)
    monkeypatch.setattr(api_mod, "build_service", lambda **_kw: service)
    monkeypatch.chdir(tmp_path)
    first = service.start_batch([record("Latte", "4.50"), record("Wire 8812", "9.00")])
    second = service.start_batch([record("Rent", "1800.00")])
    runner = CliRunner()

    out = runner.invoke(app, ["batches", "--status", "completed"])
    assert out.exit_code == 0, out.output
    assert [row["batchId"] for row in json.loads(out.stdout)] == [second.batch_id]

    out = runner.invoke(app, ["batch-stats", first.batch_id])
    assert out.exit_code == 0, out.output
    body = json.loads(out.stdout)
    assert (body["categorizedCount"], body["reviewQueueCount"]) == (1, 1)

    out = runner.invoke(app, ["uncategorized", first.batch_id])
    assert [row["description"] for row in json.loads(out.stdout)] == ["Wire 8812"]

    out = runner.invoke(app, ["compare-batches", first.batch_id, second.batch_id])
    assert out.exit_code == 0, out.output
    assert json.loads(out.stdout)["totalItemsDiff"] == -1

    out = runner.invoke(app, ["batch-stats", "nope"])
    assert out.exit_code == 1
    assert "Batch not found" in out.stderr
