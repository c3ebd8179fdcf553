from __future__ import annotations

import pytest
from db.client import session_scope

from expense_triage.exemplars import blended_score, find_exemplars, similarity
from expense_triage.persistence import save_resolution, transaction_from_record, upsert_transactions

from tests.helpers.db import add_resolved_transaction, record


@pytest.mark.parametrize(
    ("a", "b", "expected"),
    [
        ("Blue Bottle", "blue  bottle", 1.0),
        ("Blue Bottle", "Blue Bottle Coffee", 0.8),
        ("abc", "abd", pytest.approx(1 - 1 / 3)),
        ("abc", "xyz", 0.0),
        ("", "", 0.0),
        (None, "x", 0.0),
    ],
)
def test_similarity(a: str | None, b: str | None, expected: float) -> None:
    assert similarity(a, b) == expected


def test_blended_score_weights_description_more() -> None:
    merchant_only = blended_score("Shell", "fuel", "Shell", "car wash")
    description_only = blended_score("Shell", "fuel", "Exxon", "fuel")
    assert merchant_only == pytest.approx(0.3 + 0.7 * similarity("fuel", "car wash"))
    assert description_only == pytest.approx(0.3 * similarity("Shell", "Exxon") + 0.7)
    assert description_only > merchant_only


def test_find_exemplars_ranks_resolved_neighbors(db_url: str) -> None:
    exact = add_resolved_transaction(db_url, label="Blue Bottle", description="Latte", node_id="5")
    close = add_resolved_transaction(
        db_url, label="Blue Bottle Coffee", description="Latte large", node_id="5"
    )
    add_resolved_transaction(db_url, label="Con Edison", description="Electric bill", node_id="1")

    # Identical text but no Resolution: never an exemplar.
    unresolved = transaction_from_record(
        record("Latte", "3.00", label="Blue Bottle", date="2025-02-01"), batch_id="b"
    )
    with session_scope(database_url=db_url) as s:
        upsert_transactions(s, [unresolved])

    with session_scope(database_url=db_url) as s:
        found = find_exemplars(s, merchant="blue bottle", description="latte", limit=5)

    ids = [e.transaction_id for e in found]
    assert ids[:2] == [exact, close]
    assert unresolved.id not in ids
    assert found[0].score == pytest.approx(1.0)
    assert found[0].taxonomy_node_id == "5"
    assert all(found[i].score >= found[i + 1].score for i in range(len(found) - 1))


def test_find_exemplars_limit_and_exclusion(db_url: str) -> None:
    ids = [
        add_resolved_transaction(
            db_url, label="Blue Bottle", description=f"Latte {n}", node_id="5", amount=f"{n}.00"
        )
        for n in range(1, 8)
    ]
    with session_scope(database_url=db_url) as s:
        top = find_exemplars(s, merchant="Blue Bottle", description="Latte 1", limit=5)
        without = find_exemplars(
            s,
            merchant="Blue Bottle",
            description="Latte 1",
            limit=5,
            exclude_transaction_id=ids[0],
        )
    assert len(top) == 5
    assert top[0].transaction_id == ids[0]
    assert ids[0] not in [e.transaction_id for e in without]


def test_find_exemplars_with_no_text_returns_nothing(db_url: str) -> None:
    add_resolved_transaction(db_url, label="Blue Bottle", description="Latte", node_id="5")
    with session_scope(database_url=db_url) as s:
        assert find_exemplars(s, merchant="", description="  ") == []


def test_exact_match_survives_a_crowded_prefilter(db_url: str) -> None:
    fillers = [
        transaction_from_record(
            record(f"misc purchase {n:04d}", "10.00", label="Filler Store"), batch_id="history"
        )
        for n in range(600)
    ]
    with session_scope(database_url=db_url) as s:
        upsert_transactions(s, fillers)
        for tx in fillers:
            save_resolution(
                s,
                transaction_id=tx.id,
                node_id="1",
                confidence=0.9,
                reasoning="seeded",
                source="auto",
            )
    exact = add_resolved_transaction(
        db_url, label="Blue Bottle", description="Oat latte", node_id="5"
    )

    with session_scope(database_url=db_url) as s:
        found = find_exemplars(s, merchant="Blue Bottle", description="Oat latte")

    assert [e.transaction_id for e in found] == [exact]
    assert found[0].score == pytest.approx(1.0)
