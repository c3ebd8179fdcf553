from __future__ import annotations

import threading

import pytest
from db.client import session_scope
from db.models.triage import EtTaxonomyNode
from sqlalchemy import func, select

import expense_triage.taxonomy as taxonomy
from expense_triage.errors import TaxonomyNodeNotFoundError, TaxonomyValidationError
from expense_triage.taxonomy import (
    ROOT_NODE_ID,
    ensure_node,
    find_node,
    load_taxonomy,
    node_path,
    resolve_parent_id,
    seed_default_taxonomy,
    validate_name,
)


def _count_named(db_url: str, name: str) -> int:
    with session_scope(database_url=db_url) as s:
        return int(
            s.execute(
                select(func.count())
                .select_from(EtTaxonomyNode)
                .where(func.lower(EtTaxonomyNode.name) == name.lower())
            ).scalar_one()
        )


def test_seed_is_idempotent(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        assert seed_default_taxonomy(s) == 0
        nodes = load_taxonomy(s)
    assert {n.id for n in nodes} >= {ROOT_NODE_ID, "1", "5", "8"}
    assert node_path(nodes, "5") == "Root > Discretionary"


def test_ensure_node_is_case_insensitive_per_parent(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        node, created = ensure_node(s, name="Coffee  Shops", parent_id="5")
        again, created_again = ensure_node(s, name="coffee shops", parent_id="5")
        other, created_other = ensure_node(s, name="Coffee Shops", parent_id="6")
    assert created and not created_again and created_other
    assert again.id == node.id
    assert node.name == "Coffee Shops"
    assert other.id != node.id


def test_ensure_node_defaults_to_root_parent(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        node, created = ensure_node(s, name="Gifts", parent_id=None)
        assert find_node(s, name="GIFTS", parent_id=ROOT_NODE_ID) is not None
    assert created
    assert node.parent_id == ROOT_NODE_ID


def test_ensure_node_validation(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        with pytest.raises(TaxonomyValidationError):
            ensure_node(s, name="   ", parent_id="5")
        with pytest.raises(TaxonomyValidationError):
            ensure_node(s, name="Coffee <script>", parent_id="5")
        with pytest.raises(TaxonomyNodeNotFoundError):
            ensure_node(s, name="Coffee", parent_id="missing")
    assert not validate_name("x" * 65).ok
    assert validate_name("Home & Garden (misc.)").ok


def test_resolve_parent_id_falls_back_to_root() -> None:
    assert resolve_parent_id("5", {"5", "6"}) == "5"
    assert resolve_parent_id("nope", {"5"}) == ROOT_NODE_ID
    assert resolve_parent_id(None, {"5"}) == ROOT_NODE_ID


def test_concurrent_proposals_converge_on_one_node(db_url: str) -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[tuple[str, bool]] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _propose() -> None:
        try:
            barrier.wait()
            with session_scope(database_url=db_url) as s:
                node, created = ensure_node(s, name="Coffee Shops", parent_id="5")
            with lock:
                results.append((node.id, created))
        except BaseException as e:  # noqa: BLE001 - surfaced by the assertion below
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=_propose) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert len(results) == workers
    assert len({node_id for node_id, _ in results}) == 1
    assert sum(created for _, created in results) == 1
    assert _count_named(db_url, "Coffee Shops") == 1


def test_lost_insert_race_returns_the_winner(
    db_url: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    with session_scope(database_url=db_url) as s:
        winner, _ = ensure_node(s, name="Coffee Shops", parent_id="5")

    # Hide the existing row from the first lookup so the insert hits the
    # unique sibling index, as a concurrent writer would.
    real_find = taxonomy.find_node
    calls = {"n": 0}

    def _stale_find(session, *, name, parent_id):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_find(session, name=name, parent_id=parent_id)

    monkeypatch.setattr(taxonomy, "find_node", _stale_find)

    with session_scope(database_url=db_url) as s:
        node, created = ensure_node(s, name="coffee shops", parent_id="5")
        # The outer transaction survives the failed SAVEPOINT.
        assert s.get(EtTaxonomyNode, "5") is not None

    assert created is False
    assert node.id == winner.id
    assert _count_named(db_url, "Coffee Shops") == 1
