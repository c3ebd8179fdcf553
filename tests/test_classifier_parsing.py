from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from typing import Any

import pytest

from expense_triage.classifier import OpenAIClassifier, parse_outcome
from expense_triage.errors import (
    ClassifierOutputError,
    ClassifierRequestError,
    NonRetriableError,
    TransientClassifierError,
)
from expense_triage.models import Exemplar, TaxonomyNode, Transaction

from tests.helpers.openai_stub import OpenAIStub, status_error, timeout_error

TAXONOMY = (
    TaxonomyNode(id="0", name="Root", description=None, parent_id=None),
    TaxonomyNode(id="5", name="Discretionary", description="Nice to have", parent_id="0"),
    TaxonomyNode(id="c1", name="Coffee Shops", description=None, parent_id="5"),
)

TX = Transaction(
    id="t" * 64,
    batch_id="b1",
    date=date(2025, 3, 1),
    amount=Decimal("4.50"),
    merchant="Blue Bottle",
    description="Latte",
    raw_fields={"Category": "Restaurant-Coffee"},
)


def _answer(**overrides: Any) -> dict[str, Any]:
    base: dict[str, Any] = {
        "action": "categorize",
        "nodeId": "c1",
        "confidence": 0.91,
        "reasoning": "coffee shop",
        "proposedNode": None,
    }
    base.update(overrides)
    return base


def test_classify_sends_strict_schema_and_parses_outcome() -> None:
    stub = OpenAIStub(lambda _kw: _answer())
    clf = OpenAIClassifier(client=stub, model="test-model", confidence_threshold=0.7)
    exemplar = Exemplar(
        transaction_id="e" * 64,
        merchant="Blue Bottle",
        description="Cappuccino",
        taxonomy_node_id="c1",
        score=0.86,
    )

    outcome = clf.classify(TX, TAXONOMY, [exemplar], annotation="work coffee")

    assert outcome.action == "categorize"
    assert outcome.node_id == "c1"
    assert outcome.confidence == pytest.approx(0.91)

    (call,) = stub.calls
    assert call["model"] == "test-model"
    fmt = call["text"]["format"]
    assert fmt["type"] == "json_schema"
    assert fmt["name"] == "transaction_outcome"
    assert fmt["strict"] is True
    assert fmt["schema"]["properties"]["nodeId"]["enum"] == ["0", "5", "c1", None]
    assert "0.70" in call["instructions"]
    user = call["input"]
    assert "[c1] Coffee Shops" in user
    assert "Cappuccino" in user and "Root > Discretionary > Coffee Shops" in user
    assert "work coffee" in user
    assert "Restaurant-Coffee" in user


def test_propose_node_outcome() -> None:
    stub = OpenAIStub(
        lambda _kw: _answer(
            action="proposeNode",
            nodeId=None,
            confidence=0.6,
            proposedNode={"name": "Tea Houses", "description": "tea", "parentId": "5"},
        )
    )
    outcome = OpenAIClassifier(client=stub).classify(TX, TAXONOMY, [])
    assert outcome.action == "proposeNode"
    assert outcome.proposed_node is not None
    assert outcome.proposed_node.name == "Tea Houses"
    assert outcome.proposed_node.parent_id == "5"


@pytest.mark.parametrize(
    "reply",
    [
        "not json at all",
        json.dumps(["a", "list"]),
        json.dumps(_answer(nodeId="does-not-exist")),
        json.dumps(_answer(nodeId=None)),
        json.dumps(_answer(confidence=1.5)),
        json.dumps(_answer(action="shrug")),
    ],
)
def test_bad_output_raises_output_error(reply: str) -> None:
    clf = OpenAIClassifier(client=OpenAIStub(lambda _kw: reply))
    with pytest.raises(ClassifierOutputError) as exc:
        clf.classify(TX, TAXONOMY, [])
    assert isinstance(exc.value, NonRetriableError)


@pytest.mark.parametrize(
    "error",
    [timeout_error(), status_error(429), status_error(500), status_error(503)],
)
def test_transient_errors_are_retryable(error: Exception) -> None:
    clf = OpenAIClassifier(client=OpenAIStub(lambda _kw: error))
    with pytest.raises(TransientClassifierError):
        clf.classify(TX, TAXONOMY, [])


@pytest.mark.parametrize("status", [400, 401])
def test_client_errors_are_permanent(status: int) -> None:
    clf = OpenAIClassifier(client=OpenAIStub(lambda _kw: status_error(status)))
    with pytest.raises(ClassifierRequestError) as exc:
        clf.classify(TX, TAXONOMY, [])
    assert not isinstance(exc.value, TransientClassifierError)
    assert isinstance(exc.value, NonRetriableError)


def test_parse_outcome_accepts_missing_confidence() -> None:
    outcome = parse_outcome(_answer(confidence=None), allowed_node_ids={"c1"})
    assert outcome.confidence is None
