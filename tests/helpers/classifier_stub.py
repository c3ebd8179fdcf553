"""Scripted classifier for workflow tests.

Tests provide a ``decide`` callable mapping a transaction to either a
:class:`ClassifierOutcome` or an exception instance (raised from
``classify``). Every call is recorded so tests can assert on call counts and
on the context the workflow passed in (taxonomy, exemplars, annotation).
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from expense_triage.config import TriageSettings
from expense_triage.models import ClassifierOutcome, Exemplar, TaxonomyNode, Transaction
from expense_triage.workflows.service import TriageService
from expense_triage.workflows.substrate import LocalSubstrate

type Decide = Callable[[Transaction], ClassifierOutcome | BaseException]


@dataclass(frozen=True)
class ClassifyCall:
    transaction: Transaction
    taxonomy: tuple[TaxonomyNode, ...]
    exemplars: tuple[Exemplar, ...]
    annotation: str | None


class ScriptedClassifier:
    def __init__(self, decide: Decide) -> None:
        self._decide = decide
        self._lock = threading.Lock()
        self.calls: list[ClassifyCall] = []

    def classify(
        self,
        transaction: Transaction,
        taxonomy: Sequence[TaxonomyNode],
        exemplars: Sequence[Exemplar],
        annotation: str | None = None,
    ) -> ClassifierOutcome:
        with self._lock:
            self.calls.append(
                ClassifyCall(transaction, tuple(taxonomy), tuple(exemplars), annotation)
            )
        result = self._decide(transaction)
        if isinstance(result, BaseException):
            raise result
        return result

    def calls_for(self, description: str) -> list[ClassifyCall]:
        return [c for c in self.calls if c.transaction.description == description]


def categorize(node_id: str, confidence: float | None, reasoning: str = "") -> ClassifierOutcome:
    return ClassifierOutcome(
        action="categorize", node_id=node_id, confidence=confidence, reasoning=reasoning
    )


def propose(
    name: str, parent_id: str | None, confidence: float | None = None
) -> ClassifierOutcome:
    return ClassifierOutcome.model_validate(
        {
            "action": "proposeNode",
            "confidence": confidence,
            "reasoning": f"no node for {name}",
            "proposedNode": {"name": name, "description": "", "parentId": parent_id},
        }
    )


def needs_review(reasoning: str = "unclear") -> ClassifierOutcome:
    return ClassifierOutcome(action="needsReview", reasoning=reasoning)


def make_service(
    database_url: str,
    classifier: Any,
    *,
    settings: TriageSettings | None = None,
    max_workers: int = 0,
) -> TriageService:
    """Registered service on an inline substrate with no real sleeping."""

    service = TriageService(
        substrate=LocalSubstrate(max_workers=max_workers, sleep=lambda _s: None),
        classifier=classifier,
        database_url=database_url,
        settings=settings or TriageSettings(throttle_limit=0, retry_throttle_limit=0),
    )
    service.register()
    return service
