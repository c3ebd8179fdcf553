"""Wires the triage workflows onto an execution substrate.

Usage
-----
    service = TriageService(
        substrate=LocalSubstrate(),
        classifier=OpenAIClassifier(),
        database_url=url,
    )
    service.register()
    started = service.start_batch(records)
    service.await_batch_categorization(started.batch_id, timeout=600)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from db.client import session_scope

from .. import reports
from ..classifier import Classifier
from ..config import TriageSettings
from ..models import (
    BatchComparison,
    BatchStats,
    BatchStatusReadout,
    BatchSummary,
    ReviewResolutionRequest,
    SplitRequest,
    TaxonomyNode,
    UncategorizedTransaction,
)
from ..persistence import annotate_resolution
from . import batches, categorize, completion, review
from .signals import (
    CATEGORIZE_REQUESTED,
    NODE_CREATED,
    OUTCOME_RECORDED,
    RETRY_REQUESTED,
    REVIEW_RESOLVED,
    BatchTransition,
    Signal,
)
from .substrate import FunctionSpec, Substrate, ThrottleGate

# Outcome signals folded per aggregator invocation.
_OUTCOME_BATCH_SIZE = 50


def _batch_key(signal: Signal) -> str:
    return str(signal.data.get("batchId", ""))


@dataclass
class TriageService:
    substrate: Substrate
    classifier: Classifier
    database_url: str
    settings: TriageSettings = field(default_factory=TriageSettings)

    def function_specs(self) -> list[FunctionSpec]:
        deps: dict[str, Any] = {
            "database_url": self.database_url,
            "classifier": self.classifier,
            "settings": self.settings,
        }
        return [
            FunctionSpec(
                fn_id="categorize-transaction",
                trigger=CATEGORIZE_REQUESTED,
                handler=partial(categorize.categorize_transaction, **deps),
                max_attempts=self.settings.classifier_max_attempts,
                on_failure=partial(
                    categorize.record_classifier_failure, database_url=self.database_url
                ),
                throttle=ThrottleGate(
                    self.settings.throttle_limit, self.settings.throttle_period_sec
                ),
                throttle_key=_batch_key,
            ),
            FunctionSpec(
                fn_id="track-outcomes",
                trigger=OUTCOME_RECORDED,
                handler=partial(completion.track_outcomes, database_url=self.database_url),
                max_attempts=3,
                batch_size=_OUTCOME_BATCH_SIZE,
            ),
            FunctionSpec(
                fn_id="track-review-resolution",
                trigger=REVIEW_RESOLVED,
                handler=partial(
                    completion.track_review_resolution, database_url=self.database_url
                ),
                max_attempts=3,
                batch_size=_OUTCOME_BATCH_SIZE,
            ),
            FunctionSpec(
                fn_id="retry-cascade",
                trigger=NODE_CREATED,
                handler=partial(review.cascade_on_node_created, **deps),
                max_attempts=3,
            ),
            FunctionSpec(
                fn_id="retry-review-item",
                trigger=RETRY_REQUESTED,
                handler=partial(review.retry_requested_item, **deps),
                max_attempts=3,
                throttle=ThrottleGate(
                    self.settings.retry_throttle_limit, self.settings.retry_throttle_period_sec
                ),
            ),
        ]

    def register(self) -> None:
        for spec in self.function_specs():
            self.substrate.register(spec)

    # -- operations --

    def start_batch(
        self, records: Iterable[Mapping[str, Any]], *, batch_id: str | None = None
    ) -> batches.BatchStart:
        return batches.start_batch(
            records,
            database_url=self.database_url,
            dispatch=self.substrate.dispatch,
            batch_id=batch_id,
        )

    def await_batch_categorization(
        self, batch_id: str, *, timeout: float
    ) -> BatchTransition | None:
        return completion.await_batch_categorization(self.substrate, batch_id, timeout=timeout)

    def batch_status(self, batch_id: str) -> BatchStatusReadout:
        with session_scope(database_url=self.database_url) as s:
            return completion.batch_status(s, batch_id)

    def abandon_batch(self, batch_id: str) -> bool:
        with session_scope(database_url=self.database_url) as s:
            return completion.abandon_batch(s, batch_id)

    def list_batches(self, *, status: str | None = None) -> list[BatchSummary]:
        with session_scope(database_url=self.database_url) as s:
            return reports.list_batches(s, status=status)

    def batch_stats(self, batch_id: str) -> BatchStats:
        with session_scope(database_url=self.database_url) as s:
            return reports.batch_stats(s, batch_id)

    def uncategorized_transactions(self, batch_id: str) -> list[UncategorizedTransaction]:
        with session_scope(database_url=self.database_url) as s:
            return reports.uncategorized_transactions(s, batch_id)

    def compare_batches(self, first_id: str, second_id: str) -> BatchComparison:
        with session_scope(database_url=self.database_url) as s:
            return reports.compare_batches(s, first_id, second_id)

    def list_review_queue(
        self, *, batch_id: str | None = None, reasons: Sequence[str] | None = None
    ) -> list[review.ReviewEntry]:
        with session_scope(database_url=self.database_url) as s:
            return review.list_review_queue(s, batch_id=batch_id, reasons=reasons)

    def resolve_review(self, request: ReviewResolutionRequest) -> review.ReviewResolution:
        return review.resolve_review(
            request,
            database_url=self.database_url,
            dispatch=self.substrate.dispatch,
            settings=self.settings,
        )

    def split_transaction(self, request: SplitRequest) -> review.SplitResult:
        return review.split_transaction(
            request,
            database_url=self.database_url,
            dispatch=self.substrate.dispatch,
            settings=self.settings,
        )

    def create_taxonomy_node(
        self, *, name: str, description: str | None = None, parent_id: str | None = None
    ) -> tuple[TaxonomyNode, bool]:
        return review.create_taxonomy_node(
            name=name,
            description=description,
            parent_id=parent_id,
            database_url=self.database_url,
            dispatch=self.substrate.dispatch,
        )

    def request_retry(self, review_item_id: str) -> None:
        review.request_retry(
            review_item_id, database_url=self.database_url, dispatch=self.substrate.dispatch
        )

    def annotate(self, transaction_id: str, annotation: str | None) -> None:
        with session_scope(database_url=self.database_url) as s:
            annotate_resolution(s, transaction_id=transaction_id, annotation=annotation)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until dispatched work has settled; ``False`` on timeout."""

        return self.substrate.drain(timeout)


__all__ = ["TriageService"]
