"""Data models and type aliases for ``expense_triage``.

Two families live here:

- Frozen dataclasses for domain records read from storage (``Transaction``,
  ``TaxonomyNode``, ``Resolution``, ``ReviewItem``, ``BatchRun``,
  ``Exemplar``) plus the workflow's internal ``Decision``.
- Pydantic models for boundary shapes (classifier outcomes, suggestions,
  split and review-resolution requests, batch status readouts and reports). Their field
  aliases are the stable camelCase wire names; ``populate_by_name`` keeps the
  snake_case names usable from Python.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Literal vocabularies
# ---------------------------------------------------------------------------

type OutcomeKind = Literal["categorized", "queued", "failed"]
type ReviewReason = Literal[
    "lowConfidence",
    "ambiguousCounterparty",
    "newTaxonomySuggestion",
    "duplicateTaxonomySuggested",
    "shouldSplit",
    "classifierFailure",
]
type ResolutionSource = Literal["auto", "manual", "retryAuto"]
type ReviewStatus = Literal["pending", "resolved"]
type BatchStatus = Literal["processing", "categorizationDone", "completed", "failed"]
type ClassifierAction = Literal["categorize", "proposeNode", "needsReview"]

# Review reasons the retry cascade re-evaluates after a taxonomy change.
CASCADE_REASONS: tuple[str, ...] = ("newTaxonomySuggestion", "duplicateTaxonomySuggested")


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProposedNode(_WireModel):
    """A taxonomy node proposed by the classifier or entered by a reviewer."""

    name: str = Field(min_length=1)
    description: str = ""
    parent_id: str | None = Field(default=None, alias="parentId")


class Suggestion(_WireModel):
    """Pre-filled answer stored on a review item for one-click acceptance."""

    taxonomy_node_id: str | None = Field(default=None, alias="taxonomyNodeId")
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    reasoning: str | None = None
    proposed_node: ProposedNode | None = Field(default=None, alias="proposedNode")


class ClassifierOutcome(_WireModel):
    """Validated answer from the classifier collaborator.

    Notes
    -----
    ``categorize`` requires ``nodeId``; ``proposeNode`` requires
    ``proposedNode``. ``confidence`` is optional everywhere; consumers apply
    their own default when it is missing.
    """

    action: ClassifierAction
    node_id: str | None = Field(default=None, alias="nodeId")
    confidence: float | None = None
    reasoning: str = ""
    proposed_node: ProposedNode | None = Field(default=None, alias="proposedNode")

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        return v

    @model_validator(mode="after")
    def _action_fields_present(self) -> ClassifierOutcome:
        if self.action == "categorize" and not self.node_id:
            raise ValueError("categorize outcome requires nodeId")
        if self.action == "proposeNode" and self.proposed_node is None:
            raise ValueError("proposeNode outcome requires proposedNode")
        return self


class ChildSpec(_WireModel):
    description: str = Field(min_length=1)
    amount: Decimal
    counterparty_label: str | None = Field(default=None, alias="counterpartyLabel")


class SplitRequest(_WireModel):
    parent_id: str = Field(alias="parentId", min_length=1)
    children: list[ChildSpec] = Field(min_length=1)
    # Apply the itemized-receipt residual rule before validating sums.
    itemized_receipt: bool = Field(default=False, alias="itemizedReceipt")


class ReviewResolutionRequest(_WireModel):
    """Human decision for one review item; exactly one action must be set."""

    review_item_id: str = Field(alias="reviewItemId", min_length=1)
    node_id: str | None = Field(default=None, alias="nodeId")
    new_node: ProposedNode | None = Field(default=None, alias="newNode")
    split_children: list[ChildSpec] | None = Field(default=None, alias="splitChildren")
    itemized_receipt: bool = Field(default=False, alias="itemizedReceipt")
    reasoning: str | None = None

    @model_validator(mode="after")
    def _exactly_one_action(self) -> ReviewResolutionRequest:
        chosen = [
            name
            for name, value in (
                ("nodeId", self.node_id),
                ("newNode", self.new_node),
                ("splitChildren", self.split_children),
            )
            if value
        ]
        if len(chosen) != 1:
            raise ValueError(
                "exactly one of nodeId, newNode or splitChildren is required "
                f"(got {', '.join(chosen) or 'none'})"
            )
        return self


class BatchStatusReadout(_WireModel):
    total_items: int = Field(alias="totalItems")
    categorized_count: int = Field(alias="categorizedCount")
    review_queue_count: int = Field(alias="reviewQueueCount")
    failed_count: int = Field(alias="failedCount")
    status: BatchStatus


class BatchSummary(_WireModel):
    """One row of the batch listing."""

    batch_id: str = Field(alias="batchId")
    status: BatchStatus
    total_items: int = Field(alias="totalItems")
    categorized_count: int = Field(alias="categorizedCount")
    review_queue_count: int = Field(alias="reviewQueueCount")
    failed_count: int = Field(alias="failedCount")
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    finalized_at: datetime | None = Field(default=None, alias="finalizedAt")


class CategoryCount(_WireModel):
    node_id: str = Field(alias="nodeId")
    node_name: str = Field(alias="nodeName")
    node_path: str = Field(alias="nodePath")
    count: int
    percentage: float


class ConfidenceBuckets(_WireModel):
    """Resolution counts by confidence: high >= 0.8, medium 0.6-0.8, low < 0.6."""

    high: int = 0
    medium: int = 0
    low: int = 0


class BatchStats(_WireModel):
    batch_id: str = Field(alias="batchId")
    total_items: int = Field(alias="totalItems")
    categorized_count: int = Field(alias="categorizedCount")
    review_queue_count: int = Field(alias="reviewQueueCount")
    uncategorized_count: int = Field(alias="uncategorizedCount")
    average_confidence: float = Field(alias="averageConfidence")
    category_distribution: list[CategoryCount] = Field(alias="categoryDistribution")
    confidence_distribution: ConfidenceBuckets = Field(alias="confidenceDistribution")


class UncategorizedTransaction(_WireModel):
    transaction_id: str = Field(alias="transactionId")
    batch_id: str = Field(alias="batchId")
    tx_date: date = Field(alias="date")
    amount: Decimal
    merchant: str
    description: str


class CategoryChange(_WireModel):
    node_id: str = Field(alias="nodeId")
    node_name: str = Field(alias="nodeName")
    node_path: str = Field(alias="nodePath")
    first_count: int = Field(alias="firstCount")
    second_count: int = Field(alias="secondCount")
    diff: int


class BatchComparison(_WireModel):
    """Second batch minus first batch; changes sorted by the largest move."""

    first: BatchStats
    second: BatchStats
    total_items_diff: int = Field(alias="totalItemsDiff")
    categorized_count_diff: int = Field(alias="categorizedCountDiff")
    average_confidence_diff: float = Field(alias="averageConfidenceDiff")
    category_changes: list[CategoryChange] = Field(alias="categoryChanges")


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Transaction:
    id: str
    batch_id: str
    date: date
    amount: Decimal
    merchant: str
    description: str
    raw_fields: Mapping[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    is_child: bool = False

    @property
    def counterparty_label(self) -> str:
        return self.merchant


@dataclass(frozen=True, slots=True)
class TaxonomyNode:
    id: str
    name: str
    description: str | None
    parent_id: str | None


@dataclass(frozen=True, slots=True)
class Resolution:
    transaction_id: str
    taxonomy_node_id: str
    confidence: float
    reasoning: str
    source: ResolutionSource
    resolved_at: datetime | None = None
    annotation: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewItem:
    id: str
    transaction_id: str
    batch_id: str
    reason: ReviewReason
    suggestion: Suggestion | None
    status: ReviewStatus
    retry_count: int = 0
    retrying_since: datetime | None = None
    resolved_as: str | None = None


@dataclass(frozen=True, slots=True)
class BatchRun:
    id: str
    total_items: int
    categorized_count: int
    review_queue_count: int
    failed_count: int
    status: BatchStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    finalized_at: datetime | None = None

    def readout(self) -> BatchStatusReadout:
        return BatchStatusReadout(
            total_items=self.total_items,
            categorized_count=self.categorized_count,
            review_queue_count=self.review_queue_count,
            failed_count=self.failed_count,
            status=self.status,
        )

    def summary(self) -> BatchSummary:
        return BatchSummary(
            batch_id=self.id,
            status=self.status,
            total_items=self.total_items,
            categorized_count=self.categorized_count,
            review_queue_count=self.review_queue_count,
            failed_count=self.failed_count,
            started_at=self.started_at,
            completed_at=self.completed_at,
            finalized_at=self.finalized_at,
        )


@dataclass(frozen=True, slots=True)
class Exemplar:
    """A previously-resolved transaction offered to the classifier as precedent."""

    transaction_id: str
    merchant: str
    description: str
    taxonomy_node_id: str
    score: float


@dataclass(frozen=True, slots=True)
class Decision:
    """Interpreted classification result for one transaction.

    ``kind == "categorized"`` carries ``node_id``/``confidence`` for an auto
    Resolution; ``kind == "queued"`` carries ``reason`` and an optional
    ``suggestion`` for the review item.
    """

    kind: Literal["categorized", "queued"]
    reasoning: str = ""
    node_id: str | None = None
    confidence: float | None = None
    reason: ReviewReason | None = None
    suggestion: Suggestion | None = None


__all__ = [
    "CASCADE_REASONS",
    "BatchComparison",
    "BatchRun",
    "BatchStats",
    "BatchStatus",
    "BatchStatusReadout",
    "BatchSummary",
    "CategoryChange",
    "CategoryCount",
    "ChildSpec",
    "ClassifierAction",
    "ClassifierOutcome",
    "ConfidenceBuckets",
    "Decision",
    "Exemplar",
    "OutcomeKind",
    "ProposedNode",
    "Resolution",
    "ResolutionSource",
    "ReviewItem",
    "ReviewReason",
    "ReviewResolutionRequest",
    "ReviewStatus",
    "SplitRequest",
    "Suggestion",
    "TaxonomyNode",
    "Transaction",
    "UncategorizedTransaction",
]
