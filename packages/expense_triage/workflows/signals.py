"""Signal names and payload models exchanged through the execution substrate.

Payload field names are the stable camelCase wire names; every model accepts
the snake_case attribute names as well.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..models import OutcomeKind, ReviewReason

CATEGORIZE_REQUESTED = "transactions/categorize"
OUTCOME_RECORDED = "transactions/outcome"
NODE_CREATED = "taxonomy/node.created"
REVIEW_RESOLVED = "review/item.resolved"
RETRY_REQUESTED = "review/retry.requested"
BATCH_CATEGORIZATION_DONE = "batch/categorization.done"
BATCH_COMPLETED = "batch/completed"


@dataclass(frozen=True, slots=True)
class Signal:
    name: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_signal(self, name: str) -> Signal:
        return Signal(name=name, data=self.model_dump(mode="json", by_alias=True))


class CategorizeRequested(_Payload):
    batch_id: str = Field(alias="batchId")
    transaction_id: str = Field(alias="transactionId")


class OutcomeSignal(_Payload):
    batch_id: str = Field(alias="batchId")
    transaction_id: str = Field(alias="transactionId")
    kind: OutcomeKind
    reason: ReviewReason | None = None


class NodeCreated(_Payload):
    node_id: str = Field(alias="nodeId")
    name: str
    parent_id: str | None = Field(default=None, alias="parentId")


class ReviewResolved(_Payload):
    review_item_id: str = Field(alias="reviewItemId")
    transaction_id: str = Field(alias="transactionId")
    batch_id: str = Field(alias="batchId")
    resolved_as: str = Field(alias="resolvedAs")


class RetryRequested(_Payload):
    review_item_id: str = Field(alias="reviewItemId")


class BatchTransition(_Payload):
    batch_id: str = Field(alias="batchId")
    status: str


__all__ = [
    "BATCH_CATEGORIZATION_DONE",
    "BATCH_COMPLETED",
    "CATEGORIZE_REQUESTED",
    "NODE_CREATED",
    "OUTCOME_RECORDED",
    "RETRY_REQUESTED",
    "REVIEW_RESOLVED",
    "BatchTransition",
    "CategorizeRequested",
    "NodeCreated",
    "OutcomeSignal",
    "RetryRequested",
    "ReviewResolved",
    "Signal",
]
