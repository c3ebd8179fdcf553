"""Public interface for the ``expense_triage`` package.

Symbol re-exports only; see ``expense_triage.api`` and
``expense_triage.workflows`` for the implementations.
"""

from .api import (
    TriageService,
    build_service,
    derive_transaction_id,
    ensure_node,
    find_exemplars,
    validate_split_sums,
)
from .config import TriageSettings
from .models import (
    BatchComparison,
    BatchStats,
    BatchStatusReadout,
    BatchSummary,
    ChildSpec,
    ClassifierOutcome,
    ProposedNode,
    ReviewResolutionRequest,
    SplitRequest,
    Suggestion,
    Transaction,
)

__all__ = [
    # API
    "build_service",
    "derive_transaction_id",
    "ensure_node",
    "find_exemplars",
    "validate_split_sums",
    "TriageService",
    "TriageSettings",
    # Models
    "BatchComparison",
    "BatchStats",
    "BatchStatusReadout",
    "BatchSummary",
    "ChildSpec",
    "ClassifierOutcome",
    "ProposedNode",
    "ReviewResolutionRequest",
    "SplitRequest",
    "Suggestion",
    "Transaction",
]
