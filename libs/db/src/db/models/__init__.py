"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the expense triage models used by ``expense_triage``.
"""

from .triage import (
    Base,
    EtBatchRun,
    EtOutcomeLog,
    EtResolution,
    EtReviewItem,
    EtTaxonomyNode,
    EtTransaction,
)

__all__ = [
    "Base",
    "EtBatchRun",
    "EtOutcomeLog",
    "EtResolution",
    "EtReviewItem",
    "EtTaxonomyNode",
    "EtTransaction",
]
