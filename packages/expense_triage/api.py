"""Public API interfaces for the ``expense_triage`` package.

This module is the stable import surface. Implementations live in the leaf
modules (identity, exemplars, taxonomy, splits) and in
``expense_triage.workflows``; they are re-exported here.
:func:`build_service` assembles a ready-to-use :class:`TriageService` from the
environment.
"""

from __future__ import annotations

import os

from .classifier import Classifier, OpenAIClassifier
from .config import TriageSettings
from .exemplars import find_exemplars, similarity
from .identity import derive_child_transaction_id, derive_transaction_id
from .reports import batch_stats, compare_batches, list_batches, uncategorized_transactions
from .splits import allocate_receipt_residual, plan_children, validate_split_sums
from .taxonomy import ensure_node, find_node, seed_default_taxonomy
from .workflows.completion import await_batch_categorization, batch_status
from .workflows.service import TriageService
from .workflows.substrate import LocalSubstrate, Substrate


def build_service(
    *,
    database_url: str | None = None,
    settings: TriageSettings | None = None,
    classifier: Classifier | None = None,
    substrate: Substrate | None = None,
) -> TriageService:
    """Return a registered :class:`TriageService`.

    Missing pieces come from the environment: ``DATABASE_URL``,
    ``EXPENSE_TRIAGE_*`` settings, an :class:`OpenAIClassifier` (which reads
    ``OPENAI_API_KEY`` on first use) and a :class:`LocalSubstrate` sized by
    ``settings.workers``.

    Handlers run on a thread pool by default, so ``create_taxonomy_node`` and
    a ``newNode`` resolution return before the retry cascade finishes; call
    :meth:`TriageService.drain` to wait for dispatched work. With
    ``EXPENSE_TRIAGE_WORKERS=0`` every handler runs inline on the caller's
    thread and those calls return only after the cascade settles.
    """

    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    cfg = settings or TriageSettings.from_env()
    service = TriageService(
        substrate=substrate or LocalSubstrate(max_workers=cfg.workers),
        classifier=classifier
        or OpenAIClassifier(model=cfg.model, confidence_threshold=cfg.confidence_threshold),
        database_url=url,
        settings=cfg,
    )
    service.register()
    return service


__all__ = [
    "TriageService",
    "allocate_receipt_residual",
    "await_batch_categorization",
    "batch_stats",
    "batch_status",
    "build_service",
    "compare_batches",
    "derive_child_transaction_id",
    "derive_transaction_id",
    "ensure_node",
    "find_exemplars",
    "find_node",
    "list_batches",
    "plan_children",
    "seed_default_taxonomy",
    "similarity",
    "uncategorized_transactions",
    "validate_split_sums",
]
