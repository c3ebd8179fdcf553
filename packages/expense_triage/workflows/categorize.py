"""Per-transaction classification workflow.

Public API:
    - :func:`categorize_transaction` (durable handler for ``transactions/categorize``)
    - :func:`record_classifier_failure` (its failure handler)
    - :func:`interpret_outcome` (pure outcome-to-decision mapping)

Flow
----
0. A transaction that was already split (re-ingested, or split while its
   request was queued) is settled: it emits a ``categorized`` outcome and is
   never classified or queued again.
1. A vague counterparty label short-circuits to ``ambiguousCounterparty``
   without calling the classifier.
2. Otherwise the classifier sees the full taxonomy, the top-K exemplars and
   any reviewer annotation.
3. ``categorize`` at or above the confidence threshold is saved as an
   ``auto`` Resolution; below it the item is queued as ``lowConfidence`` with
   the suggestion attached.
4. ``proposeNode`` runs the taxonomy guard lookup. An existing sibling turns
   the proposal into a ``duplicateTaxonomySuggested`` review (``shouldSplit``
   when the item mentions a vague identifier); a genuinely new name is queued
   as ``newTaxonomySuggestion``. Nodes are never created here.
5. ``needsReview`` and uninterpretable output queue ``ambiguousCounterparty``
   (``shouldSplit`` when vague).

Every path ends with exactly one outcome signal. Transient classifier errors
propagate to the substrate; once its attempts are exhausted
:func:`record_classifier_failure` queues ``classifierFailure`` and emits a
``failed`` outcome.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from db.client import session_scope
from db.models.triage import EtOutcomeLog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..classifier import Classifier
from ..config import TriageSettings
from ..errors import ClassifierOutputError
from ..exemplars import find_exemplars
from ..logging_setup import get_logger
from ..models import (
    ClassifierOutcome,
    Decision,
    Exemplar,
    ProposedNode,
    ResolutionSource,
    Suggestion,
    TaxonomyNode,
    Transaction,
)
from ..persistence import (
    get_batch_run,
    get_resolution,
    get_transaction,
    is_split_parent,
    save_resolution,
)
from ..review_queue import enqueue_review, get_review_item, resolve_review_item, review_item_id
from ..taxonomy import find_node, load_taxonomy, resolve_parent_id
from .signals import OUTCOME_RECORDED, CategorizeRequested, OutcomeSignal
from .substrate import StepContext

_logger = get_logger("expense_triage.workflows.categorize")

type NodeLookup = Callable[[str, str], TaxonomyNode | None]


# ---- Pure helpers ------------------------------------------------------------


def is_vague(text: str | None, identifiers: Sequence[str]) -> bool:
    """Case-insensitive substring match against the vague-identifier list."""

    lowered = (text or "").lower()
    return bool(lowered) and any(ident.lower() in lowered for ident in identifiers if ident)


def _mentions_vague(tx: Transaction, identifiers: Sequence[str]) -> bool:
    return is_vague(tx.merchant, identifiers) or is_vague(tx.description, identifiers)


def vague_counterparty_decision(tx: Transaction) -> Decision:
    reasoning = (
        f'Counterparty "{tx.merchant}" is too generic; human clarification of the actual '
        "purchase is needed."
    )
    return Decision(
        kind="queued",
        reason="ambiguousCounterparty",
        reasoning=reasoning,
        suggestion=Suggestion(reasoning=reasoning),
    )


def interpret_outcome(
    outcome: ClassifierOutcome,
    tx: Transaction,
    *,
    settings: TriageSettings,
    known_node_ids: set[str],
    lookup_node: NodeLookup,
) -> Decision:
    """Map a validated classifier outcome onto a categorize-or-queue decision.

    ``lookup_node(name, parent_id)`` is the taxonomy guard's case-insensitive
    sibling lookup; ``known_node_ids`` resolves proposed parents (unknown or
    missing parents fall back to the root).
    """

    vague = _mentions_vague(tx, settings.vague_identifiers)
    reasoning = outcome.reasoning or ""

    if outcome.action == "categorize" and outcome.node_id not in known_node_ids:
        reasoning = f"Classifier chose unknown node [{outcome.node_id}]. {reasoning}".strip()
    elif outcome.action == "categorize":
        confidence = (
            outcome.confidence if outcome.confidence is not None else settings.default_confidence
        )
        if confidence >= settings.confidence_threshold:
            return Decision(
                kind="categorized",
                node_id=outcome.node_id,
                confidence=confidence,
                reasoning=reasoning,
            )
        return Decision(
            kind="queued",
            reason="lowConfidence",
            reasoning=reasoning,
            suggestion=Suggestion(
                taxonomy_node_id=outcome.node_id, confidence=confidence, reasoning=reasoning
            ),
        )

    if outcome.action == "proposeNode" and outcome.proposed_node is not None:
        proposal = outcome.proposed_node
        parent_id = resolve_parent_id(proposal.parent_id, known_node_ids)
        existing = lookup_node(proposal.name, parent_id)
        if existing is not None:
            confidence = (
                outcome.confidence
                if outcome.confidence is not None
                else settings.duplicate_suggestion_confidence
            )
            note = f'Proposed node "{proposal.name}" already exists as [{existing.id}].'
            return Decision(
                kind="queued",
                reason="shouldSplit" if vague else "duplicateTaxonomySuggested",
                reasoning=f"{note} {reasoning}".strip(),
                suggestion=Suggestion(
                    taxonomy_node_id=existing.id,
                    confidence=confidence,
                    reasoning=f"{note} {reasoning}".strip(),
                ),
            )
        return Decision(
            kind="queued",
            reason="newTaxonomySuggestion",
            reasoning=reasoning,
            suggestion=Suggestion(
                confidence=outcome.confidence,
                reasoning=reasoning,
                proposed_node=ProposedNode(
                    name=proposal.name,
                    description=proposal.description,
                    parent_id=parent_id,
                ),
            ),
        )

    return Decision(
        kind="queued",
        reason="shouldSplit" if vague else "ambiguousCounterparty",
        reasoning=reasoning,
        suggestion=Suggestion(reasoning=reasoning or None),
    )


def classify_or_review(
    classifier: Classifier,
    tx: Transaction,
    taxonomy: Sequence[TaxonomyNode],
    exemplars: Sequence[Exemplar],
    annotation: str | None,
) -> ClassifierOutcome:
    """Call the classifier; uninterpretable output becomes a ``needsReview`` outcome."""

    try:
        return classifier.classify(tx, taxonomy, exemplars, annotation)
    except ClassifierOutputError as e:
        _logger.warning("classify:output_error transaction_id=%s error=%s", tx.id, e)
        return ClassifierOutcome(
            action="needsReview",
            reasoning=f"Classifier output could not be interpreted: {e}",
        )


# ---- Session-scoped steps ----------------------------------------------------


def load_exemplars(session: Session, tx: Transaction, settings: TriageSettings) -> list[Exemplar]:
    return find_exemplars(
        session,
        merchant=tx.merchant,
        description=tx.description,
        limit=settings.exemplar_limit,
        exclude_transaction_id=tx.id,
        merchant_edit_bound=settings.merchant_edit_bound,
        description_edit_bound=settings.description_edit_bound,
    )


def interpret_with_guard(
    outcome: ClassifierOutcome,
    tx: Transaction,
    taxonomy: Sequence[TaxonomyNode],
    *,
    database_url: str,
    settings: TriageSettings,
) -> Decision:
    with session_scope(database_url=database_url) as s:
        return interpret_outcome(
            outcome,
            tx,
            settings=settings,
            known_node_ids={n.id for n in taxonomy},
            lookup_node=lambda name, parent_id: find_node(s, name=name, parent_id=parent_id),
        )


def apply_decision(
    session: Session,
    *,
    tx: Transaction,
    batch_id: str,
    decision: Decision,
    source: ResolutionSource = "auto",
) -> OutcomeSignal:
    """Persist a decision and return the outcome signal describing it.

    A transaction that was split in the meantime is settled already: nothing is
    written and the outcome counts it as ``categorized``.
    """

    if is_split_parent(session, tx.id):
        _logger.info("categorize:settled_split transaction_id=%s", tx.id)
        return settled_split_outcome(batch_id, tx.id)
    if decision.kind == "categorized":
        assert decision.node_id is not None and decision.confidence is not None
        save_resolution(
            session,
            transaction_id=tx.id,
            node_id=decision.node_id,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            source=source,
        )
        prior = get_review_item(session, review_item_id(tx.id))
        if prior is not None and prior.status == "pending":
            resolve_review_item(session, prior.id, resolved_as="categorized")
        return OutcomeSignal(batch_id=batch_id, transaction_id=tx.id, kind="categorized")

    assert decision.reason is not None
    enqueue_review(
        session,
        transaction_id=tx.id,
        batch_id=batch_id,
        reason=decision.reason,
        suggestion=decision.suggestion,
    )
    return OutcomeSignal(
        batch_id=batch_id, transaction_id=tx.id, kind="queued", reason=decision.reason
    )


def settled_split_outcome(batch_id: str, transaction_id: str) -> OutcomeSignal:
    return OutcomeSignal(batch_id=batch_id, transaction_id=transaction_id, kind="categorized")


def _already_recorded(session: Session, batch_id: str, transaction_id: str) -> bool:
    row = session.execute(
        select(EtOutcomeLog.id).where(
            EtOutcomeLog.batch_id == batch_id,
            EtOutcomeLog.transaction_id == transaction_id,
        )
    ).first()
    return row is not None


def _fetch_for_processing(database_url: str, req: CategorizeRequested) -> Transaction | None:
    with session_scope(database_url=database_url) as s:
        batch = get_batch_run(s, req.batch_id)
        if batch is None:
            _logger.warning("categorize:skip_unknown_batch batch_id=%s", req.batch_id)
            return None
        if batch.status == "failed":
            _logger.info(
                "categorize:skip_abandoned batch_id=%s transaction_id=%s",
                req.batch_id,
                req.transaction_id,
            )
            return None
        if _already_recorded(s, req.batch_id, req.transaction_id):
            _logger.info(
                "categorize:skip_redelivery batch_id=%s transaction_id=%s",
                req.batch_id,
                req.transaction_id,
            )
            return None
        tx = get_transaction(s, req.transaction_id)
        if tx is None:
            _logger.warning("categorize:skip_missing transaction_id=%s", req.transaction_id)
        return tx


# ---- Durable handlers ----------------------------------------------------------


def categorize_transaction(
    ctx: StepContext,
    *,
    database_url: str,
    classifier: Classifier,
    settings: TriageSettings,
) -> str:
    """Drive one transaction from Pending to Categorized or Queued."""

    req = CategorizeRequested.model_validate(ctx.event.data)
    tx = ctx.run("fetch-transaction", lambda: _fetch_for_processing(database_url, req))
    if tx is None:
        return "skipped"

    def _split_already() -> bool:
        with session_scope(database_url=database_url) as s:
            return is_split_parent(s, tx.id)

    if ctx.run("check-split", _split_already):
        ctx.send(
            "emit-outcome",
            settled_split_outcome(req.batch_id, tx.id).to_signal(OUTCOME_RECORDED),
        )
        _logger.info(
            "categorize:skip_split_parent batch_id=%s transaction_id=%s", req.batch_id, tx.id
        )
        return "split"

    if is_vague(tx.merchant, settings.vague_identifiers):
        decision = vague_counterparty_decision(tx)
        _logger.info("categorize:vague_counterparty transaction_id=%s", tx.id)
    else:

        def _taxonomy() -> list[TaxonomyNode]:
            with session_scope(database_url=database_url) as s:
                return load_taxonomy(s)

        def _exemplars() -> list[Exemplar]:
            with session_scope(database_url=database_url) as s:
                return load_exemplars(s, tx, settings)

        def _annotation() -> str | None:
            with session_scope(database_url=database_url) as s:
                res = get_resolution(s, tx.id)
                return res.annotation if res is not None else None

        taxonomy = ctx.run("fetch-taxonomy", _taxonomy)
        exemplars = ctx.run("fetch-exemplars", _exemplars)
        annotation = ctx.run("fetch-annotation", _annotation)
        outcome = ctx.run(
            "classify",
            lambda: classify_or_review(classifier, tx, taxonomy, exemplars, annotation),
        )
        decision = ctx.run(
            "interpret-outcome",
            lambda: interpret_with_guard(
                outcome, tx, taxonomy, database_url=database_url, settings=settings
            ),
        )

    def _apply() -> OutcomeSignal:
        with session_scope(database_url=database_url) as s:
            return apply_decision(s, tx=tx, batch_id=req.batch_id, decision=decision)

    signal = ctx.run("apply-decision", _apply)
    ctx.send("emit-outcome", signal.to_signal(OUTCOME_RECORDED))
    _logger.info(
        "categorize:done batch_id=%s transaction_id=%s kind=%s reason=%s attempt=%d",
        req.batch_id,
        tx.id,
        signal.kind,
        signal.reason,
        ctx.attempt,
    )
    return decision.kind


def record_classifier_failure(
    ctx: StepContext, exc: BaseException, *, database_url: str
) -> None:
    """Queue ``classifierFailure`` and emit a ``failed`` outcome after retries run out."""

    req = CategorizeRequested.model_validate(ctx.event.data)
    reasoning = (
        f"Classification failed after {ctx.attempt} attempt(s): {exc.__class__.__name__}: {exc}"
    )

    def _write() -> OutcomeSignal:
        with session_scope(database_url=database_url) as s:
            if is_split_parent(s, req.transaction_id):
                return settled_split_outcome(req.batch_id, req.transaction_id)
            if get_transaction(s, req.transaction_id) is not None:
                enqueue_review(
                    s,
                    transaction_id=req.transaction_id,
                    batch_id=req.batch_id,
                    reason="classifierFailure",
                    suggestion=Suggestion(reasoning=reasoning),
                )
        return OutcomeSignal(
            batch_id=req.batch_id,
            transaction_id=req.transaction_id,
            kind="failed",
            reason="classifierFailure",
        )

    signal = ctx.run("record-failure", _write)
    ctx.send("emit-failure", signal.to_signal(OUTCOME_RECORDED))
    _logger.error(
        "categorize:failed batch_id=%s transaction_id=%s attempts=%d",
        req.batch_id,
        req.transaction_id,
        ctx.attempt,
    )


__all__ = [
    "apply_decision",
    "categorize_transaction",
    "classify_or_review",
    "interpret_outcome",
    "interpret_with_guard",
    "is_vague",
    "load_exemplars",
    "record_classifier_failure",
    "settled_split_outcome",
    "vague_counterparty_decision",
]
