"""Human review resolution, splits, taxonomy growth and the retry cascade.

Public API:
    - :func:`resolve_review` (apply a reviewer decision to one review item)
    - :func:`split_transaction` (decompose a transaction into children)
    - :func:`create_taxonomy_node` (human node creation through the guard)
    - :func:`request_retry` (ask for one pending item to be re-classified)
    - :func:`cascade_on_node_created` / :func:`retry_requested_item` (durable handlers)

Writes happen in a single ``session_scope`` per operation. Signals are
dispatched only after that scope commits, so listeners never observe state
that was rolled back.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from db.client import session_scope
from sqlalchemy.orm import Session

from ..classifier import Classifier
from ..config import TriageSettings
from ..errors import (
    ClassifierError,
    ResolutionValidationError,
    SplitValidationError,
)
from ..logging_setup import get_logger
from ..models import (
    CASCADE_REASONS,
    ReviewItem,
    ReviewResolutionRequest,
    SplitRequest,
    Suggestion,
    TaxonomyNode,
    Transaction,
)
from ..persistence import (
    add_batch_items,
    get_resolution,
    get_transaction,
    insert_child_transactions,
    list_children,
    require_transaction,
    save_resolution,
)
from ..review_queue import (
    clear_retrying,
    get_review_item,
    list_pending,
    mark_retrying,
    require_review_item,
    resolve_review_item,
    review_item_id,
    update_suggestion,
)
from ..splits import plan_children
from ..taxonomy import ensure_node, load_taxonomy
from .categorize import classify_or_review, interpret_with_guard, load_exemplars
from .signals import (
    CATEGORIZE_REQUESTED,
    NODE_CREATED,
    OUTCOME_RECORDED,
    RETRY_REQUESTED,
    REVIEW_RESOLVED,
    CategorizeRequested,
    NodeCreated,
    OutcomeSignal,
    RetryRequested,
    ReviewResolved,
    Signal,
)
from .substrate import StepContext

type Dispatch = Callable[[Signal], None]

_MANUAL_CONFIDENCE = 1.0

_logger = get_logger("expense_triage.workflows.review")


@dataclass(frozen=True, slots=True)
class ReviewResolution:
    review_item_id: str
    transaction_id: str
    batch_id: str
    resolved_as: str
    node_id: str | None = None
    created_node_id: str | None = None
    child_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class SplitResult:
    parent_id: str
    child_ids: tuple[str, ...]
    # True when an identical split already existed and no rows were written.
    replayed: bool = False
    resolved_review_item_id: str | None = None


@dataclass(frozen=True, slots=True)
class ReviewEntry:
    item: ReviewItem
    transaction: Transaction | None


def _categorized_signals(item: ReviewItem) -> list[Signal]:
    return [
        OutcomeSignal(
            batch_id=item.batch_id, transaction_id=item.transaction_id, kind="categorized"
        ).to_signal(OUTCOME_RECORDED),
        ReviewResolved(
            review_item_id=item.id,
            transaction_id=item.transaction_id,
            batch_id=item.batch_id,
            resolved_as="categorized",
        ).to_signal(REVIEW_RESOLVED),
    ]


def _emit(dispatch: Dispatch, signals: Sequence[Signal]) -> None:
    for s in signals:
        dispatch(s)


# ---- Reads ---------------------------------------------------------------------


def list_review_queue(
    session: Session,
    *,
    batch_id: str | None = None,
    reasons: Sequence[str] | None = None,
) -> list[ReviewEntry]:
    """Pending review items, oldest first, each paired with its transaction."""

    return [
        ReviewEntry(item=item, transaction=get_transaction(session, item.transaction_id))
        for item in list_pending(session, reasons=reasons, batch_id=batch_id)
    ]


# ---- Human operations ----------------------------------------------------------


def create_taxonomy_node(
    *,
    name: str,
    description: str | None,
    parent_id: str | None,
    database_url: str,
    dispatch: Dispatch,
) -> tuple[TaxonomyNode, bool]:
    """Create a node through the guard; ``taxonomy/node.created`` fires only on insert."""

    with session_scope(database_url=database_url) as s:
        node, created = ensure_node(s, name=name, description=description, parent_id=parent_id)
    if created:
        dispatch(
            NodeCreated(node_id=node.id, name=node.name, parent_id=node.parent_id).to_signal(
                NODE_CREATED
            )
        )
    return node, created


def split_transaction(
    request: SplitRequest,
    *,
    database_url: str,
    dispatch: Dispatch,
    settings: TriageSettings,
) -> SplitResult:
    """Split ``request.parent_id`` into child transactions.

    Rules
    -----
    - Children cannot be split again and a categorized parent cannot be split.
    - Amounts must sum to the parent's within ``settings.split_tolerance``
      (after the itemized-receipt residual rule when requested).
    - Replaying the identical split writes no rows (a still-pending parent
      item is resolved); a different split of an already-split parent is
      rejected.

    Accepted splits add the children to the parent's batch, resolve the
    parent's pending review item as ``split`` and request categorization of
    every child.
    """

    with session_scope(database_url=database_url) as s:
        parent = require_transaction(s, request.parent_id)
        planned = plan_children(
            parent,
            request.children,
            itemized_receipt=request.itemized_receipt,
            tolerance=settings.split_tolerance,
        )
        planned_ids = [c.id for c in planned]

        existing = list_children(s, parent.id)
        replayed = bool(existing)
        if replayed:
            if sorted(c.id for c in existing) != sorted(planned_ids):
                raise SplitValidationError(
                    f"Transaction {parent.id} was already split differently"
                )
            _logger.info("split:replay parent_id=%s children=%d", parent.id, len(existing))
        elif get_resolution(s, parent.id) is not None:
            raise SplitValidationError(
                f"Transaction {parent.id} is already categorized and cannot be split"
            )
        else:
            insert_child_transactions(s, planned)
            add_batch_items(s, batch_id=parent.batch_id, count=len(planned))
        item_id = review_item_id(parent.id)
        # A replay still settles a review item left pending by an earlier attempt.
        item = get_review_item(s, item_id)
        resolved = resolve_review_item(s, item_id, resolved_as="split")

    signals: list[Signal] = []
    if not replayed:
        signals.extend(
            CategorizeRequested(batch_id=parent.batch_id, transaction_id=cid).to_signal(
                CATEGORIZE_REQUESTED
            )
            for cid in planned_ids
        )
    if resolved and item is not None:
        signals.append(
            ReviewResolved(
                review_item_id=item_id,
                transaction_id=parent.id,
                batch_id=item.batch_id,
                resolved_as="split",
            ).to_signal(REVIEW_RESOLVED)
        )
    if replayed:
        _emit(dispatch, signals)
        return SplitResult(
            parent_id=parent.id,
            child_ids=tuple(planned_ids),
            replayed=True,
            resolved_review_item_id=item_id if resolved else None,
        )
    _logger.info(
        "split:done parent_id=%s batch_id=%s children=%d review_resolved=%s",
        parent.id,
        parent.batch_id,
        len(planned_ids),
        resolved,
    )
    _emit(dispatch, signals)
    return SplitResult(
        parent_id=parent.id,
        child_ids=tuple(planned_ids),
        resolved_review_item_id=item_id if resolved else None,
    )


def resolve_review(
    request: ReviewResolutionRequest,
    *,
    database_url: str,
    dispatch: Dispatch,
    settings: TriageSettings,
) -> ReviewResolution:
    """Apply a reviewer decision (``nodeId``, ``newNode`` or ``splitChildren``).

    Categorizing writes a ``manual`` Resolution with confidence 1.0 and flips
    the item to ``resolved`` in the same transaction. Raises
    :class:`ResolutionValidationError` when the item is no longer pending.
    """

    if request.split_children:
        with session_scope(database_url=database_url) as s:
            item = require_review_item(s, request.review_item_id)
        if item.status != "pending":
            raise ResolutionValidationError(f"Review item {item.id} is already resolved")
        result = split_transaction(
            SplitRequest(
                parent_id=item.transaction_id,
                children=request.split_children,
                itemized_receipt=request.itemized_receipt,
            ),
            database_url=database_url,
            dispatch=dispatch,
            settings=settings,
        )
        return ReviewResolution(
            review_item_id=item.id,
            transaction_id=item.transaction_id,
            batch_id=item.batch_id,
            resolved_as="split",
            child_ids=result.child_ids,
        )

    created_node: TaxonomyNode | None = None
    with session_scope(database_url=database_url) as s:
        item = require_review_item(s, request.review_item_id)
        if item.status != "pending":
            raise ResolutionValidationError(f"Review item {item.id} is already resolved")
        if request.new_node is not None:
            node, created = ensure_node(
                s,
                name=request.new_node.name,
                description=request.new_node.description,
                parent_id=request.new_node.parent_id,
            )
            node_id = node.id
            created_node = node if created else None
        else:
            assert request.node_id is not None
            node_id = request.node_id
        save_resolution(
            s,
            transaction_id=item.transaction_id,
            node_id=node_id,
            confidence=_MANUAL_CONFIDENCE,
            reasoning=request.reasoning or "Resolved by reviewer",
            source="manual",
        )
        if not resolve_review_item(s, item.id, resolved_as="categorized"):
            raise ResolutionValidationError(
                f"Review item {item.id} was resolved concurrently"
            )

    signals = _categorized_signals(item)
    if created_node is not None:
        signals.append(
            NodeCreated(
                node_id=created_node.id, name=created_node.name, parent_id=created_node.parent_id
            ).to_signal(NODE_CREATED)
        )
    _logger.info(
        "review:resolved review_item_id=%s transaction_id=%s node_id=%s new_node=%s",
        item.id,
        item.transaction_id,
        node_id,
        created_node is not None,
    )
    _emit(dispatch, signals)
    return ReviewResolution(
        review_item_id=item.id,
        transaction_id=item.transaction_id,
        batch_id=item.batch_id,
        resolved_as="categorized",
        node_id=node_id,
        created_node_id=created_node.id if created_node is not None else None,
    )


def request_retry(review_item_id_: str, *, database_url: str, dispatch: Dispatch) -> None:
    """Queue a re-classification of one pending review item."""

    with session_scope(database_url=database_url) as s:
        item = require_review_item(s, review_item_id_)
    if item.status != "pending":
        raise ResolutionValidationError(f"Review item {item.id} is already resolved")
    dispatch(RetryRequested(review_item_id=item.id).to_signal(RETRY_REQUESTED))


# ---- Re-classification -----------------------------------------------------------


def reevaluate_item(
    item_id: str,
    *,
    database_url: str,
    classifier: Classifier,
    settings: TriageSettings,
) -> list[Signal]:
    """Re-run classification for one pending item; return the signals to emit.

    A confident ``categorize`` resolves the item as ``retryAuto``. Any other
    answer replaces the stored suggestion and bumps ``retry_count``. Classifier
    errors are logged and leave the item pending.
    """

    with session_scope(database_url=database_url) as s:
        if not mark_retrying(s, item_id):
            _logger.info("retry:skip_not_pending review_item_id=%s", item_id)
            return []

    with session_scope(database_url=database_url) as s:
        item = require_review_item(s, item_id)
        tx = require_transaction(s, item.transaction_id)
        taxonomy = load_taxonomy(s)
        exemplars = load_exemplars(s, tx, settings)
        res = get_resolution(s, tx.id)
        annotation = res.annotation if res is not None else None

    try:
        outcome = classify_or_review(classifier, tx, taxonomy, exemplars, annotation)
    except ClassifierError as e:
        _logger.warning(
            "retry:classifier_error review_item_id=%s error=%s message=%s",
            item_id,
            e.__class__.__name__,
            e,
        )
        with session_scope(database_url=database_url) as s:
            clear_retrying(s, item_id)
        return []

    decision = interpret_with_guard(
        outcome, tx, taxonomy, database_url=database_url, settings=settings
    )

    with session_scope(database_url=database_url) as s:
        if decision.kind == "categorized":
            assert decision.node_id is not None and decision.confidence is not None
            if not resolve_review_item(s, item_id, resolved_as="categorized"):
                _logger.info("retry:lost_to_reviewer review_item_id=%s", item_id)
                return []
            save_resolution(
                s,
                transaction_id=tx.id,
                node_id=decision.node_id,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
                source="retryAuto",
            )
            _logger.info(
                "retry:resolved review_item_id=%s node_id=%s confidence=%.2f",
                item_id,
                decision.node_id,
                decision.confidence,
            )
            return _categorized_signals(item)

        suggestion = decision.suggestion or Suggestion(reasoning=decision.reasoning or None)
        update_suggestion(s, item_id, suggestion)
    _logger.info(
        "retry:still_pending review_item_id=%s reason=%s retry_count=%d",
        item_id,
        decision.reason,
        item.retry_count + 1,
    )
    return []


# ---- Durable handlers ------------------------------------------------------------


def cascade_on_node_created(
    ctx: StepContext,
    *,
    database_url: str,
    classifier: Classifier,
    settings: TriageSettings,
) -> int:
    """Re-classify taxonomy-related review items after ``taxonomy/node.created``."""

    created = NodeCreated.model_validate(ctx.event.data)

    def _candidates() -> list[str]:
        with session_scope(database_url=database_url) as s:
            return [i.id for i in list_pending(s, reasons=CASCADE_REASONS)]

    item_ids = ctx.run("list-candidates", _candidates)
    resolved = 0
    for item_id in item_ids:
        signals = ctx.run(
            f"reevaluate:{item_id}",
            lambda item_id=item_id: reevaluate_item(
                item_id, database_url=database_url, classifier=classifier, settings=settings
            ),
        )
        if signals:
            resolved += 1
            ctx.send(f"emit:{item_id}", signals)
    _logger.info(
        "cascade:done node_id=%s candidates=%d resolved=%d",
        created.node_id,
        len(item_ids),
        resolved,
    )
    return resolved


def retry_requested_item(
    ctx: StepContext,
    *,
    database_url: str,
    classifier: Classifier,
    settings: TriageSettings,
) -> bool:
    """Durable handler for ``review/retry.requested``."""

    req = RetryRequested.model_validate(ctx.event.data)
    signals = ctx.run(
        "reevaluate",
        lambda: reevaluate_item(
            req.review_item_id, database_url=database_url, classifier=classifier, settings=settings
        ),
    )
    if signals:
        ctx.send("emit", signals)
    return bool(signals)


__all__ = [
    "ReviewEntry",
    "ReviewResolution",
    "SplitResult",
    "cascade_on_node_created",
    "create_taxonomy_node",
    "list_review_queue",
    "reevaluate_item",
    "request_retry",
    "resolve_review",
    "retry_requested_item",
    "split_transaction",
]
