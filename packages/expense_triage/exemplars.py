"""Similarity-ranked precedent lookup over previously-resolved transactions.

Scoring
-------
``score = 0.3 * sim(merchant) + 0.7 * sim(description)`` where ``sim`` is
``1.0`` on case-insensitive equality, ``0.8`` when one string contains the
other, else ``max(0, 1 - levenshtein(a, b) / max(len(a), len(b), 1))``. Empty
strings carry no signal and score ``0.0``.

Candidate selection
-------------------
Only transactions with a Resolution are eligible. The database pre-filters on
substring overlap in either direction or a length difference within the edit
bound (a necessary condition for the edit distance bound). Candidates are
capped after ordering by relevance: exact matches first, then containment,
then the smallest length gap. The exact overlap or edit-distance check then
runs in Python before scoring.
"""

from __future__ import annotations

from db.models.triage import EtResolution, EtTransaction
from rapidfuzz.distance import Levenshtein
from sqlalchemy import ColumnElement, and_, case, func, literal, or_, select
from sqlalchemy.orm import Session

from .logging_setup import get_logger
from .models import Exemplar

MERCHANT_WEIGHT: float = 0.3
DESCRIPTION_WEIGHT: float = 0.7

# Pre-filtered rows considered per lookup before exact filtering, most relevant first.
_CANDIDATE_CAP: int = 500

_logger = get_logger("expense_triage.exemplars")


def _norm(s: str | None) -> str:
    return " ".join((s or "").split()).lower()


def similarity(a: str | None, b: str | None) -> float:
    """Return the blended-score component for one field pair (see module docs)."""

    x, y = _norm(a), _norm(b)
    if not x or not y:
        return 0.0
    if x == y:
        return 1.0
    if x in y or y in x:
        return 0.8
    dist = Levenshtein.distance(x, y)
    return max(0.0, 1.0 - dist / max(len(x), len(y), 1))


def blended_score(
    merchant_a: str | None,
    description_a: str | None,
    merchant_b: str | None,
    description_b: str | None,
) -> float:
    return MERCHANT_WEIGHT * similarity(merchant_a, merchant_b) + DESCRIPTION_WEIGHT * similarity(
        description_a, description_b
    )


def _is_near(a: str, b: str, bound: int) -> bool:
    if not a or not b:
        return False
    if a in b or b in a:
        return True
    return Levenshtein.distance(a, b, score_cutoff=bound) <= bound


def _field_prefilter(column, needle: str, bound: int) -> ColumnElement[bool] | None:
    if not needle:
        return None
    lowered = func.lower(column)
    return and_(
        func.length(column) > 0,
        or_(
            lowered.contains(needle, autoescape=True),
            literal(needle).contains(lowered),
            func.abs(func.length(column) - len(needle)) <= bound,
        ),
    )


def _field_relevance(column, needle: str) -> list[ColumnElement]:
    """Sort keys for one field: exact match, then containment, then length gap."""

    text = func.coalesce(column, "")
    lowered = func.lower(text)
    rank = case(
        (func.length(text) == 0, 2),
        (lowered == needle, 0),
        (or_(lowered.contains(needle, autoescape=True), literal(needle).contains(lowered)), 1),
        else_=2,
    )
    return [rank, func.abs(func.length(text) - len(needle))]


def find_exemplars(
    session: Session,
    *,
    merchant: str | None,
    description: str | None,
    limit: int = 5,
    exclude_transaction_id: str | None = None,
    merchant_edit_bound: int = 5,
    description_edit_bound: int = 10,
) -> list[Exemplar]:
    """Return up to ``limit`` resolved transactions most similar to the input.

    Results are ordered by descending blended score, ties broken by transaction
    id for determinism. ``exclude_transaction_id`` drops the item being
    classified (it may carry a Resolution from an earlier ingestion).
    """

    m, d = _norm(merchant), _norm(description)
    clauses = [
        c
        for c in (
            _field_prefilter(EtTransaction.merchant, m, merchant_edit_bound),
            _field_prefilter(EtTransaction.description, d, description_edit_bound),
        )
        if c is not None
    ]
    if not clauses or limit <= 0:
        return []

    stmt = (
        select(
            EtTransaction.id,
            EtTransaction.merchant,
            EtTransaction.description,
            EtResolution.taxonomy_node_id,
        )
        .join(EtResolution, EtResolution.transaction_id == EtTransaction.id)
        .where(or_(*clauses))
    )
    if exclude_transaction_id is not None:
        stmt = stmt.where(EtTransaction.id != exclude_transaction_id)
    # Description rank sorts ahead of merchant rank.
    d_keys = _field_relevance(EtTransaction.description, d) if d else []
    m_keys = _field_relevance(EtTransaction.merchant, m) if m else []
    stmt = stmt.order_by(*d_keys[:1], *m_keys[:1], *d_keys[1:], *m_keys[1:], EtTransaction.id)
    stmt = stmt.limit(_CANDIDATE_CAP)

    scored: list[Exemplar] = []
    for tx_id, cand_merchant, cand_description, node_id in session.execute(stmt):
        cm, cd = _norm(cand_merchant), _norm(cand_description)
        if not (_is_near(m, cm, merchant_edit_bound) or _is_near(d, cd, description_edit_bound)):
            continue
        scored.append(
            Exemplar(
                transaction_id=tx_id,
                merchant=cand_merchant or "",
                description=cand_description or "",
                taxonomy_node_id=node_id,
                score=blended_score(m, d, cm, cd),
            )
        )

    scored.sort(key=lambda e: (-e.score, e.transaction_id))
    _logger.debug(
        "find_exemplars:done candidates=%d returned=%d",
        len(scored),
        min(limit, len(scored)),
    )
    return scored[:limit]


__all__ = [
    "DESCRIPTION_WEIGHT",
    "MERCHANT_WEIGHT",
    "blended_score",
    "find_exemplars",
    "similarity",
]
