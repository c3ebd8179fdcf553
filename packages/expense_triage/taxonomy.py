"""Taxonomy domain helpers and the node de-duplication guard.

Exports
-------
- ``ensure_node(...)``: idempotent node creation keyed by
  ``(lower(name), parent)``. Returns the created or pre-existing node and a
  ``created`` flag; losing a concurrent insert race returns the winner.
- ``find_node(...)``: case-insensitive sibling lookup used by the
  classification workflow to detect duplicate proposals.
- ``normalize_name(...)`` / ``validate_name(...)``: shared name rules.
- ``load_taxonomy(...)``, ``node_path(...)``, ``seed_default_taxonomy(...)``.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from db.models.triage import EtTaxonomyNode
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import TaxonomyNodeNotFoundError, TaxonomyValidationError
from .logging_setup import get_logger
from .models import TaxonomyNode

ROOT_NODE_ID = "0"

# Seeded top level: (id, name, description). Every other node hangs below these.
DEFAULT_TAXONOMY: tuple[tuple[str, str, str], ...] = (
    (
        "1",
        "Fixed Costs",
        "Expenses that individuals cannot change much via their own actions; "
        "think rent, utilities, taxes, etc.",
    ),
    (
        "2",
        "Healthcare",
        "Formal healthcare; think insurance, copays, pharmacy, etc. (not personal "
        "care like supplements or vitamins)",
    ),
    ("3", "Pets", "Expenses for pets; think food, toys, veterinary, etc."),
    (
        "4",
        "Essentials",
        "The basics in life that can't easily be cut back; think groceries, household "
        "items, personal care, subway passes, etc.",
    ),
    (
        "5",
        "Discretionary",
        "Items that could be cut back if needed; experiences like entertainment or "
        "dining out and non-essential purchases like extra clothing or electronics",
    ),
    (
        "6",
        "Vacation",
        "Everything related to vacations; think flights, hotels, rental cars, food "
        "while away, etc.",
    ),
    (
        "7",
        "Investments",
        "Investments where no immediate value is expected; think stocks, retirement "
        "accounts, equity options, etc.",
    ),
    (
        "8",
        "Other",
        "Anything that does not fit into any other category; should almost never be "
        "used when a subcategory fits",
    ),
)

_logger = get_logger("expense_triage.taxonomy")

# ---------------------------
# Name normalization/validation
# ---------------------------

_ALLOWED_RE = re.compile(r"^[A-Za-z0-9 &\-/',.()]+$")


def normalize_name(name: str) -> str:
    """Return a trimmed, single-spaced representation of ``name``.

    Does not change case; comparisons lower-case separately.
    """

    return " ".join(name.strip().split())


@dataclass(frozen=True, slots=True)
class NameValidation:
    ok: bool
    reason: str | None = None


def validate_name(name: str, *, min_len: int = 1, max_len: int = 64) -> NameValidation:
    """Validate a node name.

    Rules
    -----
    - Trim whitespace; enforce length bounds 1..64.
    - Allowed characters: letters, numbers, spaces, and ``& - / ' , . ( )``.
    """

    n = normalize_name(name)
    if len(n) < min_len:
        return NameValidation(False, "Name cannot be empty")
    if len(n) > max_len:
        return NameValidation(False, f"Name must be at most {max_len} characters")
    if not _ALLOWED_RE.match(n):
        return NameValidation(
            False, "Only letters, numbers, spaces, and & - / ' , . ( ) are allowed"
        )
    return NameValidation(True, None)


# ---------------------------
# Queries
# ---------------------------


def _to_node(row: EtTaxonomyNode) -> TaxonomyNode:
    return TaxonomyNode(
        id=row.id,
        name=row.name,
        description=row.description,
        parent_id=row.parent_id,
    )


def _sibling_clause(name: str, parent_id: str | None):
    scope = (
        EtTaxonomyNode.parent_id == parent_id
        if parent_id is not None
        else EtTaxonomyNode.parent_id.is_(None)
    )
    return (func.lower(EtTaxonomyNode.name) == normalize_name(name).lower(), scope)


def find_node(session: Session, *, name: str, parent_id: str | None) -> TaxonomyNode | None:
    """Return the sibling of ``parent_id`` named ``name`` (case-insensitive), if any."""

    row = session.execute(select(EtTaxonomyNode).where(*_sibling_clause(name, parent_id))).scalar()
    return _to_node(row) if row is not None else None


def load_taxonomy(session: Session) -> list[TaxonomyNode]:
    rows = session.execute(
        select(EtTaxonomyNode).order_by(EtTaxonomyNode.created_at, EtTaxonomyNode.id)
    ).scalars()
    return [_to_node(r) for r in rows]


def resolve_parent_id(
    parent_id: str | None, known: Mapping[str, TaxonomyNode] | Sequence[str]
) -> str:
    """Map a proposed parent onto an existing node id, defaulting to the root."""

    if parent_id and parent_id in known:
        return parent_id
    return ROOT_NODE_ID


def node_path(nodes: Sequence[TaxonomyNode], node_id: str) -> str:
    """Return the ``"Root > Parent > Node"`` path for ``node_id`` (empty if unknown)."""

    by_id = {n.id: n for n in nodes}
    parts: list[str] = []
    seen: set[str] = set()
    current = by_id.get(node_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        parts.append(current.name)
        current = by_id.get(current.parent_id) if current.parent_id else None
    return " > ".join(reversed(parts))


# ---------------------------
# Mutations
# ---------------------------


def ensure_node(
    session: Session,
    *,
    name: str,
    description: str | None = None,
    parent_id: str | None = None,
) -> tuple[TaxonomyNode, bool]:
    """Create a node unless a case-insensitive sibling already exists.

    Parameters
    ----------
    session:
        SQLAlchemy session (callers own the transaction scope).
    name:
        Proposed name; normalized and validated before lookup.
    description:
        Optional free-text description stored on a newly created node.
    parent_id:
        Parent node id. ``None`` attaches the node below the synthetic root.

    Returns
    -------
    tuple
        ``(node, created)``. ``created`` is ``False`` when an existing sibling
        was returned, including when a concurrent writer won the insert race.

    Raises
    ------
    TaxonomyValidationError
        When the name fails :func:`validate_name`.
    TaxonomyNodeNotFoundError
        When ``parent_id`` does not exist.
    """

    name_n = normalize_name(name)
    v = validate_name(name_n)
    if not v.ok:
        raise TaxonomyValidationError(f"Invalid taxonomy node name: {v.reason}")

    scope_parent = parent_id or ROOT_NODE_ID
    if session.get(EtTaxonomyNode, scope_parent) is None:
        raise TaxonomyNodeNotFoundError(f"Parent taxonomy node not found: {scope_parent!r}")

    existing = find_node(session, name=name_n, parent_id=scope_parent)
    if existing is not None:
        return existing, False

    row = EtTaxonomyNode(
        id=f"n_{uuid.uuid4().hex[:16]}",
        name=name_n,
        description=(description or "").strip() or None,
        parent_id=scope_parent,
    )
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except IntegrityError:
        # The unique sibling index rejected us: another writer committed the
        # same (name, parent) first. Use theirs.
        winner = find_node(session, name=name_n, parent_id=scope_parent)
        if winner is None:
            raise
        _logger.info(
            "ensure_node:race_lost name=%s parent_id=%s winner_id=%s",
            name_n,
            scope_parent,
            winner.id,
        )
        return winner, False

    _logger.info("ensure_node:created id=%s name=%s parent_id=%s", row.id, name_n, scope_parent)
    return _to_node(row), True


def seed_default_taxonomy(session: Session) -> int:
    """Insert the synthetic root and the default top level when missing.

    Returns the number of nodes inserted.
    """

    inserted = 0
    if session.get(EtTaxonomyNode, ROOT_NODE_ID) is None:
        session.add(
            EtTaxonomyNode(
                id=ROOT_NODE_ID,
                name="Root",
                description="The root category; every other category is nested under it.",
                parent_id=None,
            )
        )
        session.flush()
        inserted += 1
    for node_id, name, description in DEFAULT_TAXONOMY:
        if session.get(EtTaxonomyNode, node_id) is not None:
            continue
        if find_node(session, name=name, parent_id=ROOT_NODE_ID) is not None:
            continue
        session.add(
            EtTaxonomyNode(id=node_id, name=name, description=description, parent_id=ROOT_NODE_ID)
        )
        inserted += 1
    session.flush()
    return inserted


__all__ = [
    "DEFAULT_TAXONOMY",
    "ROOT_NODE_ID",
    "NameValidation",
    "ensure_node",
    "find_node",
    "load_taxonomy",
    "node_path",
    "normalize_name",
    "resolve_parent_id",
    "seed_default_taxonomy",
    "validate_name",
]
