"""Content-addressed transaction identifiers.

Identity is a SHA-256 digest over the normalized ``(date, description, amount,
counterparty label)`` tuple, so re-ingesting the same export is an upsert and
any differing field yields a different id. There is no fuzzy matching here.
"""

from __future__ import annotations

import hashlib
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# ASCII unit separator; cannot appear in whitespace-collapsed field text.
_FIELD_SEP = "\x1f"


def normalize_text(value: Any) -> str:
    """Collapse internal whitespace runs to single spaces and trim."""

    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_amount(value: Any) -> Decimal:
    """Return ``value`` as a ``Decimal`` quantized to cents (ROUND_HALF_UP)."""

    if isinstance(value, float):
        value = repr(value)
    try:
        d = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def normalize_date(value: Any) -> date:
    """Parse ``value`` into a ``date`` (accepts ``date``/``datetime`` or ISO ``YYYY-MM-DD``)."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = normalize_text(value)
    try:
        return date.fromisoformat(s[:10])
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e


def _digest(parts: list[str]) -> str:
    return hashlib.sha256(_FIELD_SEP.join(parts).encode("utf-8")).hexdigest()


def derive_transaction_id(
    date_value: Any,
    description: Any,
    amount: Any,
    counterparty_label: Any,
) -> str:
    """Return the 64-char hex id for a transaction's identifying fields.

    Examples
    --------
    >>> a = derive_transaction_id("2025-01-02", "Latte  ", "4.5", "Blue Bottle")
    >>> b = derive_transaction_id("2025-01-02", " Latte", 4.50, "Blue  Bottle")
    >>> a == b
    True
    """

    return _digest(
        [
            normalize_date(date_value).isoformat(),
            normalize_text(description),
            f"{normalize_amount(amount):.2f}",
            normalize_text(counterparty_label),
        ]
    )


def derive_child_transaction_id(
    parent_id: str,
    position: int,
    description: Any,
    amount: Any,
    counterparty_label: Any,
) -> str:
    """Return a stable id for the ``position``-th child of a split.

    The parent id and position participate so that two identical line items on
    one receipt stay distinct, while replaying the same split reproduces the
    same ids.
    """

    return _digest(
        [
            "child",
            parent_id,
            str(position),
            normalize_text(description),
            f"{normalize_amount(amount):.2f}",
            normalize_text(counterparty_label),
        ]
    )


__all__ = [
    "derive_child_transaction_id",
    "derive_transaction_id",
    "normalize_amount",
    "normalize_date",
    "normalize_text",
]
