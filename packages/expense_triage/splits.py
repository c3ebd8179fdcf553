"""Split validation and child-transaction planning.

A split decomposes one parent transaction into children whose amounts must sum
to the parent's amount within a one-cent tolerance. For itemized receipts that
omit shipping or tax, :func:`allocate_receipt_residual` first moves the whole
residual onto the single most expensive child.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from .errors import SplitValidationError
from .identity import derive_child_transaction_id, normalize_amount, normalize_text
from .models import ChildSpec, Transaction

SPLIT_TOLERANCE = Decimal("0.01")


def _fmt(d: Decimal) -> str:
    return f"${d:.2f}"


def validate_split_sums(
    parent_amount: Decimal,
    amounts: Sequence[Decimal],
    *,
    tolerance: Decimal = SPLIT_TOLERANCE,
) -> Decimal:
    """Return the child sum, or raise when it differs from the parent beyond ``tolerance``.

    The error message carries the computed sum, the parent amount and the
    delta so it can be surfaced to the caller verbatim.
    """

    if not amounts:
        raise SplitValidationError("A split requires at least one child")
    parent = normalize_amount(parent_amount)
    total = sum((normalize_amount(a) for a in amounts), Decimal("0.00"))
    delta = total - parent
    if abs(delta) > tolerance:
        raise SplitValidationError(
            f"Sub-expense amounts ({_fmt(total)}) do not sum to parent expense amount "
            f"({_fmt(parent)}). Difference: {_fmt(abs(delta))}"
        )
    return total


def allocate_receipt_residual(
    parent_amount: Decimal, children: Sequence[ChildSpec]
) -> list[ChildSpec]:
    """Add ``parent - sum(children)`` to the most expensive child.

    The first child with the largest absolute amount wins ties. Returns new
    ``ChildSpec`` objects; the input is not mutated.
    """

    if not children:
        return []
    parent = normalize_amount(parent_amount)
    amounts = [normalize_amount(c.amount) for c in children]
    residual = parent - sum(amounts, Decimal("0.00"))
    out = [c.model_copy(update={"amount": a}) for c, a in zip(children, amounts, strict=True)]
    if residual == 0:
        return out
    top = max(range(len(amounts)), key=lambda i: (abs(amounts[i]), -i))
    out[top] = out[top].model_copy(update={"amount": amounts[top] + residual})
    return out


def plan_children(
    parent: Transaction,
    children: Sequence[ChildSpec],
    *,
    itemized_receipt: bool = False,
    tolerance: Decimal = SPLIT_TOLERANCE,
) -> list[Transaction]:
    """Validate a split of ``parent`` and return the child transactions to persist.

    Children inherit the parent's batch and date and, unless overridden, its
    counterparty label. Raises :class:`SplitValidationError` (with no side
    effects) when the parent is itself a child or the sums do not match.
    """

    if parent.is_child:
        raise SplitValidationError(
            f"Transaction {parent.id} is already a split child and cannot be split again"
        )
    specs = (
        allocate_receipt_residual(parent.amount, children) if itemized_receipt else list(children)
    )
    validate_split_sums(parent.amount, [c.amount for c in specs], tolerance=tolerance)

    planned: list[Transaction] = []
    for position, spec in enumerate(specs):
        label = normalize_text(spec.counterparty_label) or parent.merchant
        description = normalize_text(spec.description)
        amount = normalize_amount(spec.amount)
        planned.append(
            Transaction(
                id=derive_child_transaction_id(parent.id, position, description, amount, label),
                batch_id=parent.batch_id,
                date=parent.date,
                amount=amount,
                merchant=label,
                description=description,
                raw_fields={
                    "description": description,
                    "amount": f"{amount:.2f}",
                    "counterpartyLabel": label,
                    "splitPosition": position,
                },
                parent_id=parent.id,
                is_child=True,
            )
        )
    return planned


__all__ = [
    "SPLIT_TOLERANCE",
    "allocate_receipt_residual",
    "plan_children",
    "validate_split_sums",
]
