"""Prompt construction for single-transaction classification.

This module builds:
- The system instructions for the classifier.
- The user content: the transaction, the full taxonomy tree with node ids,
  similarity-ranked exemplars, and any human annotation.
- The strict ``text.format`` (JSON Schema) object for the OpenAI Responses API.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .models import Exemplar, TaxonomyNode, Transaction
from .taxonomy import node_path

# Raw-field keys whose value is an issuer-provided category hint.
_ISSUER_CATEGORY_KEYS: tuple[str, ...] = ("Category", "category")


def build_system_instructions(confidence_threshold: float) -> str:
    """Return concise system instructions for hierarchical classification."""

    return (
        "You categorize one financial transaction into a hierarchical taxonomy. "
        f"Use action 'categorize' with an existing nodeId when one fits with confidence >= "
        f"{confidence_threshold:.2f}. When no node fits, use 'proposeNode' and describe a new "
        "node (name, description, parentId of an existing node). When the counterparty is too "
        "generic to decide or you are unsure, use 'needsReview'. When a similar historical "
        "transaction is listed, prefer its exact node over a more generic ancestor. "
        "Output JSON only that conforms to the specified schema."
    )


def _render_taxonomy(nodes: Sequence[TaxonomyNode]) -> list[str]:
    children: dict[str | None, list[TaxonomyNode]] = {}
    for n in nodes:
        children.setdefault(n.parent_id, []).append(n)
    for kids in children.values():
        kids.sort(key=lambda n: (n.name.lower(), n.id))

    lines: list[str] = []

    def _walk(parent_id: str | None, depth: int) -> None:
        for n in children.get(parent_id, []):
            desc = f": {n.description}" if n.description else ""
            lines.append(f"{'  ' * depth}- [{n.id}] {n.name}{desc}")
            _walk(n.id, depth + 1)

    _walk(None, 0)
    return lines


def build_user_content(
    transaction: Transaction,
    taxonomy: Sequence[TaxonomyNode],
    exemplars: Sequence[Exemplar],
    *,
    annotation: str | None = None,
) -> str:
    """Build the user message for one transaction.

    - The taxonomy is rendered as an indented tree with ``[id]`` prefixes so
      the model answers with ids, never names.
    - Exemplars are listed most-similar first with their node path.
    """

    lines: list[str] = [
        "TRANSACTION:",
        f"- Date: {transaction.date.isoformat()}",
        f"- Counterparty: {transaction.merchant or '(none)'}",
        f"- Description: {transaction.description or '(none)'}",
        f"- Amount: {transaction.amount:.2f}",
    ]
    raw: Mapping[str, Any] = transaction.raw_fields or {}
    for key in _ISSUER_CATEGORY_KEYS:
        hint = raw.get(key)
        if hint:
            lines.append(f"- Issuer category: {hint} (context from the card issuer)")
            break
    if annotation:
        lines.append(f"- Reviewer note: {annotation}")

    lines.append("")
    lines.append("TAXONOMY:")
    lines.extend(_render_taxonomy(taxonomy))

    if exemplars:
        lines.append("")
        lines.append(
            "SIMILAR PREVIOUSLY CATEGORIZED TRANSACTIONS (use the exact node when similar):"
        )
        for e in exemplars:
            path = node_path(taxonomy, e.taxonomy_node_id) or e.taxonomy_node_id
            lines.append(
                f"- {e.merchant or '(none)'} | {e.description or '(none)'} -> "
                f"[{e.taxonomy_node_id}] {path} (similarity {e.score:.2f})"
            )
    return "\n".join(lines) + "\n"


def build_response_format(
    taxonomy: Sequence[TaxonomyNode],
) -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the strict JSON Schema ``text.format`` object for one outcome.

    ``nodeId`` and ``proposedNode.parentId`` are constrained to the current
    taxonomy ids; unused fields are ``null``.
    """

    ids: list[str] = [i for i in dict.fromkeys(n.id for n in taxonomy) if i]
    if not ids:
        raise ValueError("taxonomy must contain at least one node")
    nullable_ids: list[str | None] = [*ids, None]

    result: ResponseFormatTextJSONSchemaConfigParam = {
        "type": "json_schema",
        "name": "transaction_outcome",
        "schema": {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["categorize", "proposeNode", "needsReview"],
                },
                "nodeId": {"type": ["string", "null"], "enum": nullable_ids},
                "confidence": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
                "reasoning": {"type": "string"},
                "proposedNode": {
                    "anyOf": [
                        {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "description": {"type": "string"},
                                "parentId": {"type": ["string", "null"], "enum": nullable_ids},
                            },
                            "required": ["name", "description", "parentId"],
                            "additionalProperties": False,
                        },
                        {"type": "null"},
                    ]
                },
            },
            "required": ["action", "nodeId", "confidence", "reasoning", "proposedNode"],
            "additionalProperties": False,
        },
        "strict": True,
    }
    return result


__all__ = [
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
]
