"""Runtime settings for the triage pipeline.

Values come from keyword arguments (tests, embedding applications) or from
``EXPENSE_TRIAGE_*`` environment variables via :meth:`TriageSettings.from_env`.
The CLI loads a ``.env`` file with python-dotenv before reading them.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal

# Counterparty labels that hide the real merchant (marketplaces, wallets and
# peer-to-peer transfers). Matched as case-insensitive substrings.
DEFAULT_VAGUE_IDENTIFIERS: tuple[str, ...] = (
    "amazon",
    "venmo",
    "paypal",
    "cash app",
    "zelle",
    "apple pay",
    "google pay",
    "square",
)


@dataclass(frozen=True, slots=True)
class TriageSettings:
    confidence_threshold: float = 0.70
    # Confidence assumed when a categorize outcome omits one.
    default_confidence: float = 0.5
    # Confidence attached to a proposal rewritten onto an existing node.
    duplicate_suggestion_confidence: float = 0.8
    vague_identifiers: tuple[str, ...] = DEFAULT_VAGUE_IDENTIFIERS
    exemplar_limit: int = 5
    merchant_edit_bound: int = 5
    description_edit_bound: int = 10
    classifier_max_attempts: int = 5
    throttle_limit: int = 2
    throttle_period_sec: float = 15.0
    retry_throttle_limit: int = 1
    retry_throttle_period_sec: float = 5.0
    split_tolerance: Decimal = Decimal("0.01")
    model: str = "gpt-5"
    # Substrate worker threads; 0 runs every handler inline on the dispatching thread.
    workers: int = 4

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> TriageSettings:
        """Build settings from ``EXPENSE_TRIAGE_*`` variables, falling back to defaults."""

        src = os.environ if env is None else env
        kwargs: dict[str, object] = {}

        def _get(name: str) -> str | None:
            raw = src.get(f"EXPENSE_TRIAGE_{name}")
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        if (v := _get("CONFIDENCE_THRESHOLD")) is not None:
            kwargs["confidence_threshold"] = float(v)
        if (v := _get("VAGUE_IDENTIFIERS")) is not None:
            kwargs["vague_identifiers"] = tuple(
                p.strip().lower() for p in v.split(",") if p.strip()
            )
        if (v := _get("EXEMPLAR_LIMIT")) is not None:
            kwargs["exemplar_limit"] = int(v)
        if (v := _get("MAX_ATTEMPTS")) is not None:
            kwargs["classifier_max_attempts"] = int(v)
        if (v := _get("THROTTLE_LIMIT")) is not None:
            kwargs["throttle_limit"] = int(v)
        if (v := _get("THROTTLE_PERIOD_SEC")) is not None:
            kwargs["throttle_period_sec"] = float(v)
        if (v := _get("MODEL")) is not None:
            kwargs["model"] = v
        if (v := _get("WORKERS")) is not None:
            kwargs["workers"] = int(v)

        settings = cls(**kwargs)  # type: ignore[arg-type]
        if not 0.0 <= settings.confidence_threshold <= 1.0:
            raise ValueError("EXPENSE_TRIAGE_CONFIDENCE_THRESHOLD must be within [0, 1]")
        if settings.classifier_max_attempts < 1:
            raise ValueError("EXPENSE_TRIAGE_MAX_ATTEMPTS must be >= 1")
        if settings.workers < 0:
            raise ValueError("EXPENSE_TRIAGE_WORKERS must be >= 0")
        return settings


__all__ = ["DEFAULT_VAGUE_IDENTIFIERS", "TriageSettings"]
