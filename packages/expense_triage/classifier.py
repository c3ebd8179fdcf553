"""Classifier collaborator: protocol and the OpenAI Responses implementation.

Public API:
    - :class:`Classifier` (protocol consumed by the workflows)
    - :class:`OpenAIClassifier`

Error partitioning
------------------
- Timeouts, connection failures and HTTP 429/5xx raise
  :class:`TransientClassifierError`; the execution substrate retries them.
- Other HTTP errors raise :class:`ClassifierRequestError` (never retried).
- A response that is not valid JSON, fails validation, or references an
  unknown node id raises :class:`ClassifierOutputError`; the workflow turns it
  into a review case.

No side effects occur at import time (no client creation, no environment
reads).
"""

from __future__ import annotations

import json
import time
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI
from pydantic import ValidationError as PydanticValidationError

from . import prompting
from .errors import ClassifierOutputError, ClassifierRequestError, TransientClassifierError
from .logging_setup import get_logger
from .models import ClassifierOutcome, Exemplar, TaxonomyNode, Transaction

_MODEL: str = "gpt-5"
_TIMEOUT_SEC: float = 60.0

_logger = get_logger("expense_triage.classifier")


class Classifier(Protocol):
    def classify(
        self,
        transaction: Transaction,
        taxonomy: Sequence[TaxonomyNode],
        exemplars: Sequence[Exemplar],
        annotation: str | None = None,
    ) -> ClassifierOutcome: ...


def _is_retryable(exc: BaseException) -> bool:
    """Return True for timeouts, connection errors, and HTTP 429/5xx."""

    if isinstance(exc, (APITimeoutError, APIConnectionError)):
        return True
    sc = getattr(exc, "status_code", None)
    return isinstance(sc, int) and (sc == 429 or 500 <= sc < 600)


def _extract_response_json_mapping(resp: Any) -> Mapping[str, Any]:
    """Decode the JSON mapping from an OpenAI Responses SDK result.

    - Prefer ``resp.output_text``; fall back to ``resp.output[0].content[0].text``.
    - Raise ``ValueError`` if text cannot be located or JSON decoding fails.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        output = getattr(resp, "output", None)
        first = output[0] if output else None
        content = getattr(first, "content", None)
        if content:
            txt_obj = getattr(content[0], "text", None)
            if isinstance(txt_obj, str):
                text = txt_obj
            else:
                # Some SDKs expose text as an object with a ``value`` string.
                maybe_val = getattr(txt_obj, "value", None)
                if isinstance(maybe_val, str):
                    text = maybe_val
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")

    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("Model output was not valid JSON per the requested schema") from e
    if not isinstance(decoded, Mapping):
        raise ValueError("Model output must be a JSON object")
    return decoded


def parse_outcome(
    decoded: Mapping[str, Any], *, allowed_node_ids: Sequence[str] | set[str]
) -> ClassifierOutcome:
    """Validate a decoded classifier answer against the current taxonomy.

    Raises :class:`ClassifierOutputError` on schema violations or when a
    ``categorize`` answer names a node that does not exist.
    """

    try:
        outcome = ClassifierOutcome.model_validate(dict(decoded))
    except PydanticValidationError as e:
        raise ClassifierOutputError(f"Classifier output failed validation: {e}") from e
    if outcome.action == "categorize" and outcome.node_id not in allowed_node_ids:
        raise ClassifierOutputError(f"Classifier chose unknown node id {outcome.node_id!r}")
    return outcome


class OpenAIClassifier:
    """Single-transaction classifier backed by the OpenAI Responses API.

    Parameters
    ----------
    client:
        Optional pre-built ``OpenAI`` client (tests pass a stub). When omitted
        a client is created lazily on first use and reused.
    model:
        Model name for ``responses.create``.
    confidence_threshold:
        Threshold quoted in the system instructions.
    """

    def __init__(
        self,
        *,
        client: Any | None = None,
        model: str = _MODEL,
        confidence_threshold: float = 0.70,
        timeout: float = _TIMEOUT_SEC,
    ) -> None:
        self._client = client
        self._model = model
        self._threshold = confidence_threshold
        self._timeout = timeout

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = OpenAI(timeout=self._timeout)
        return self._client

    def classify(
        self,
        transaction: Transaction,
        taxonomy: Sequence[TaxonomyNode],
        exemplars: Sequence[Exemplar],
        annotation: str | None = None,
    ) -> ClassifierOutcome:
        user_content = prompting.build_user_content(
            transaction, taxonomy, exemplars, annotation=annotation
        )
        text_cfg = {"format": prompting.build_response_format(taxonomy)}
        client = self._get_client()

        t0 = time.perf_counter()
        try:
            resp = client.responses.create(
                model=self._model,
                instructions=prompting.build_system_instructions(self._threshold),
                input=user_content,
                text=text_cfg,
            )
        except (APITimeoutError, APIConnectionError, APIStatusError) as e:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            _logger.warning(
                "classify:error transaction_id=%s latency_ms=%.2f error=%s",
                transaction.id,
                dt_ms,
                e.__class__.__name__,
            )
            if _is_retryable(e):
                raise TransientClassifierError(
                    f"classifier call failed: {e}", status_code=getattr(e, "status_code", None)
                ) from e
            raise ClassifierRequestError(f"classifier rejected request: {e}") from e

        dt_ms = (time.perf_counter() - t0) * 1000.0
        try:
            decoded = _extract_response_json_mapping(resp)
        except ValueError as e:
            raise ClassifierOutputError(str(e)) from e
        outcome = parse_outcome(decoded, allowed_node_ids={n.id for n in taxonomy})
        _logger.info(
            "classify:done transaction_id=%s action=%s confidence=%s latency_ms=%.2f",
            transaction.id,
            outcome.action,
            outcome.confidence,
            dt_ms,
        )
        return outcome


__all__ = ["Classifier", "OpenAIClassifier", "parse_outcome"]
