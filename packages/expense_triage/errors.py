"""Exception hierarchy for the triage pipeline.

Error classes map onto how the pipeline reacts to them:

- ``ValidationError`` subclasses are raised synchronously before any state is
  mutated (bad split sums, malformed resolution requests, invalid names).
- ``NotFoundError`` subclasses signal a missing row for a caller-supplied id.
- ``TransientClassifierError`` is the only error the execution substrate
  retries; ``ClassifierOutputError`` is permanent and is converted into a
  review outcome by the classification workflow.

Anything deriving from ``NonRetriableError`` fails a durable function on the
first attempt.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for all errors raised by ``expense_triage``."""


class NonRetriableError(TriageError):
    """Failure that the execution substrate must not retry."""


class ValidationError(NonRetriableError, ValueError):
    pass


class SplitValidationError(ValidationError):
    pass


class ResolutionValidationError(ValidationError):
    pass


class TaxonomyValidationError(ValidationError):
    pass


class NotFoundError(NonRetriableError, LookupError):
    pass


class TransactionNotFoundError(NotFoundError):
    pass


class ReviewItemNotFoundError(NotFoundError):
    pass


class TaxonomyNodeNotFoundError(NotFoundError):
    pass


class BatchNotFoundError(NotFoundError):
    pass


class ClassifierError(TriageError):
    pass


class TransientClassifierError(ClassifierError):
    """Connectivity, timeout, throttling or 5xx failure talking to the classifier."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ClassifierOutputError(ClassifierError, NonRetriableError):
    """The classifier answered, but the answer could not be interpreted."""


class ClassifierRequestError(ClassifierError, NonRetriableError):
    """The classifier rejected the request outright (4xx other than 429)."""


__all__ = [
    "BatchNotFoundError",
    "ClassifierError",
    "ClassifierOutputError",
    "ClassifierRequestError",
    "NonRetriableError",
    "NotFoundError",
    "ResolutionValidationError",
    "ReviewItemNotFoundError",
    "SplitValidationError",
    "TaxonomyNodeNotFoundError",
    "TaxonomyValidationError",
    "TransactionNotFoundError",
    "TransientClassifierError",
    "TriageError",
    "ValidationError",
]
