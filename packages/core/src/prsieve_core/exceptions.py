"""Exception hierarchy for the review core."""

from __future__ import annotations

from typing import Any


class PrsieveError(Exception):
    """Base class for every error raised by prsieve."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ReviewInputError(PrsieveError):
    """The caller supplied nothing reviewable (e.g. an empty diff)."""


class AnalyzerError(PrsieveError):
    """The AI provider call failed after all retry attempts."""

    def __init__(self, message: str, provider: str | None = None, **kwargs):
        details = kwargs.get("details", {})
        if provider:
            details["provider"] = provider
        super().__init__(message, details, kwargs.get("original_error"))
        self.provider = provider


class InsufficientBudgetError(PrsieveError):
    """A batch could not reserve its token estimate from the shared budget."""

    def __init__(self, batch_index: int, requested: int, available: int):
        super().__init__(
            f"Insufficient token budget for batch {batch_index}: need {requested}, available {available}",
            {"batch_index": batch_index, "requested": requested, "available": available},
        )
        self.batch_index = batch_index


class BatchExecutionError(PrsieveError):
    """A batch failed while the stop-all failure policy is active."""

    def __init__(self, batch_index: int, message: str, original_error: Exception | None = None):
        super().__init__(f"Batch {batch_index} failed: {message}", {"batch_index": batch_index}, original_error)
        self.batch_index = batch_index


class SimilarityUnavailableError(PrsieveError):
    """The similarity scorer could not produce a usable answer."""
