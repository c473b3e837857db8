"""
Error taxonomy for the indexing and retrieval pipeline.

All pipeline exceptions inherit from RagIndexError. Structurally invalid
input raises before any I/O; provider failures during indexing are reported
in the IndexReport instead of being raised.
"""

from __future__ import annotations

from typing import Any


class RagIndexError(Exception):
    """Base class for all pipeline exceptions."""

    pass


class ValidationError(RagIndexError, ValueError):
    """Bad input: empty document, malformed chunk params, bad top-k, etc."""

    pass


class ProviderError(RagIndexError):
    """An embedding, vector-store or relevance-judge call failed."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """A provider call exceeded its timeout (not the same as cancellation)."""

    pass


class DimensionMismatchError(RagIndexError):
    """A vector's length disagrees with the dimension of its index."""

    def __init__(
        self,
        message: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OperationCancelledError(RagIndexError):
    """
    The caller's cancel signal fired while an operation was in progress.

    `partial` holds whatever the operation had produced before it stopped
    (an IndexReport for indexing, an EmbeddingBatchResult for embedding).
    """

    def __init__(self, message: str = "operation cancelled", *, partial: Any = None) -> None:
        super().__init__(message)
        self.partial = partial


class EmbeddingRequiredError(RagIndexError):
    """Raised when the caller required embeddings and some were not produced."""

    def __init__(self, message: str, *, report: Any = None) -> None:
        super().__init__(message)
        self.report = report
