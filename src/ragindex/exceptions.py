"""
Custom exceptions for the indexing pipeline.

Only ConfigurationError is fatal. Embedding errors are retried or degraded
to None placeholders by the client, and persistence errors are logged by
the bulk-commit path.
"""

from typing import Optional


class RagIndexError(Exception):
    """Base exception for all ragindex errors."""
    pass


class ConfigurationError(RagIndexError):
    """
    Missing or invalid configuration.

    Raised when:
    - The embedding API token or endpoint is not set
    - ask() is called without a chat model
    """
    pass


class EmbeddingError(RagIndexError):
    """Base class for failures talking to the embedding endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(EmbeddingError):
    """
    Failure that may succeed on retry.

    Raised when:
    - The request times out
    - The connection is refused or reset
    - The endpoint answers 5xx
    """
    pass


class RateLimitError(TransientNetworkError):
    """The endpoint answered 429; retried with the same backoff."""
    pass


class PayloadTooLargeError(EmbeddingError):
    """The endpoint answered 413; the caller should send a smaller batch."""
    pass


class ResponseFormatError(EmbeddingError):
    """The endpoint answered 200 with a body of unexpected shape."""
    pass


class EmbeddingAPIError(EmbeddingError):
    """Any other non-200 answer; carries the endpoint's error message."""
    pass


class PersistenceError(RagIndexError):
    """A write to the vector store failed."""
    pass
