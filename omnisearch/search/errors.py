"""
Search Error Taxonomy

Only the embedding generator retries. Every other component converts its
faults into a per-source status; AllSourcesFailed is the single error that
reaches the caller.
"""

from typing import List, Optional


class SearchError(Exception):
    """Base class for unified search errors."""
    pass


class SearchValidationError(SearchError):
    """Raised for a missing/empty query or invalid filters. Never retried."""
    pass


class EmbeddingProviderError(SearchError):
    """Raised when embedding generation fails after all retries."""
    pass


class EmbeddingDimensionMismatch(SearchError):
    """Raised when a vector's dimension disagrees with the active model."""

    def __init__(self, expected: int, actual: int, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class SearchBackendUnavailable(SearchError):
    """Raised when the internal content store cannot be queried."""
    pass


class TokenLookupError(SearchError):
    """Raised when the token store cannot be read (distinct from 'no token')."""
    pass


class AdapterError(SearchError):
    """Raised when an external provider call fails."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class AdapterTimeout(AdapterError):
    """Raised when an adapter runs past the shared deadline."""

    def __init__(self, source: str):
        super().__init__(source, "deadline exceeded")


class AdapterSkipped(SearchError):
    """A source deliberately contributed nothing (e.g. user not signed in)."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} skipped: {reason}")


class AllSourcesFailed(SearchError):
    """Raised when every enabled source errored or timed out."""

    def __init__(self, per_source_stats: List, message: str = "All search sources failed"):
        self.per_source_stats = per_source_stats
        super().__init__(message)
