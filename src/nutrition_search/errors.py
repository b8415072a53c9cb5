"""Exception taxonomy for the nutrition query pipeline."""

from __future__ import annotations


class NutritionSearchError(RuntimeError):
    """Base class for every error raised by the pipeline."""


class InvalidRequest(NutritionSearchError, ValueError):
    """Raised when the caller sent a request the pipeline cannot run."""


class RateLimited(NutritionSearchError):
    """Raised when a client has used up its admission window."""

    def __init__(self, limit: int, retry_after: int) -> None:
        super().__init__(f"Rate limit of {limit} requests exceeded; retry after {retry_after}s")
        self.limit = limit
        self.retry_after = retry_after


class UpstreamError(NutritionSearchError):
    """Raised when an external collaborator fails."""


class UpstreamTimeout(UpstreamError):
    """Raised when an external call exceeded its timeout."""


class EmbeddingUnavailable(UpstreamError):
    """Raised when the embedding provider errors or returns no vector."""


class RetrievalUnavailable(UpstreamError):
    """Raised when the record store cannot be queried."""


class RerankUnavailable(UpstreamError):
    """Raised when the reranker fails; there is no unranked fallback."""


class ComposerEmpty(UpstreamError):
    """Raised when the text-generation provider returns no prose."""


class ProductNotFound(NutritionSearchError, LookupError):
    """Raised by the rule engine when there is no base record to adjust."""


class AddOnLimitExceeded(NutritionSearchError, ValueError):
    """Raised under the ``reject`` add-on policy when too many add-ons are requested."""

    def __init__(self, family: str, requested: int, limit: int) -> None:
        super().__init__(f"{family} allows at most {limit} add-ons ({requested} requested)")
        self.family = family
        self.requested = requested
        self.limit = limit
