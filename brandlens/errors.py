class EmbeddingProviderError(Exception):
    """Base class for failures talking to the embedding provider."""


class EmbeddingRateLimitError(EmbeddingProviderError):
    """The provider answered with a rate limit or quota error."""


class EmbeddingNetworkError(EmbeddingProviderError):
    """The provider could not be reached, timed out, or failed server side."""


class MalformedEmbeddingError(EmbeddingProviderError):
    """The provider answered, but not with one usable vector."""


class EmbeddingRequestError(EmbeddingProviderError):
    """The provider rejected the request itself."""


# Only these are worth backing off and trying again
RETRYABLE_ERRORS: tuple[type[EmbeddingProviderError], ...] = (
    EmbeddingRateLimitError,
    EmbeddingNetworkError,
)


class EmbeddingModelMismatchError(Exception):
    pass


class InvalidQueryError(ValueError):
    pass


class BrandNotFoundError(Exception):
    def __init__(self, brand_id: int):
        super().__init__(f"brand not found: {brand_id}")
        self.brand_id = brand_id


class SearchError(Exception):
    pass


class SearchTimeoutError(SearchError):
    pass
