import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TypeAlias

import structlog
from ddtrace.trace import tracer

from .errors import MalformedEmbeddingError

logger = structlog.get_logger()

EmbeddingVector: TypeAlias = list[float]


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[list[float]]
    usage: Usage


def has_usable_embedding(vector: Sequence[float] | None) -> bool:
    """
    A missing vector and an all-zero vector both mean "needs embedding".
    """
    if vector is None or len(vector) == 0:
        return False
    return any(v != 0 for v in vector)


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    Subclasses talk to a provider in `call_embed_api` and translate its
    failures into the `EmbeddingProviderError` hierarchy. `embed` validates
    what comes back, so callers only ever see a vector of the configured
    dimension or an exception.
    """

    model: str
    dimensions: int

    @abstractmethod
    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        """
        Call the embed API with a single input
        :param text:
        :return:
        """

    def prepare(self, text: str) -> str:
        """
        Hook to adapt the input before it is sent, e.g. to truncate it to
        the model's context window.
        """
        return text

    def validate(self, response: EmbeddingResponse) -> EmbeddingVector:
        if len(response.embeddings) != 1:
            raise MalformedEmbeddingError(
                f"expected 1 embedding, got {len(response.embeddings)}"
            )
        vector = response.embeddings[0]
        if len(vector) != self.dimensions:
            raise MalformedEmbeddingError(
                f"expected {self.dimensions} dimensions, got {len(vector)}"
            )
        if not has_usable_embedding(vector):
            raise MalformedEmbeddingError("provider returned an all-zero embedding")
        return vector

    async def embed(self, text: str) -> EmbeddingVector:
        """
        Embeds a single text into a vector.

        Raises:
            EmbeddingProviderError: a subclass describing why the provider
            could not produce a usable vector.
        """
        embedding_stats = EmbeddingStats()
        with tracer.trace("embeddings.embed"):
            current_span = tracer.current_span()
            if current_span:
                current_span.set_tag("embeddings.model", self.model)
            start_time = time.perf_counter()
            response = await self.call_embed_api(self.prepare(text))
            request_duration = time.perf_counter() - start_time
            if current_span:
                current_span.set_metric(
                    "embeddings.embedder.create_request.time.seconds",
                    request_duration,
                )
            await logger.adebug(
                f"embedding request ended after: {request_duration} seconds. "
                f"Tokens usage: {response.usage}"
            )
            embedding_stats.add_request_time(request_duration)
            return self.validate(response)


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the environment variable holding the key.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        if self._api_key_ is None:
            raise ValueError("API key not set")
        return self._api_key_

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """
        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if api_key is None:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key


class EmbeddingStats:
    """
    Singleton that tracks how many embedding requests were made and how long
    they took, process wide.
    """

    total_request_time: float
    total_requests: int

    def __new__(cls):
        if not hasattr(cls, "_instance"):
            cls._instance = super().__new__(cls)
            cls._instance.total_request_time = 0.0
            cls._instance.total_requests = 0
        return cls._instance

    def add_request_time(self, duration: float):
        self.total_request_time += duration
        self.total_requests += 1

    def requests_per_second(self) -> float:
        return (
            self.total_requests / self.total_request_time
            if self.total_request_time > 0
            else 0
        )

    async def print_stats(self):
        await logger.adebug(
            "embedding stats",
            total_requests=self.total_requests,
            total_request_time=self.total_request_time,
            requests_per_second=self.requests_per_second(),
        )
