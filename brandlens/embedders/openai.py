from functools import cached_property
from typing import TYPE_CHECKING

from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    import openai
    import tiktoken

from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
    logger,
)
from ..errors import (
    EmbeddingNetworkError,
    EmbeddingRateLimitError,
    EmbeddingRequestError,
    MalformedEmbeddingError,
)

EMBEDDING_MODEL_CONTEXT_LENGTH = {
    "text-embedding-ada-002": 8191,
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
}

DEFAULT_TIMEOUT = 30.0


class OpenAIEmbedder(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to turn a brand description or a search
    query into a vector.

    Attributes:
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int): Length of the vectors, must match the database column.
        timeout (float): Per request timeout in seconds.
    """

    model: str
    dimensions: int
    timeout: float = DEFAULT_TIMEOUT

    @cached_property
    def _openai_dimensions(self) -> "int | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        if self.model == "text-embedding-ada-002":
            if self.dimensions != 1536:
                raise ValueError("dimensions must be 1536 for text-embedding-ada-002")
            return openai.NOT_GIVEN
        return self.dimensions

    @cached_property
    def _client(self) -> "openai.AsyncOpenAI":
        import openai

        # retries are driven by the caller's RetryPolicy
        return openai.AsyncOpenAI(
            base_url=self.base_url,
            api_key=self._api_key,
            max_retries=0,
            timeout=self.timeout,
        )

    @override
    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        import openai

        try:
            response = await self._client.embeddings.create(
                input=[text],
                model=self.model,
                dimensions=self._openai_dimensions,
                encoding_format="float",
            )
        except openai.RateLimitError as e:
            raise EmbeddingRateLimitError(str(e)) from e
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            # APITimeoutError is a subclass of APIConnectionError
            raise EmbeddingNetworkError(str(e)) from e
        except openai.APIStatusError as e:
            raise EmbeddingRequestError(f"{e.status_code}: {e.message}") from e
        except openai.APIResponseValidationError as e:
            raise MalformedEmbeddingError(str(e)) from e

        if not response.data:
            raise MalformedEmbeddingError("no embedding data returned")
        usage = response.usage
        return EmbeddingResponse(
            embeddings=[item.embedding for item in response.data],
            usage=Usage(
                usage.prompt_tokens if usage else 0,
                usage.total_tokens if usage else 0,
            ),
        )

    @override
    def prepare(self, text: str) -> str:
        encoder = self._encoder
        context_length = self._context_length
        if encoder is None or context_length is None:
            return text
        tokenized = encoder.encode(text)
        if len(tokenized) <= context_length:
            return text
        logger.warning(
            f"input truncated from {len(tokenized)} to {context_length} tokens"
        )
        return encoder.decode(tokenized[:context_length])

    @cached_property
    def _encoder(self) -> "tiktoken.Encoding | None":
        # Note: deferred import to avoid import overhead
        import tiktoken

        try:
            encoder = tiktoken.encoding_for_model(self.model)
        except KeyError:
            logger.warning(f"Tokenizer for the model {self.model} not found.")
            return None
        return encoder

    @cached_property
    def _context_length(self) -> int | None:
        return EMBEDDING_MODEL_CONTEXT_LENGTH.get(self.model, None)
