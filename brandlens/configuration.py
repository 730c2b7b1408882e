import os
from collections.abc import Mapping
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, model_validator

from .errors import EmbeddingModelMismatchError
from .retry import RetryPolicy

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSIONS = 1536

ENV_PREFIX = "BRANDLENS_"


class Settings(BaseModel):
    """
    Runtime configuration shared by the API, the worker and the CLI.

    There is exactly one embedding model identifier. `query_embedding_model`
    exists only so that a deployment which sets it can be rejected when it
    disagrees with `embedding_model`; vectors from different models are not
    comparable.
    """

    db_url: str = DEFAULT_DB_URL
    api_key_name: str = "OPENAI_API_KEY"
    base_url: str | None = None

    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    query_embedding_model: str | None = None
    embedding_dimensions: int = Field(default=DEFAULT_DIMENSIONS, gt=0)
    max_input_chars: int = Field(default=8000, gt=0)

    similarity_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    match_count: int = Field(default=10, gt=0)
    keyword_limit: int = Field(default=8, gt=0)

    queue_batch_size: int = Field(default=50, gt=0)
    queue_concurrency: int = Field(default=1, gt=0)
    claim_ttl: float = Field(default=300.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    search_timeout: float = Field(default=30.0, gt=0)
    search_debounce: float = Field(default=0.3, ge=0)
    min_query_length: int = Field(default=3, ge=1)
    query_cache_ttl: float = Field(default=3600.0, ge=0)

    @model_validator(mode="after")
    def single_embedding_model(self) -> "Settings":
        if (
            self.query_embedding_model is not None
            and self.query_embedding_model != self.embedding_model
        ):
            raise EmbeddingModelMismatchError(
                f"query embedding model {self.query_embedding_model!r} differs from "
                f"indexing model {self.embedding_model!r}"
            )
        return self

    @property
    def model(self) -> str:
        """The embedding model used by both indexing and querying."""
        return self.embedding_model

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        if environ is None:
            load_dotenv(dotenv_path=find_dotenv(usecwd=True))
            environ = os.environ

        values: dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "retry":
                continue
            value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None and value != "":
                values[name] = value

        retry: dict[str, Any] = {}
        for name in RetryPolicy.model_fields:
            value = environ.get(f"{ENV_PREFIX}RETRY_{name.upper()}")
            if value is not None and value != "":
                retry[name] = value
        if retry:
            values["retry"] = retry

        return cls.model_validate(values)

    def api_key(self, environ: Mapping[str, str] | None = None) -> str | None:
        environ = os.environ if environ is None else environ
        return environ.get(self.api_key_name) or None
