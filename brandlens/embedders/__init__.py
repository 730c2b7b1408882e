from ..configuration import Settings
from .openai import OpenAIEmbedder

__all__ = ["OpenAIEmbedder", "build_embedder"]


def build_embedder(settings: Settings, secrets: dict[str, str | None] | None = None):
    """Builds the embedder both the indexing and the query path share."""
    embedder = OpenAIEmbedder(
        model=settings.model,
        dimensions=settings.embedding_dimensions,
        api_key_name=settings.api_key_name,
        base_url=settings.base_url,
    )
    if secrets is None:
        secrets = {settings.api_key_name: settings.api_key()}
    embedder.set_api_key(secrets)
    return embedder
