import structlog
from ddtrace.trace import tracer

from .brands import BrandStore, SearchResult
from .cache import Cache, NullCache, query_cache_key
from .configuration import Settings
from .embeddings import Embedder, EmbeddingVector
from .errors import EmbeddingModelMismatchError, InvalidQueryError

logger = structlog.get_logger()


def normalize_query(query: str | None) -> str:
    if query is None or not query.strip():
        raise InvalidQueryError("query must not be empty")
    return query.strip()


class SemanticSearchService:
    """
    Ranks brands by how close their stored vector is to the query's vector.

    Query vectors are kept in the injected cache, keyed by model and query,
    so the same query is embedded once per `query_cache_ttl`.
    """

    def __init__(
        self,
        store: BrandStore,
        embedder: Embedder,
        settings: Settings,
        cache: Cache | None = None,
    ):
        if embedder.model != settings.model:
            # indexing and querying must share one model
            raise EmbeddingModelMismatchError(
                f"query embedder uses {embedder.model!r}, index uses {settings.model!r}"
            )
        self.store = store
        self.embedder = embedder
        self.settings = settings
        self.cache = cache if cache is not None else NullCache()

    async def embed_query(self, query: str) -> EmbeddingVector:
        key = query_cache_key(self.settings.model, query)
        cached = self.cache.get(key)
        if cached is not None:
            await logger.adebug("query embedding cache hit", query=query)
            return cached
        embedding = await self.embedder.embed(query)
        self.cache.set(key, embedding, self.settings.query_cache_ttl)
        return embedding

    @tracer.wrap()
    async def search(self, query: str) -> list[SearchResult]:
        query = normalize_query(query)
        embedding = await self.embed_query(query)
        results = await self.store.match_brands(
            embedding,
            threshold=self.settings.similarity_threshold,
            count=self.settings.match_count,
        )
        await logger.adebug("semantic search", query=query, results=len(results))
        return results


class KeywordSearch:
    """Substring match on brand name and creators, approved brands only."""

    def __init__(self, store: BrandStore, limit: int = 8):
        self.store = store
        self.limit = limit

    async def search(self, query: str) -> list[SearchResult]:
        query = normalize_query(query)
        results = await self.store.search_by_keyword(query, self.limit)
        # keyword matches carry no score
        return [result.model_copy(update={"similarity": None}) for result in results]
