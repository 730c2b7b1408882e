import datetime
from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool

from .brands import BrandStore, PostgresBrandStore
from .cache import Cache, TTLCache
from .configuration import Settings
from .embedders import build_embedder
from .embeddings import Embedder
from .processor import QueueProcessor
from .queue import EmbeddingQueue, PostgresEmbeddingQueue
from .search import KeywordSearch, SemanticSearchService


@dataclass
class Services:
    store: BrandStore
    queue: EmbeddingQueue
    processor: QueueProcessor
    semantic: SemanticSearchService
    keyword: KeywordSearch


def build_services(
    settings: Settings,
    store: BrandStore,
    queue: EmbeddingQueue,
    embedder: Embedder,
    cache: Cache | None = None,
) -> Services:
    """Wires the services so indexing and querying share one embedder."""
    return Services(
        store=store,
        queue=queue,
        processor=QueueProcessor(queue, store, embedder, settings),
        semantic=SemanticSearchService(
            store,
            embedder,
            settings,
            cache=cache if cache is not None else TTLCache(max_entries=1024),
        ),
        keyword=KeywordSearch(store, limit=settings.keyword_limit),
    )


def postgres_services(
    settings: Settings, pool: AsyncConnectionPool, embedder: Embedder | None = None
) -> Services:
    return build_services(
        settings,
        PostgresBrandStore(pool, settings.embedding_dimensions),
        PostgresEmbeddingQueue(
            pool, claim_ttl=datetime.timedelta(seconds=settings.claim_ttl)
        ),
        embedder if embedder is not None else build_embedder(settings),
    )
