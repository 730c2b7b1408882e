import datetime
import math
from collections.abc import Iterable, Sequence

from brandlens.brands import (
    ApprovalStatus,
    BrandFields,
    BrandRecord,
    SearchResult,
)
from brandlens.configuration import DEFAULT_EMBEDDING_MODEL
from brandlens.embeddings import (
    Embedder,
    EmbeddingResponse,
    EmbeddingVector,
    Usage,
    has_usable_embedding,
)
from brandlens.errors import BrandNotFoundError
from brandlens.queue import EmbeddingQueueItem, QueueStatus
from brandlens.text import build_embedding_text

DIMENSIONS = 8


def unit(index: int, dimensions: int = DIMENSIONS) -> list[float]:
    vector = [0.0] * dimensions
    vector[index] = 1.0
    return vector


def with_similarity(similarity: float, dimensions: int = DIMENSIONS) -> list[float]:
    """A unit vector whose cosine similarity to unit(0) is `similarity`."""
    vector = [0.0] * dimensions
    vector[0] = similarity
    vector[1] = math.sqrt(1 - similarity**2)
    return vector


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    return dot / (norm_a * norm_b)


def now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ScriptedEmbedder(Embedder):
    """
    Returns the vector registered for a text, `default` otherwise. Texts in
    `fail_times` raise the given error that many times before succeeding.
    """

    def __init__(
        self,
        vectors: dict[str, EmbeddingVector] | None = None,
        fail_times: dict[str, tuple[Exception, int]] | None = None,
        default: EmbeddingVector | None = None,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int = DIMENSIONS,
    ):
        self.model = model
        self.dimensions = dimensions
        self.vectors = dict(vectors or {})
        self.fail_times = dict(fail_times or {})
        self.default = default if default is not None else unit(0, dimensions)
        self.calls: list[str] = []

    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        self.calls.append(text)
        if text in self.fail_times:
            error, remaining = self.fail_times[text]
            if remaining > 0:
                self.fail_times[text] = (error, remaining - 1)
                raise error
        vector = self.vectors.get(text, self.default)
        return EmbeddingResponse(embeddings=[list(vector)], usage=Usage(1, 1))


class InMemoryQueue:
    def __init__(self):
        self.items: dict[int, EmbeddingQueueItem] = {}
        self.next_id = 1
        self.complete_failures: list[Exception] = []
        self.error_failures: list[Exception] = []
        self.complete_attempts = 0

    async def enqueue(self, record_id: int, text: str) -> int:
        item_id = self.next_id
        self.next_id += 1
        self.items[item_id] = EmbeddingQueueItem(
            id=item_id, record_id=record_id, text_for_embedding=text, created_at=now()
        )
        return item_id

    async def claim_pending(
        self, limit: int, worker_id: str
    ) -> list[EmbeddingQueueItem]:
        claimed: list[EmbeddingQueueItem] = []
        for item in sorted(self.items.values(), key=lambda i: i.id):
            if len(claimed) >= limit:
                break
            if item.status != QueueStatus.pending or item.claimed_by is not None:
                continue
            update = {"claimed_by": worker_id, "claimed_at": now()}
            item = item.model_copy(update=update)
            self.items[item.id] = item
            claimed.append(item)
        return claimed

    def _finish(self, item_id: int, status: QueueStatus, error: str | None) -> bool:
        item = self.items[item_id]
        if item.status != QueueStatus.pending:
            return False
        self.items[item_id] = item.model_copy(
            update={
                "status": status,
                "error": error,
                "processed_at": now(),
                "claimed_by": None,
                "claimed_at": None,
            }
        )
        return True

    async def mark_completed(self, item_id: int) -> bool:
        self.complete_attempts += 1
        if self.complete_failures:
            raise self.complete_failures.pop(0)
        return self._finish(item_id, QueueStatus.completed, None)

    async def mark_error(self, item_id: int, message: str) -> bool:
        if self.error_failures:
            raise self.error_failures.pop(0)
        return self._finish(item_id, QueueStatus.error, message)

    async def pending_record_ids(self) -> set[int]:
        return {
            item.record_id
            for item in self.items.values()
            if item.status == QueueStatus.pending
        }

    async def count_by_status(self) -> dict[QueueStatus, int]:
        counts = {status: 0 for status in QueueStatus}
        for item in self.items.values():
            counts[item.status] += 1
        return counts

    def statuses(self) -> dict[int, QueueStatus]:
        return {item_id: item.status for item_id, item in self.items.items()}


class InMemoryBrandStore:
    def __init__(
        self, brands: Iterable[BrandRecord] = (), queue: InMemoryQueue | None = None
    ):
        self.brands = {brand.id: brand for brand in brands}
        self.queue = queue
        self.writes: list[tuple[int, EmbeddingVector]] = []
        self.write_attempts = 0
        self.write_failures: list[Exception] = []
        self.keyword_calls: list[str] = []
        self.match_calls: list[EmbeddingVector] = []

    async def get_brand(self, brand_id: int) -> BrandRecord:
        if brand_id not in self.brands:
            raise BrandNotFoundError(brand_id)
        return self.brands[brand_id]

    async def write_embedding(self, brand_id: int, embedding: EmbeddingVector) -> None:
        self.write_attempts += 1
        if self.write_failures:
            raise self.write_failures.pop(0)
        brand = await self.get_brand(brand_id)
        self.writes.append((brand_id, list(embedding)))
        self.brands[brand_id] = brand.model_copy(
            update={"embedding": list(embedding), "last_embedded_at": now()}
        )

    async def match_brands(
        self, embedding: EmbeddingVector, threshold: float, count: int
    ) -> list[SearchResult]:
        self.match_calls.append(embedding)
        results: list[SearchResult] = []
        for brand in self.brands.values():
            if not has_usable_embedding(brand.embedding):
                continue
            assert brand.embedding is not None
            similarity = cosine(embedding, brand.embedding)
            if similarity >= threshold:
                results.append(
                    SearchResult(
                        id=brand.id,
                        name=brand.name,
                        creators=brand.creators,
                        product_category=brand.product_category,
                        description=brand.description,
                        similarity=similarity,
                    )
                )
        results.sort(key=lambda r: r.similarity or 0.0, reverse=True)
        return results[:count]

    async def search_by_keyword(self, query: str, limit: int) -> list[SearchResult]:
        self.keyword_calls.append(query)
        needle = query.strip().lower()
        matches = [
            SearchResult(
                id=brand.id,
                name=brand.name,
                creators=brand.creators,
                product_category=brand.product_category,
                description=brand.description,
            )
            for brand in self.brands.values()
            if brand.approval_status == ApprovalStatus.approved
            and (needle in brand.name.lower() or needle in brand.creators.lower())
        ]
        matches.sort(key=lambda r: r.name)
        return matches[:limit]

    async def list_missing_embeddings(self) -> list[BrandRecord]:
        return [
            brand
            for brand in sorted(self.brands.values(), key=lambda b: b.id)
            if brand.approval_status == ApprovalStatus.approved
            and not has_usable_embedding(brand.embedding)
        ]

    async def insert_brand(
        self,
        fields: BrandFields,
        approval_status: ApprovalStatus = ApprovalStatus.pending,
    ) -> BrandRecord:
        brand_id = max(self.brands, default=0) + 1
        brand = BrandRecord(
            id=brand_id, approval_status=approval_status, **fields.model_dump()
        )
        self.brands[brand_id] = brand
        if self.queue is not None:
            await self.queue.enqueue(brand_id, build_embedding_text(brand))
        return brand

    async def update_brand(self, brand_id: int, fields: BrandFields) -> BrandRecord:
        brand = await self.get_brand(brand_id)
        brand = brand.model_copy(update={**fields.model_dump(), "updated_at": now()})
        self.brands[brand_id] = brand
        if self.queue is not None:
            await self.queue.enqueue(brand_id, build_embedding_text(brand))
        return brand

    async def approve_brand(
        self, brand_id: int, status: ApprovalStatus = ApprovalStatus.approved
    ) -> None:
        brand = await self.get_brand(brand_id)
        self.brands[brand_id] = brand.model_copy(update={"approval_status": status})


def make_brand(
    brand_id: int,
    name: str,
    creators: str,
    embedding: EmbeddingVector | None = None,
    approval_status: ApprovalStatus = ApprovalStatus.approved,
    **kwargs: str | None,
) -> BrandRecord:
    return BrandRecord(
        id=brand_id,
        name=name,
        creators=creators,
        description=kwargs.pop("description", None) or f"{name} by {creators}",
        embedding=embedding,
        approval_status=approval_status,
        **kwargs,
    )


