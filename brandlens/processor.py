import asyncio
import os
import socket
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import uuid4

import psycopg
import structlog
from ddtrace.trace import tracer

from .brands import BrandStore
from .configuration import Settings
from .embeddings import Embedder, EmbeddingStats, EmbeddingVector
from .errors import RETRYABLE_ERRORS, EmbeddingModelMismatchError
from .queue import EmbeddingQueue, EmbeddingQueueItem
from .text import build_embedding_text, prepare_embedding_input

logger = structlog.get_logger()

# transient database failures; the writes they interrupt are idempotent
WRITE_RETRYABLE_ERRORS = (psycopg.OperationalError,)


async def enqueue_missing(queue: EmbeddingQueue, store: BrandStore) -> int:
    """
    Enqueues every approved brand that has no usable vector and no pending
    item yet. Returns how many items were created.
    """
    pending = await queue.pending_record_ids()
    count = 0
    for brand in await store.list_missing_embeddings():
        if brand.id in pending:
            continue
        await queue.enqueue(brand.id, build_embedding_text(brand))
        count += 1
    await logger.ainfo("enqueued brands missing embeddings", count=count)
    return count


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass
class ProcessingSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class QueueProcessor:
    """
    Drains a batch of pending queue items into brand embeddings.

    Each item is embedded, its vector written onto the brand and the item
    marked completed. The embedding call, the vector write and the status
    write are retried separately under the configured policy, so a failed
    status write never causes the vector to be recomputed. An item that still
    fails is marked as an error and the batch moves on.
    """

    def __init__(
        self,
        queue: EmbeddingQueue,
        store: BrandStore,
        embedder: Embedder,
        settings: Settings,
        worker_id: str | None = None,
    ):
        if embedder.model != settings.model:
            raise EmbeddingModelMismatchError(
                f"indexing embedder uses {embedder.model!r}, expected {settings.model!r}"  # noqa
            )
        self.queue = queue
        self.store = store
        self.embedder = embedder
        self.settings = settings
        self.worker_id = worker_id if worker_id is not None else default_worker_id()

    @property
    def retry(self):
        return self.settings.retry

    async def _embed(self, item: EmbeddingQueueItem) -> EmbeddingVector:
        text = prepare_embedding_input(
            item.text_for_embedding, self.settings.max_input_chars
        )
        return await self.retry.call(
            self.embedder.embed,
            text,
            exceptions=RETRYABLE_ERRORS,
            operation="embed",
        )

    async def _write_embedding(self, record_id: int, embedding: EmbeddingVector):
        await self.retry.call(
            self.store.write_embedding,
            record_id,
            embedding,
            exceptions=WRITE_RETRYABLE_ERRORS,
            operation="write embedding",
        )

    async def _mark_completed(self, item: EmbeddingQueueItem):
        try:
            await self.retry.call(
                self.queue.mark_completed,
                item.id,
                exceptions=WRITE_RETRYABLE_ERRORS,
                operation="mark completed",
            )
        except psycopg.Error as e:
            # the vector is stored; the lease expires and the item is re-claimed
            await logger.aerror(
                f"unable to record queue item completion: {e}",
                queue_item_id=item.id,
                record_id=item.record_id,
            )

    async def _mark_error(self, item: EmbeddingQueueItem, message: str):
        try:
            await self.retry.call(
                self.queue.mark_error,
                item.id,
                message,
                exceptions=WRITE_RETRYABLE_ERRORS,
                operation="mark error",
            )
        except psycopg.Error as e:
            # the lease expires and the item is picked up again
            await logger.aerror(
                f"unable to record queue item error: {e}",
                queue_item_id=item.id,
                record_id=item.record_id,
            )

    async def process_item(
        self, item: EmbeddingQueueItem, summary: ProcessingSummary
    ) -> None:
        try:
            embedding = await self._embed(item)
            await self._write_embedding(item.record_id, embedding)
        except Exception as e:
            message = str(e) or type(e).__name__
            summary.failed += 1
            summary.errors.append(f"Brand {item.record_id}: {message}")
            await logger.aerror(
                "embedding failed",
                queue_item_id=item.id,
                record_id=item.record_id,
                error=message,
            )
            await self._mark_error(item, f"{type(e).__name__}: {message}")
            return

        summary.successful += 1
        await self._mark_completed(item)
        await logger.ainfo(
            "embedding updated", queue_item_id=item.id, record_id=item.record_id
        )

    @tracer.wrap()
    async def run(self, batch_size: int | None = None) -> ProcessingSummary:
        """
        Processes up to `batch_size` pending items and reports how it went.
        Failures are per item, the batch itself always completes.
        """
        limit = batch_size or self.settings.queue_batch_size
        items = await self.queue.claim_pending(limit, self.worker_id)
        summary = ProcessingSummary(total=len(items))
        if not items:
            await logger.adebug("no pending embeddings")
            return summary

        await logger.ainfo(f"processing {len(items)} embeddings")
        concurrency = self.settings.queue_concurrency
        if concurrency <= 1:
            for item in items:
                await self.process_item(item, summary)
        else:
            semaphore = asyncio.Semaphore(concurrency)

            async def bounded(item: EmbeddingQueueItem):
                async with semaphore:
                    await self.process_item(item, summary)

            await asyncio.gather(*(bounded(item) for item in items))

        await EmbeddingStats().print_stats()
        await logger.ainfo(
            "batch finished",
            total=summary.total,
            successful=summary.successful,
            failed=summary.failed,
        )
        return summary

    async def enqueue_missing(self) -> int:
        return await enqueue_missing(self.queue, self.store)

    async def embed_brand(self, brand_id: int) -> EmbeddingVector:
        """
        Embeds one brand right away, bypassing the queue.
        """
        brand = await self.store.get_brand(brand_id)
        text = prepare_embedding_input(
            build_embedding_text(brand), self.settings.max_input_chars
        )
        embedding = await self.embedder.embed(text)
        await self._write_embedding(brand.id, embedding)
        await logger.ainfo("embedding generated", brand_id=brand.id)
        return embedding
