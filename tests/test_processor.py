import psycopg
import pytest
from structlog.testing import capture_logs

from brandlens.brands import ApprovalStatus
from brandlens.configuration import Settings
from brandlens.embeddings import EmbeddingStats
from brandlens.errors import (
    BrandNotFoundError,
    EmbeddingModelMismatchError,
    EmbeddingNetworkError,
    EmbeddingRateLimitError,
    EmbeddingRequestError,
)
from brandlens.processor import QueueProcessor, enqueue_missing
from brandlens.queue import QueueStatus
from brandlens.text import build_embedding_text
from tests.utils import (
    DIMENSIONS,
    InMemoryBrandStore,
    InMemoryQueue,
    ScriptedEmbedder,
    make_brand,
    unit,
)


async def seed(store: InMemoryBrandStore, queue: InMemoryQueue, count: int):
    for i in range(1, count + 1):
        store.brands[i] = make_brand(i, f"Brand {i}", f"Creator {i}")
        await queue.enqueue(i, f"brand {i}")


def processor_for(
    queue: InMemoryQueue,
    store: InMemoryBrandStore,
    embedder: ScriptedEmbedder,
    settings: Settings,
) -> QueueProcessor:
    return QueueProcessor(queue, store, embedder, settings, worker_id="test-worker")


async def test_batch_embeds_and_completes_items(queue, store, embedder, settings):
    await seed(store, queue, 3)
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.total == 3
    assert summary.successful == 3
    assert summary.failed == 0
    assert summary.errors == []
    assert set(queue.statuses().values()) == {QueueStatus.completed}
    assert [brand_id for brand_id, _ in store.writes] == [1, 2, 3]
    assert all(store.brands[i].last_embedded_at is not None for i in (1, 2, 3))


async def test_item_failing_every_attempt_is_marked_error_and_batch_continues(
    queue, store, settings
):
    embedder = ScriptedEmbedder(
        fail_times={"brand 2": (EmbeddingNetworkError("connection reset"), 10)}
    )
    await seed(store, queue, 3)
    summary = await processor_for(queue, store, embedder, settings).run()

    assert embedder.calls.count("brand 2") == settings.retry.max_attempts
    assert summary.successful == 2
    assert summary.failed == 1
    assert summary.errors == ["Brand 2: connection reset"]
    assert queue.statuses() == {
        1: QueueStatus.completed,
        2: QueueStatus.error,
        3: QueueStatus.completed,
    }
    assert queue.items[2].error == "EmbeddingNetworkError: connection reset"
    assert queue.items[2].processed_at is not None


async def test_rate_limited_item_succeeds_on_third_attempt(queue, store, settings):
    embedder = ScriptedEmbedder(
        fail_times={"brand 1": (EmbeddingRateLimitError("429 too many requests"), 2)}
    )
    await seed(store, queue, 1)
    with capture_logs() as logs:
        summary = await processor_for(queue, store, embedder, settings).run()

    assert embedder.calls == ["brand 1", "brand 1", "brand 1"]
    assert summary.successful == 1
    assert queue.statuses() == {1: QueueStatus.completed}
    waits = [log["wait"] for log in logs if log.get("operation") == "embed"]
    assert len(waits) == 2
    assert waits == sorted(waits)


async def test_rejected_request_is_not_retried(queue, store, settings):
    embedder = ScriptedEmbedder(
        fail_times={"brand 1": (EmbeddingRequestError("400: input too long"), 10)}
    )
    await seed(store, queue, 1)
    summary = await processor_for(queue, store, embedder, settings).run()

    assert embedder.calls == ["brand 1"]
    assert summary.failed == 1
    assert queue.statuses() == {1: QueueStatus.error}
    assert store.writes == []


async def test_all_zero_embedding_is_an_error(queue, store, settings):
    embedder = ScriptedEmbedder(vectors={"brand 1": [0.0] * DIMENSIONS})
    await seed(store, queue, 1)
    summary = await processor_for(queue, store, embedder, settings).run()

    assert embedder.calls == ["brand 1"]
    assert summary.failed == 1
    assert "all-zero" in summary.errors[0]
    assert queue.items[1].status == QueueStatus.error
    assert store.writes == []


async def test_failed_vector_write_is_retried_without_reembedding(
    queue, store, embedder, settings
):
    await seed(store, queue, 1)
    store.write_failures.append(psycopg.OperationalError("server closed connection"))
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.successful == 1
    assert embedder.calls == ["brand 1"]
    assert store.write_attempts == 2
    assert queue.statuses() == {1: QueueStatus.completed}


async def test_failed_status_write_is_retried_without_reembedding(
    queue, store, embedder, settings
):
    await seed(store, queue, 1)
    queue.complete_failures.append(psycopg.OperationalError("server closed connection"))
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.successful == 1
    assert embedder.calls == ["brand 1"]
    assert len(store.writes) == 1
    assert queue.complete_attempts == 2
    assert queue.statuses() == {1: QueueStatus.completed}


async def test_unrecordable_completion_still_counts_as_success(
    queue, store, embedder, settings
):
    await seed(store, queue, 1)
    queue.complete_failures.extend(
        psycopg.OperationalError("lost") for _ in range(settings.retry.max_attempts)
    )
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.successful == 1
    assert summary.failed == 0
    assert summary.errors == []
    assert len(store.writes) == 1
    # left pending so the expired lease hands it out again
    assert queue.items[1].status == QueueStatus.pending
    assert queue.items[1].error is None


async def test_batch_records_embedding_stats(queue, store, embedder, settings):
    await seed(store, queue, 2)
    before = EmbeddingStats().total_requests
    await processor_for(queue, store, embedder, settings).run()
    assert EmbeddingStats().total_requests == before + 2


async def test_unrecordable_error_leaves_item_for_a_later_claim(
    queue, store, settings
):
    embedder = ScriptedEmbedder(
        fail_times={"brand 1": (EmbeddingRequestError("400: bad input"), 10)}
    )
    await seed(store, queue, 1)
    queue.error_failures.extend(
        psycopg.OperationalError("connection lost")
        for _ in range(settings.retry.max_attempts)
    )
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.failed == 1
    assert queue.items[1].status == QueueStatus.pending


async def test_terminal_items_are_not_processed_again(
    queue, store, embedder, settings
):
    await seed(store, queue, 2)
    processor = processor_for(queue, store, embedder, settings)
    await processor.run()
    calls = len(embedder.calls)

    summary = await processor.run()
    assert summary.total == 0
    assert len(embedder.calls) == calls
    assert await queue.mark_completed(1) is False
    assert await queue.mark_error(2, "late failure") is False
    assert queue.items[2].error is None


async def test_batch_size_limits_claimed_items(queue, store, embedder, settings):
    await seed(store, queue, 5)
    processor = processor_for(queue, store, embedder, settings)

    summary = await processor.run(batch_size=2)
    assert summary.total == 2
    counts = await queue.count_by_status()
    assert counts[QueueStatus.completed] == 2
    assert counts[QueueStatus.pending] == 3


async def test_items_can_be_processed_concurrently(queue, store, embedder, settings):
    await seed(store, queue, 5)
    settings = settings.model_copy(update={"queue_concurrency": 3})
    summary = await processor_for(queue, store, embedder, settings).run()

    assert summary.successful == 5
    assert set(queue.statuses().values()) == {QueueStatus.completed}


async def test_processor_rejects_embedder_with_another_model(queue, store, settings):
    embedder = ScriptedEmbedder(model="text-embedding-ada-002")
    with pytest.raises(EmbeddingModelMismatchError):
        QueueProcessor(queue, store, embedder, settings)


async def test_enqueue_missing_skips_embedded_unapproved_and_queued(queue, store):
    store.brands = {
        1: make_brand(1, "Fenty Beauty", "Rihanna"),
        2: make_brand(2, "Kylie Cosmetics", "Kylie Jenner", [0.0] * DIMENSIONS),
        3: make_brand(3, "Skims", "Kim Kardashian", unit(1)),
        4: make_brand(4, "Prime", "Logan Paul", approval_status=ApprovalStatus.pending),
        5: make_brand(5, "Feastables", "MrBeast"),
    }
    await queue.enqueue(5, "already queued")

    assert await enqueue_missing(queue, store) == 2
    assert await queue.pending_record_ids() == {1, 2, 5}
    assert queue.items[2].text_for_embedding.startswith("Brand: Fenty Beauty\n")
    # a second run finds everything queued
    assert await enqueue_missing(queue, store) == 0


async def test_embed_brand_writes_vector(store, embedder, settings, queue):
    store.brands[1] = make_brand(1, "Rare Beauty", "Selena Gomez")
    processor = processor_for(queue, store, embedder, settings)

    embedding = await processor.embed_brand(1)
    assert embedding == unit(0)
    assert store.writes == [(1, unit(0))]
    assert embedder.calls[0].startswith("Brand: Rare Beauty\n")


async def test_embed_brand_unknown_brand(store, embedder, settings, queue):
    processor = processor_for(queue, store, embedder, settings)
    with pytest.raises(BrandNotFoundError):
        await processor.embed_brand(42)
    assert embedder.calls == []


async def test_embed_brand_surfaces_rate_limit_without_retrying(
    store, settings, queue
):
    brand = make_brand(1, "Rare Beauty", "Selena Gomez")
    store.brands[1] = brand
    embedder = ScriptedEmbedder(
        fail_times={build_embedding_text(brand): (EmbeddingRateLimitError("429"), 1)}
    )
    processor = processor_for(queue, store, embedder, settings)

    with pytest.raises(EmbeddingRateLimitError):
        await processor.embed_brand(1)
    assert len(embedder.calls) == 1
    assert store.writes == []
