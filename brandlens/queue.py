import datetime
from enum import Enum
from functools import cached_property
from typing import Protocol

import psycopg
import structlog
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel

logger = structlog.get_logger()

QUEUE_TABLE = "embedding_queue"


class QueueStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    error = "error"


class EmbeddingQueueItem(BaseModel):
    """
    One request to (re)compute the embedding of a brand.

    `text_for_embedding` is the text captured when the item was enqueued; it is
    embedded as is, so edits made to the brand afterwards need their own item.
    """

    id: int
    record_id: int
    text_for_embedding: str
    status: QueueStatus = QueueStatus.pending
    error: str | None = None
    created_at: datetime.datetime | None = None
    processed_at: datetime.datetime | None = None
    claimed_by: str | None = None
    claimed_at: datetime.datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != QueueStatus.pending


class EmbeddingQueue(Protocol):
    async def enqueue(self, record_id: int, text: str) -> int: ...

    async def claim_pending(
        self, limit: int, worker_id: str
    ) -> list[EmbeddingQueueItem]: ...

    async def mark_completed(self, item_id: int) -> bool: ...

    async def mark_error(self, item_id: int, message: str) -> bool: ...

    async def pending_record_ids(self) -> set[int]: ...

    async def count_by_status(self) -> dict[QueueStatus, int]: ...


async def enqueue_with(cur: psycopg.AsyncCursor, record_id: int, text: str) -> int:
    """Enqueues inside the caller's transaction."""
    await cur.execute(
        sql.SQL(
            "insert into {} (record_id, text_for_embedding) values (%s, %s) returning id"  # noqa
        ).format(sql.Identifier(QUEUE_TABLE)),
        (record_id, text),
    )
    row = await cur.fetchone()
    assert row is not None
    return row["id"] if isinstance(row, dict) else row[0]


class PostgresEmbeddingQueue:
    """
    The embedding queue table.

    Items are claimed with a lease: `claim_pending` stamps `claimed_by` and
    `claimed_at` on the rows it returns, and other processors skip rows whose
    lease is younger than `claim_ttl`. Terminal transitions only apply to
    pending rows, so an item is completed or failed at most once.
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        claim_ttl: datetime.timedelta = datetime.timedelta(minutes=5),
    ):
        self.pool = pool
        self.claim_ttl = claim_ttl

    @cached_property
    def claim_query(self) -> sql.Composed:
        return sql.SQL("""
            update {queue_table} q
            set claimed_by = %(worker_id)s, claimed_at = now()
            where q.id in (
                select id
                from {queue_table}
                where status = 'pending'
                and (claimed_at is null or claimed_at < now() - %(claim_ttl)s)
                order by id
                limit %(limit)s
                for update skip locked
            )
            returning q.*
        """).format(queue_table=sql.Identifier(QUEUE_TABLE))

    @cached_property
    def complete_query(self) -> sql.Composed:
        return sql.SQL("""
            update {queue_table}
            set status = 'completed'
            , error = null
            , processed_at = now()
            , claimed_by = null
            , claimed_at = null
            where id = %s and status = 'pending'
        """).format(queue_table=sql.Identifier(QUEUE_TABLE))

    @cached_property
    def error_query(self) -> sql.Composed:
        return sql.SQL("""
            update {queue_table}
            set status = 'error'
            , error = %s
            , processed_at = now()
            , claimed_by = null
            , claimed_at = null
            where id = %s and status = 'pending'
        """).format(queue_table=sql.Identifier(QUEUE_TABLE))

    async def enqueue(self, record_id: int, text: str) -> int:
        async with self.pool.connection() as conn, conn.cursor() as cur:
            item_id = await enqueue_with(cur, record_id, text)
        await logger.adebug("enqueued embedding", record_id=record_id, id=item_id)
        return item_id

    async def claim_pending(
        self, limit: int, worker_id: str
    ) -> list[EmbeddingQueueItem]:
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(
                self.claim_query,
                dict(worker_id=worker_id, claim_ttl=self.claim_ttl, limit=limit),
            )
            rows = await cur.fetchall()
        items = [EmbeddingQueueItem.model_validate(row) for row in rows]
        return sorted(items, key=lambda item: item.id)

    async def _transition(self, query: sql.Composed, params: tuple, item_id: int):
        async with self.pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(query, params)
            updated = cur.rowcount > 0
        if not updated:
            await logger.awarning(
                "queue item is not pending, leaving it untouched", id=item_id
            )
        return updated

    async def mark_completed(self, item_id: int) -> bool:
        return await self._transition(self.complete_query, (item_id,), item_id)

    async def mark_error(self, item_id: int, message: str) -> bool:
        return await self._transition(self.error_query, (message, item_id), item_id)

    async def pending_record_ids(self) -> set[int]:
        async with self.pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(
                sql.SQL(
                    "select distinct record_id from {} where status = 'pending'"
                ).format(sql.Identifier(QUEUE_TABLE))
            )
            return {row[0] for row in await cur.fetchall()}

    async def count_by_status(self) -> dict[QueueStatus, int]:
        counts = {status: 0 for status in QueueStatus}
        async with self.pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(
                sql.SQL("select status, count(*) from {} group by status").format(
                    sql.Identifier(QUEUE_TABLE)
                )
            )
            for status, count in await cur.fetchall():
                counts[QueueStatus(status)] = count
        return counts
