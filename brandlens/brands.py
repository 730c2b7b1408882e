import datetime
from enum import Enum
from typing import Any, Protocol

import structlog
from ddtrace.trace import tracer
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel, field_validator

from .embeddings import EmbeddingVector
from .errors import BrandNotFoundError
from .queue import enqueue_with
from .text import build_embedding_text

logger = structlog.get_logger()

BRANDS_TABLE = "brands"


class ApprovalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class BrandFields(BaseModel):
    """The editable fields of a brand, and the input of the embedding text."""

    name: str
    creators: str
    description: str = ""
    product_category: str | None = None
    type_of_influencer: str | None = None


class BrandRecord(BrandFields):
    id: int
    approval_status: ApprovalStatus = ApprovalStatus.pending
    embedding: EmbeddingVector | None = None
    last_embedded_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

    @field_validator("embedding", mode="before")
    @classmethod
    def vector_to_list(cls, value: Any) -> Any:
        # pgvector hands back numpy arrays
        if value is not None and hasattr(value, "tolist"):
            return value.tolist()
        return value


class SearchResult(BaseModel):
    """
    A brand as returned by a search.

    `similarity` is set only for semantic matches. Keyword matches leave it
    unset, which is how renderers tell the two kinds apart, so it must never
    be defaulted to 0.
    """

    id: int
    name: str
    creators: str
    product_category: str | None = None
    description: str | None = None
    similarity: float | None = None

    @property
    def is_semantic(self) -> bool:
        return self.similarity is not None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        if self.similarity is None:
            del payload["similarity"]
        return payload


class BrandStore(Protocol):
    async def get_brand(self, brand_id: int) -> BrandRecord: ...

    async def write_embedding(
        self, brand_id: int, embedding: EmbeddingVector
    ) -> None: ...

    async def match_brands(
        self, embedding: EmbeddingVector, threshold: float, count: int
    ) -> list[SearchResult]: ...

    async def search_by_keyword(self, query: str, limit: int) -> list[SearchResult]: ...

    async def list_missing_embeddings(self) -> list[BrandRecord]: ...

    async def insert_brand(
        self, fields: BrandFields, approval_status: ApprovalStatus = ...
    ) -> BrandRecord: ...

    async def update_brand(self, brand_id: int, fields: BrandFields) -> BrandRecord: ...

    async def approve_brand(
        self, brand_id: int, status: ApprovalStatus = ...
    ) -> None: ...


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresBrandStore:
    def __init__(self, pool: AsyncConnectionPool, dimensions: int):
        self.pool = pool
        self.dimensions = dimensions

    @property
    def _table(self) -> sql.Identifier:
        return sql.Identifier(BRANDS_TABLE)

    async def get_brand(self, brand_id: int) -> BrandRecord:
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(
                sql.SQL("select * from {} where id = %s").format(self._table),
                (brand_id,),
            )
            row = await cur.fetchone()
        if row is None:
            raise BrandNotFoundError(brand_id)
        return BrandRecord.model_validate(row)

    async def write_embedding(self, brand_id: int, embedding: EmbeddingVector) -> None:
        """
        Stores the vector of a brand. Writing the same vector twice is harmless.
        """
        async with self.pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(
                sql.SQL("""
                    update {table}
                    set embedding = %s::vector({dimensions})
                    , last_embedded_at = now()
                    , updated_at = now()
                    where id = %s
                """).format(
                    table=self._table, dimensions=sql.Literal(self.dimensions)
                ),
                (embedding, brand_id),
            )
            if cur.rowcount == 0:
                raise BrandNotFoundError(brand_id)

    @tracer.wrap()
    async def match_brands(
        self, embedding: EmbeddingVector, threshold: float, count: int
    ) -> list[SearchResult]:
        """Nearest brands by cosine similarity, best first.

        Brands without a vector, or with an all-zero one, never match.
        """
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            query = sql.SQL("""
                select b.id, b.name, b.creators, b.product_category, b.description
                , 1 - (b.embedding <=> %(query)s::vector({dimensions})) as similarity
                from {table} b
                where b.embedding is not null
                and vector_norm(b.embedding) > 0
                and 1 - (b.embedding <=> %(query)s::vector({dimensions})) >= %(threshold)s
                order by b.embedding <=> %(query)s::vector({dimensions})
                limit %(limit)s
            """).format(  # noqa: E501
                table=self._table, dimensions=sql.Literal(self.dimensions)
            )
            await cur.execute(
                query, dict(query=embedding, threshold=threshold, limit=count)
            )
            rows = await cur.fetchall()
        await logger.adebug("semantic matches", count=len(rows))
        return [SearchResult.model_validate(row) for row in rows]

    async def search_by_keyword(self, query: str, limit: int) -> list[SearchResult]:
        pattern = f"%{escape_like(query.strip())}%"
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(
                sql.SQL("""
                    select id, name, creators, product_category, description
                    from {table}
                    where approval_status = 'approved'
                    and (name ilike %(pattern)s or creators ilike %(pattern)s)
                    order by name
                    limit %(limit)s
                """).format(table=self._table),
                dict(pattern=pattern, limit=limit),
            )
            rows = await cur.fetchall()
        return [SearchResult.model_validate(row) for row in rows]

    async def list_missing_embeddings(self) -> list[BrandRecord]:
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
        ):
            await cur.execute(
                sql.SQL("""
                    select * from {table}
                    where approval_status = 'approved'
                    and (embedding is null or vector_norm(embedding) = 0)
                    order by id
                """).format(table=self._table)
            )
            rows = await cur.fetchall()
        return [BrandRecord.model_validate(row) for row in rows]

    async def insert_brand(
        self,
        fields: BrandFields,
        approval_status: ApprovalStatus = ApprovalStatus.pending,
    ) -> BrandRecord:
        """
        Inserts a brand and enqueues its embedding in the same transaction.
        """
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
            conn.transaction(),
        ):
            await cur.execute(
                sql.SQL("""
                    insert into {table}
                    (name, creators, description, product_category
                    , type_of_influencer, approval_status)
                    values (%s, %s, %s, %s, %s, %s)
                    returning *
                """).format(table=self._table),
                (
                    fields.name,
                    fields.creators,
                    fields.description,
                    fields.product_category,
                    fields.type_of_influencer,
                    approval_status.value,
                ),
            )
            row = await cur.fetchone()
            assert row is not None
            brand = BrandRecord.model_validate(row)
            await enqueue_with(cur, brand.id, build_embedding_text(brand))
        await logger.ainfo("brand inserted", brand_id=brand.id)
        return brand

    async def update_brand(self, brand_id: int, fields: BrandFields) -> BrandRecord:
        async with (
            self.pool.connection() as conn,
            conn.cursor(row_factory=dict_row) as cur,
            conn.transaction(),
        ):
            await cur.execute(
                sql.SQL("""
                    update {table}
                    set name = %s, creators = %s, description = %s
                    , product_category = %s, type_of_influencer = %s
                    , updated_at = now()
                    where id = %s
                    returning *
                """).format(table=self._table),
                (
                    fields.name,
                    fields.creators,
                    fields.description,
                    fields.product_category,
                    fields.type_of_influencer,
                    brand_id,
                ),
            )
            row = await cur.fetchone()
            if row is None:
                raise BrandNotFoundError(brand_id)
            brand = BrandRecord.model_validate(row)
            await enqueue_with(cur, brand.id, build_embedding_text(brand))
        await logger.ainfo("brand updated", brand_id=brand.id)
        return brand

    async def approve_brand(
        self, brand_id: int, status: ApprovalStatus = ApprovalStatus.approved
    ) -> None:
        async with self.pool.connection() as conn, conn.cursor() as cur:
            await cur.execute(
                sql.SQL(
                    "update {} set approval_status = %s, updated_at = now() where id = %s"  # noqa
                ).format(self._table),
                (status.value, brand_id),
            )
            if cur.rowcount == 0:
                raise BrandNotFoundError(brand_id)

