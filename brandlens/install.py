from importlib.resources import files

import psycopg
import structlog
from psycopg import sql as sql_lib

from .errors import EmbeddingModelMismatchError

log = structlog.get_logger()

META_TABLE = "brandlens_meta"


def _get_sql(dimensions: int) -> str:
    with files("brandlens.data").joinpath("schema.sql").open(mode="r") as f:
        sql = f.read()
    return sql.replace("@dimensions@", str(int(dimensions)))


def _get_meta_sql() -> sql_lib.Composed:
    return sql_lib.SQL("select name, value from {}").format(
        sql_lib.Identifier(META_TABLE)
    )


def _set_meta_sql() -> sql_lib.Composed:
    return sql_lib.SQL(
        "insert into {} (name, value) values (%s, %s) on conflict (name) do nothing"
    ).format(sql_lib.Identifier(META_TABLE))


def _get_column_dimensions_sql() -> sql_lib.SQL:
    # for the vector type atttypmod holds the dimension count
    return sql_lib.SQL("""
        select a.atttypmod
        from pg_catalog.pg_attribute a
        where a.attrelid = 'brands'::regclass
        and a.attname = 'embedding'
    """)


def check_embedding_meta(
    meta: dict[str, str],
    model: str,
    dimensions: int,
    column_dimensions: int | None = None,
) -> None:
    """
    Raises `EmbeddingModelMismatchError` when the database was indexed with a
    different model or dimension than the one configured.
    """
    recorded_model = meta.get("embedding_model")
    if recorded_model is not None and recorded_model != model:
        raise EmbeddingModelMismatchError(
            f"database embeddings were built with {recorded_model!r}, configured model is {model!r}"  # noqa
        )
    recorded_dimensions = meta.get("embedding_dimensions")
    if recorded_dimensions is not None and int(recorded_dimensions) != dimensions:
        raise EmbeddingModelMismatchError(
            f"database embeddings have {recorded_dimensions} dimensions, configured {dimensions}"  # noqa
        )
    if column_dimensions is not None and column_dimensions > 0:
        if column_dimensions != dimensions:
            raise EmbeddingModelMismatchError(
                f"brands.embedding is vector({column_dimensions}), configured {dimensions}"  # noqa
            )


async def verify_embedding_model(
    conn: psycopg.AsyncConnection, model: str, dimensions: int
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(_get_meta_sql())
        meta = {name: value for name, value in await cur.fetchall()}
        await cur.execute(_get_column_dimensions_sql())
        row = await cur.fetchone()
    check_embedding_meta(meta, model, dimensions, row[0] if row else None)


async def ainstall(db_url: str, model: str, dimensions: int) -> None:
    """Asynchronously create the brandlens tables in a PostgreSQL database.

    Installing twice is harmless. The embedding model and dimension are
    recorded on the first install and checked on every later one.

    Args:
        db_url: Database connection URL
        model: Embedding model identifier used to index brands
        dimensions: Length of the embedding vectors

    Raises:
        EmbeddingModelMismatchError: If the database was set up for another
            model or dimension.
    """
    async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
        await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        async with conn.transaction():
            await conn.execute(_get_sql(dimensions))  # type: ignore
            await verify_embedding_model(conn, model, dimensions)
            await conn.execute(_set_meta_sql(), ("embedding_model", model))
            await conn.execute(
                _set_meta_sql(), ("embedding_dimensions", str(dimensions))
            )
    log.info("brandlens schema installed", model=model, dimensions=dimensions)


def install(db_url: str, model: str, dimensions: int) -> None:
    """Create the brandlens tables in a PostgreSQL database.

    See `ainstall`.
    """
    with psycopg.connect(db_url, autocommit=True) as conn:
        conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
        with conn.transaction(), conn.cursor() as cur:
            cur.execute(_get_sql(dimensions))  # type: ignore
            cur.execute(_get_meta_sql())
            meta = {name: value for name, value in cur.fetchall()}
            cur.execute(_get_column_dimensions_sql())
            row = cur.fetchone()
            check_embedding_meta(meta, model, dimensions, row[0] if row else None)
            cur.execute(_set_meta_sql(), ("embedding_model", model))
            cur.execute(_set_meta_sql(), ("embedding_dimensions", str(dimensions)))
    log.info("brandlens schema installed", model=model, dimensions=dimensions)
