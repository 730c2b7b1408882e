import psycopg
from pgvector.psycopg import register_vector_async  # type: ignore
from psycopg_pool import AsyncConnectionPool


async def configure_connection(conn: psycopg.AsyncConnection) -> None:
    await register_vector_async(conn)


def create_pool(
    db_url: str, min_size: int = 1, max_size: int = 10
) -> AsyncConnectionPool:
    """
    Creates a closed pool whose connections understand the vector type.
    Callers open it with `await pool.open()`.
    """
    return AsyncConnectionPool(
        db_url,
        min_size=min_size,
        max_size=max_size,
        open=False,
        configure=configure_connection,
    )
