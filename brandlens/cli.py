import asyncio
import datetime
import logging
import signal
import sys
from typing import Any

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from pytimeparse import parse  # type: ignore

from .__init__ import __version__
from .configuration import Settings
from .orchestrator import SearchOutcome, SearchState, format_match

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

LOG_LEVELS = ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"]


class TimeDurationParamType(click.ParamType):
    name = "time duration"

    def convert(self, value, param, ctx) -> int:  # type: ignore
        if isinstance(value, int):
            return value
        val: int | None = parse(value)  # type: ignore
        if val is not None:
            return val  # type: ignore
        try:
            val = int(value, 10)
            if val < 0:
                self.fail(
                    "time duration can't be negative",
                    param,
                    ctx,
                )
            return val
        except ValueError:
            self.fail(
                f"{value!r} is not a valid duration string or integer",
                param,
                ctx,
            )


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.INFO


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(level))
    )


def shutdown_handler(signum: int, _frame: Any):
    signame = signal.Signals(signum).name
    log.info(f"received {signame}, exiting")
    exit(0)


def load_settings(db_url: str | None) -> Settings:
    settings = Settings.from_env()
    if db_url:
        settings = settings.model_copy(update={"db_url": db_url})
    return settings


db_url_option = click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    default=None,
    envvar="BRANDLENS_DB_URL",
    help="The database URL to connect to",
)

log_level_option = click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
)


@click.group()
@click.version_option(version=__version__)
def cli():
    pass


@cli.command()
@db_url_option
def install(db_url: str | None) -> None:
    """Create the brandlens tables in the database."""
    from .install import install as install_schema

    settings = load_settings(db_url)
    install_schema(settings.db_url, settings.model, settings.embedding_dimensions)
    log.info(f"brandlens {__version__} installed")


@cli.command(name="worker")
@db_url_option
@log_level_option
@click.option(
    "--poll-interval",
    type=TimeDurationParamType(),
    default="1m",
    show_default=True,
    help="The interval, in duration string or integer (seconds), "
    "to wait before checking for new work after processing "
    "all available work in the queue.",
)
@click.option(
    "--once",
    type=click.BOOL,
    is_flag=True,
    default=False,
    show_default=True,
    help="Exit after processing all available work.",
)
@click.option(
    "-b",
    "--batch-size",
    type=click.IntRange(1),
    default=None,
    help="Queue items claimed per batch. Defaults to BRANDLENS_QUEUE_BATCH_SIZE.",
)
@click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(1),
    default=None,
    help="Queue items processed at the same time within a batch.",
)
def worker(
    db_url: str | None,
    log_level: str,
    poll_interval: int,
    once: bool,
    batch_size: int | None,
    concurrency: int | None,
) -> None:
    """Process the embedding queue."""
    settings = load_settings(db_url)
    if concurrency is not None:
        settings = settings.model_copy(update={"queue_concurrency": concurrency})
    asyncio.run(
        async_run_worker(
            settings,
            log_level,
            poll_interval,
            once,
            batch_size if batch_size is not None else settings.queue_batch_size,
        )
    )


async def async_run_worker(
    settings: Settings,
    log_level: str,
    poll_interval: int,
    once: bool,
    batch_size: int,
) -> None:
    from .db import create_pool
    from .install import verify_embedding_model
    from .services import postgres_services
    from .worker import Worker

    # gracefully handle being asked to shut down
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    configure_logging(log_level)

    pool = create_pool(settings.db_url)
    await pool.open()
    try:
        async with pool.connection() as conn:
            await verify_embedding_model(
                conn, settings.model, settings.embedding_dimensions
            )
        services = postgres_services(settings, pool)
        exception = await Worker(
            services.processor.run,
            datetime.timedelta(seconds=poll_interval),
            once,
            batch_size,
        ).run()
    finally:
        await pool.close()
    if exception is not None:
        sys.exit(1)


@cli.command(name="enqueue-missing")
@db_url_option
@log_level_option
def enqueue_missing(db_url: str | None, log_level: str) -> None:
    """Queue every approved brand that has no usable embedding."""
    configure_logging(log_level)
    settings = load_settings(db_url)

    async def run() -> int:
        from .brands import PostgresBrandStore
        from .db import create_pool
        from .processor import enqueue_missing as enqueue
        from .queue import PostgresEmbeddingQueue

        pool = create_pool(settings.db_url)
        await pool.open()
        try:
            return await enqueue(
                PostgresEmbeddingQueue(pool),
                PostgresBrandStore(pool, settings.embedding_dimensions),
            )
        finally:
            await pool.close()

    count = asyncio.run(run())
    click.echo(f"enqueued {count} brands")


def render_outcome(
    console: Any, outcome: SearchOutcome, min_query_length: int
) -> None:
    """Ranked table for semantic results, plain list for keyword results."""
    from rich.table import Table

    if outcome.state == SearchState.rendered_semantic:
        table = Table(title=f"Brands matching {outcome.query!r}")
        table.add_column("#", justify="right")
        table.add_column("Brand")
        table.add_column("Creators")
        table.add_column("Category")
        table.add_column("Match", justify="right")
        for rank, result in enumerate(outcome.results, start=1):
            table.add_row(
                str(rank),
                result.name,
                result.creators,
                result.product_category or "",
                format_match(result) or "",
            )
        console.print(table)
    elif outcome.state == SearchState.rendered_keyword:
        console.print(
            f"[bold]Brands whose name or creators contain {outcome.query!r}[/bold]"
        )
        for result in outcome.results:
            console.print(f"  {result.name} ({result.creators})")
    elif outcome.state == SearchState.rendered_empty:
        console.print(f"No brands match {outcome.query!r}.")
    elif outcome.state == SearchState.timed_out:
        console.print(f"[yellow]{outcome.error}[/yellow], try again in a moment.")
    elif outcome.state == SearchState.error:
        console.print(f"[red]Search failed:[/red] {outcome.error}")
    else:
        console.print(f"Type at least {min_query_length} characters to search.")


@cli.command()
@click.argument("query", nargs=-1, required=True)
@db_url_option
@log_level_option
@click.option(
    "--api-url",
    type=click.STRING,
    default=None,
    envvar="BRANDLENS_API_URL",
    help="Search through a running brandlens API instead of the database.",
)
def search(
    query: tuple[str, ...], db_url: str | None, log_level: str, api_url: str | None
) -> None:
    """Search brands, semantically first and by keyword when nothing matches."""
    from rich.console import Console

    configure_logging(log_level)
    settings = load_settings(db_url)
    text = " ".join(query)

    async def run() -> SearchOutcome:
        from .orchestrator import HttpSearchBackend, LocalSearchBackend, SearchSession

        if api_url:
            backend = HttpSearchBackend(api_url, timeout=settings.search_timeout)
            try:
                session = SearchSession.from_settings(backend, settings)
                return await session.search_now(text)
            finally:
                await backend.aclose()

        from .db import create_pool
        from .services import postgres_services

        pool = create_pool(settings.db_url)
        await pool.open()
        try:
            services = postgres_services(settings, pool)
            session = SearchSession.from_settings(
                LocalSearchBackend(services.semantic, services.keyword), settings
            )
            return await session.search_now(text)
        finally:
            await pool.close()

    outcome = asyncio.run(run())
    render_outcome(Console(), outcome, settings.min_query_length)
    if outcome.state in (SearchState.error, SearchState.timed_out):
        sys.exit(1)


@cli.command()
@click.argument("text", nargs=-1, required=True)
def embed(text: tuple[str, ...]) -> None:
    """Print the embedding of TEXT, e.g. to query match_brands by hand."""
    from .embedders import build_embedder

    settings = Settings.from_env()
    embedding = asyncio.run(build_embedder(settings).embed(" ".join(text)))
    head = ", ".join(f"{value:.6f}" for value in embedding[:5])
    click.echo(f"model: {settings.model}", err=True)
    click.echo(f"dimensions: {len(embedding)}", err=True)
    click.echo(f"first values: [{head}, ...]", err=True)
    click.echo(f"[{','.join(str(value) for value in embedding)}]")


@cli.command()
@click.option("--host", type=click.STRING, default="127.0.0.1", show_default=True)
@click.option("--port", type=click.INT, default=8000, show_default=True)
@log_level_option
def serve(host: str, port: int, log_level: str) -> None:
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app

    configure_logging(log_level)
    level = log_level.lower()
    level = {"warn": "warning", "fatal": "critical"}.get(level, level)
    uvicorn.run(create_app(), host=host, port=port, log_level=level)
