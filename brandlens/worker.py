import asyncio
import datetime
import traceback
from collections.abc import Awaitable, Callable

import psycopg
import structlog

from .processor import ProcessingSummary

logger = structlog.get_logger()

RunBatch = Callable[[int], Awaitable[ProcessingSummary]]


class Worker:
    """
    Polls the embedding queue.

    Every round drains batches until one comes back empty, then sleeps for
    `poll_interval` or until a shutdown is requested. In once mode the
    worker exits after the first round, and reports a database failure
    instead of retrying it.
    """

    def __init__(
        self,
        run_batch: RunBatch,
        poll_interval: datetime.timedelta = datetime.timedelta(minutes=1),
        once: bool = False,
        batch_size: int = 50,
    ):
        self.run_batch = run_batch
        self.poll_interval = int(poll_interval.total_seconds())
        self.once = once
        self.batch_size = batch_size
        self.shutdown_requested = asyncio.Event()
        self.totals = ProcessingSummary()

    async def request_graceful_shutdown(self):
        """
        Request a graceful shutdown of the worker.
        """
        self.shutdown_requested.set()

    async def _drain(self) -> None:
        while not self.shutdown_requested.is_set():
            summary = await self.run_batch(self.batch_size)
            self.totals.total += summary.total
            self.totals.successful += summary.successful
            self.totals.failed += summary.failed
            self.totals.errors.extend(summary.errors)
            if summary.total == 0:
                return

    async def run(self) -> Exception | None:
        logger.debug("starting embedding worker")

        while not self.shutdown_requested.is_set():
            try:
                await self._drain()
            except psycopg.OperationalError as e:
                if "connection failed" in str(e):
                    err_msg = f"unable to connect to database: {str(e)}"
                else:
                    err_msg = f"unexpected error: {str(e)}"
                logger.error(err_msg)
                if self.once:
                    return Exception(err_msg)
            except Exception as e:
                # log and keep polling, the next round may succeed
                for exception_line in traceback.format_exception(e):
                    for line in exception_line.rstrip().split("\n"):
                        logger.debug(line)
                err_msg = f"unexpected error: {str(e)}"
                logger.error(err_msg)
                if self.once:
                    return Exception(err_msg)

            if self.once:
                logger.info(
                    "once mode, exiting...",
                    successful=self.totals.successful,
                    failed=self.totals.failed,
                )
                return None

            poll_interval_str = datetime.timedelta(seconds=self.poll_interval)
            logger.info(f"sleeping for {poll_interval_str} before polling for new work")
            try:
                await asyncio.wait_for(
                    self.shutdown_requested.wait(), timeout=self.poll_interval
                )
                logger.info("got a graceful shutdown request")
            except asyncio.TimeoutError:
                pass

        logger.info("exiting worker.run()")
        return None
