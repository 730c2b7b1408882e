from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import backoff
import structlog
from backoff._typing import Details
from pydantic import BaseModel, Field

logger = structlog.get_logger()

T = TypeVar("T")

AsyncCallable = Callable[..., Awaitable[T]]


class RetryPolicy(BaseModel):
    """
    Exponential backoff between attempts of a unit of work.

    Attributes:
        initial_delay (float): Seconds to wait after the first failure.
        multiplier (float): Growth factor applied to the wait on every retry.
        max_delay (float): Upper bound of a single wait, in seconds.
        max_attempts (int): Total number of calls, the first one included.
        jitter (bool): Whether to draw each wait uniformly from [0, delay].
    """

    initial_delay: float = Field(default=1.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=5.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    jitter: bool = True

    def retrying(
        self,
        exceptions: type[BaseException] | tuple[type[BaseException], ...],
        operation: str = "call",
    ) -> Callable[[AsyncCallable[T]], AsyncCallable[T]]:
        """
        Returns a decorator that retries an async callable on `exceptions`
        according to this policy. The last exception is re-raised once the
        attempts are exhausted.
        """

        def on_backoff(detail: Details):
            logger.warning(
                f"{operation} retry: {detail['tries']} wait: {detail.get('wait', 0.0):.2f}s",  # noqa
                operation=operation,
                tries=detail["tries"],
                wait=detail.get("wait"),
                error=str(detail.get("exception")),
            )

        return backoff.on_exception(
            backoff.expo,
            exceptions,
            max_tries=self.max_attempts,
            jitter=backoff.full_jitter if self.jitter else None,
            on_backoff=on_backoff,
            raise_on_giveup=True,
            factor=self.initial_delay,
            base=self.multiplier,
            max_value=self.max_delay,
        )

    async def call(
        self,
        fn: AsyncCallable[T],
        *args: Any,
        exceptions: type[BaseException] | tuple[type[BaseException], ...],
        operation: str = "call",
        **kwargs: Any,
    ) -> T:
        return await self.retrying(exceptions, operation)(fn)(*args, **kwargs)
