import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx
import structlog

from .brands import SearchResult
from .configuration import Settings
from .errors import SearchError, SearchTimeoutError
from .search import KeywordSearch, SemanticSearchService

logger = structlog.get_logger()


class SearchBackend(Protocol):
    async def semantic(self, query: str) -> list[SearchResult]: ...

    async def keyword(self, query: str) -> list[SearchResult]: ...


class LocalSearchBackend:
    """Runs both searches in-process."""

    def __init__(self, semantic: SemanticSearchService, keyword: KeywordSearch):
        self._semantic = semantic
        self._keyword = keyword

    async def semantic(self, query: str) -> list[SearchResult]:
        return await self._semantic.search(query)

    async def keyword(self, query: str) -> list[SearchResult]:
        return await self._keyword.search(query)


def parse_results(data: Any) -> list[SearchResult]:
    """
    Accepts both a bare list of results and an object holding them under
    "results".
    """
    if isinstance(data, dict):
        if "error" in data and "results" not in data:
            raise SearchError(str(data["error"]))
        data = data.get("results") or []
    if not isinstance(data, list):
        raise SearchError(f"unexpected search response: {type(data).__name__}")
    return [SearchResult.model_validate(item) for item in data]


class HttpSearchBackend:
    """
    Talks to the HTTP API. Timeouts surface as `SearchTimeoutError`, every
    other failure as `SearchError`.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.client = (
            client
            if client is not None
            else httpx.AsyncClient(base_url=base_url, timeout=timeout)
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SearchTimeoutError("search request timed out") from e
        except httpx.HTTPError as e:
            raise SearchError(f"search request failed: {e}") from e
        if response.is_error:
            try:
                message = response.json().get("error") or response.text
            except ValueError:
                message = response.text
            raise SearchError(f"search failed with {response.status_code}: {message}")
        return response.json()

    async def semantic(self, query: str) -> list[SearchResult]:
        data = await self._request("POST", "/semantic-search", json={"query": query})
        return parse_results(data)

    async def keyword(self, query: str) -> list[SearchResult]:
        data = await self._request("GET", "/brands/search", params={"q": query})
        return [
            result.model_copy(update={"similarity": None})
            for result in parse_results(data)
        ]

    async def aclose(self) -> None:
        await self.client.aclose()


class SearchState(str, Enum):
    idle = "idle"
    searching_semantic = "searching_semantic"
    searching_keyword = "searching_keyword"
    rendered_semantic = "rendered_semantic"
    rendered_keyword = "rendered_keyword"
    rendered_empty = "rendered_empty"
    error = "error"
    timed_out = "timed_out"


@dataclass
class SearchOutcome:
    state: SearchState
    query: str
    results: list[SearchResult] = field(default_factory=list)
    error: str | None = None
    sequence: int = 0

    @property
    def ranked(self) -> bool:
        return self.state == SearchState.rendered_semantic


def format_match(result: SearchResult) -> str | None:
    if result.similarity is None:
        return None
    return f"{round(result.similarity * 100)}% match"


class SearchSession:
    """
    One user's search box.

    Semantic search runs first; keyword search runs only when semantic search
    succeeded with no results. A semantic failure is reported as is. Every
    issued search gets a sequence number and only the latest one may change
    what is shown, so a slow answer to an old query is dropped.
    """

    def __init__(
        self,
        backend: SearchBackend,
        timeout: float = 30.0,
        debounce: float = 0.3,
        min_query_length: int = 3,
        on_render: Callable[[SearchOutcome], None] | None = None,
    ):
        self.backend = backend
        self.timeout = timeout
        self.debounce = debounce
        self.min_query_length = min_query_length
        self.on_render = on_render
        self.outcome = SearchOutcome(SearchState.idle, "")
        self._sequence = 0
        self._task: asyncio.Task[SearchOutcome] | None = None

    @classmethod
    def from_settings(
        cls,
        backend: SearchBackend,
        settings: Settings,
        on_render: Callable[[SearchOutcome], None] | None = None,
    ) -> "SearchSession":
        return cls(
            backend,
            timeout=settings.search_timeout,
            debounce=settings.search_debounce,
            min_query_length=settings.min_query_length,
            on_render=on_render,
        )

    @property
    def state(self) -> SearchState:
        return self.outcome.state

    @property
    def sequence(self) -> int:
        return self._sequence

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _cancel_pending(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _is_stale(self, sequence: int) -> bool:
        return sequence != self._sequence

    async def _apply(self, outcome: SearchOutcome) -> SearchOutcome:
        if self._is_stale(outcome.sequence):
            await logger.adebug(
                "discarding stale search result",
                query=outcome.query,
                sequence=outcome.sequence,
                latest=self._sequence,
            )
            return outcome
        self.outcome = outcome
        if self.on_render is not None:
            self.on_render(outcome)
        return outcome

    async def _transition(self, state: SearchState, query: str, sequence: int):
        await self._apply(SearchOutcome(state, query, sequence=sequence))

    async def submit(self, query: str) -> None:
        """
        Handles a change of the input. The search starts after the debounce
        delay unless another change arrives first.
        """
        query = query.strip()
        self._cancel_pending()
        sequence = self._next_sequence()
        if len(query) < self.min_query_length:
            await self._transition(SearchState.idle, query, sequence)
            return
        self._task = asyncio.create_task(self._debounced(query, sequence))

    async def _debounced(self, query: str, sequence: int) -> SearchOutcome:
        if self.debounce > 0:
            await asyncio.sleep(self.debounce)
        return await self._run(query, sequence)

    async def search_now(self, query: str) -> SearchOutcome:
        query = query.strip()
        self._cancel_pending()
        sequence = self._next_sequence()
        if len(query) < self.min_query_length:
            await self._transition(SearchState.idle, query, sequence)
            return self.outcome
        return await self._run(query, sequence)

    def _timed_out(self, query: str, sequence: int) -> SearchOutcome:
        return SearchOutcome(
            SearchState.timed_out,
            query,
            error=f"search timed out after {self.timeout:g}s",
            sequence=sequence,
        )

    async def _run(self, query: str, sequence: int) -> SearchOutcome:
        await self._transition(SearchState.searching_semantic, query, sequence)
        try:
            results = await asyncio.wait_for(
                self.backend.semantic(query), timeout=self.timeout
            )
        except (asyncio.TimeoutError, SearchTimeoutError):
            return await self._apply(self._timed_out(query, sequence))
        except Exception as e:
            await logger.awarning("semantic search failed", query=query, error=str(e))
            return await self._apply(
                SearchOutcome(SearchState.error, query, error=str(e), sequence=sequence)
            )

        if results:
            return await self._apply(
                SearchOutcome(
                    SearchState.rendered_semantic, query, results, sequence=sequence
                )
            )
        if self._is_stale(sequence):
            # superseded while the semantic call was in flight
            await logger.adebug("skipping keyword search", query=query)
            return SearchOutcome(SearchState.rendered_empty, query, sequence=sequence)

        await self._transition(SearchState.searching_keyword, query, sequence)
        try:
            results = await asyncio.wait_for(
                self.backend.keyword(query), timeout=self.timeout
            )
        except (asyncio.TimeoutError, SearchTimeoutError):
            return await self._apply(self._timed_out(query, sequence))
        except Exception as e:
            await logger.awarning("keyword search failed", query=query, error=str(e))
            return await self._apply(
                SearchOutcome(SearchState.error, query, error=str(e), sequence=sequence)
            )

        state = SearchState.rendered_keyword if results else SearchState.rendered_empty
        return await self._apply(
            SearchOutcome(state, query, results, sequence=sequence)
        )

    async def wait(self) -> SearchOutcome:
        """Waits for the scheduled search, if any, and returns what is shown."""
        if self._task is not None:
            # returns once the task finished, was cancelled or failed
            await asyncio.wait([self._task])
        return self.outcome

    async def close(self) -> None:
        self._cancel_pending()
        await self.wait()
        self._task = None
