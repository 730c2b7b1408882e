import pytest

from brandlens.configuration import Settings
from brandlens.retry import RetryPolicy
from tests.utils import (
    DIMENSIONS,
    InMemoryBrandStore,
    InMemoryQueue,
    ScriptedEmbedder,
)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(initial_delay=0.01, multiplier=2, max_delay=0.05, jitter=False)


@pytest.fixture
def settings(fast_retry: RetryPolicy) -> Settings:
    return Settings(embedding_dimensions=DIMENSIONS, retry=fast_retry)


@pytest.fixture
def queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest.fixture
def store(queue: InMemoryQueue) -> InMemoryBrandStore:
    return InMemoryBrandStore(queue=queue)


@pytest.fixture
def embedder() -> ScriptedEmbedder:
    return ScriptedEmbedder()
