# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Deterministic stand-ins for the external providers so the pipeline can be
# exercised end to end without API keys, databases or network calls.
# =============================================================================

from __future__ import annotations

import re
import zlib
from collections.abc import Sequence

import pytest

from ragindex.config import Settings
from ragindex.exceptions import ProviderError
from ragindex.services.events import RecordingEventSink
from ragindex.services.vectorstore import InMemoryVectorStore


class HashingEmbeddingProvider:
    """
    Bag-of-words embeddings: each word bumps one of `dimension` buckets.

    Identical texts always map to identical vectors. Calls listed in
    `fail_calls` (1-based) raise ProviderError.
    """

    model = "test-hashing"

    def __init__(self, dimension: int = 16, fail_calls: Sequence[int] = ()) -> None:
        self.dimension = dimension
        self.fail_calls = set(fail_calls)
        self.calls: list[list[str]] = []

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if len(self.calls) in self.fail_calls:
            raise ProviderError("embedding service unavailable", provider="fake")
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            vector[zlib.crc32(word.encode()) % self.dimension] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        embedding_batch_size=2,
        embedding_max_concurrency=1,
        chunk_size=512,
        chunk_overlap=50,
        retrieval_top_k=3,
        retrieval_initial_top_k=5,
    )


@pytest.fixture
def embedder() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider()


@pytest.fixture
def memory_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def embedder_factory() -> type[HashingEmbeddingProvider]:
    """For tests that need a custom dimension or failing calls."""
    return HashingEmbeddingProvider
