# =============================================================================
# Query Retriever — Embed the Query, Fetch the Candidate Pool
# =============================================================================
#
# 1. EMBED the query with the same provider used at indexing time
# 2. QUERY the vector store for the initial_top_k nearest neighbours,
#    optionally constrained by a metadata filter
#
# Retrieval is fail-hard: provider and store errors propagate. An empty
# index or an over-restrictive filter simply yields no candidates.
# A query vector whose dimension differs from the index is rejected by the
# store with DimensionMismatchError.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from typing import Any

from ragindex.exceptions import ValidationError
from ragindex.models.results import Candidate
from ragindex.services.cancellation import run_cancellable
from ragindex.services.embedder import EmbeddingProvider
from ragindex.services.metadata import is_safe_key
from ragindex.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)


class QueryRetriever:
    """First stage of the read path."""

    def __init__(self, provider: EmbeddingProvider, store: VectorStore) -> None:
        self._provider = provider
        self._store = store

    async def retrieve(
        self,
        index_name: str,
        query_text: str,
        initial_top_k: int,
        filter: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        include_vector: bool = False,
    ) -> list[Candidate]:
        """
        Return up to `initial_top_k` candidates, most similar first.

        Raises:
            ValidationError: Blank query or initial_top_k < 1.
            ProviderError: Embedding or store call failed.
            DimensionMismatchError: Query vector does not fit the index.
            OperationCancelledError: `cancel_event` fired.
        """
        if not query_text or not query_text.strip():
            raise ValidationError("Query cannot be empty")
        if initial_top_k < 1:
            raise ValidationError(f"initial_top_k must be >= 1, got {initial_top_k}")

        started = time.perf_counter()
        query_vector = await run_cancellable(
            self._provider.embed(query_text), cancel_event, "query embedding",
        )
        embed_ms = (time.perf_counter() - started) * 1000

        if filter:
            cleaned = _sanitize_filter(filter)
            if cleaned != dict(filter):
                logger.warning("Dropped unsafe keys from metadata filter: %s", filter)
            filter = cleaned

        candidates = await run_cancellable(
            self._store.query(
                index_name, query_vector, initial_top_k, filter or None,
                include_vector=include_vector,
            ),
            cancel_event,
            "vector query",
        )

        logger.info(
            "Retrieved %d candidates from '%s' (top_k=%d, dimension=%d, embed=%.0fms)",
            len(candidates), index_name, initial_top_k, len(query_vector), embed_ms,
        )
        return candidates


def _sanitize_filter(filter: Mapping[str, Any]) -> dict[str, Any]:
    """
    Drop unsafe field names while keeping top-level $and / $or.

    Operator dicts under a field ({"year": {"$gte": 2020}}) are values, not
    keys, so they are left alone.
    """
    cleaned: dict[str, Any] = {}
    for key, value in filter.items():
        if key in ("$and", "$or") and isinstance(value, list):
            cleaned[key] = [_sanitize_filter(v) for v in value if isinstance(v, Mapping)]
        elif is_safe_key(key):
            cleaned[key] = value
    return cleaned
