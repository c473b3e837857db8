# =============================================================================
# Retrieval Orchestrator — Query → Ranked Results
# =============================================================================
#
# The read path:
#
#   1. RETRIEVE — embed the query, fetch the initial_top_k nearest chunks
#   2. RERANK  — rescore the pool with the relevance judge, vector score and
#                original position, keep the best top_k
#
# initial_top_k must be >= top_k: reranking only helps when the candidate
# pool is larger than the final result. An empty pool short-circuits to []
# without invoking the judge.
#
# Unlike indexing, retrieval is fail-hard. ProviderError from the embedding
# provider, the store or the judge propagates to the caller.
#
# Per call, `embedding_model` picks the query embedding model (it must match
# the model the index was built with) and `rerank_model` picks the judge by
# provider id, e.g. "anthropic/claude-sonnet-4-6". Both fall back to the
# objects the Searcher was built with.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from ragindex.config import Settings, get_settings
from ragindex.exceptions import OperationCancelledError, ValidationError
from ragindex.models.results import Candidate, RerankResult, RerankWeights
from ragindex.services.embedder import EmbeddingProvider, EmbeddingProviderPool
from ragindex.services.events import EventSink, LoggingEventSink
from ragindex.services.relevance import LLMRelevanceJudge, RelevanceJudge
from ragindex.services.reranker import Reranker
from ragindex.services.retriever import QueryRetriever
from ragindex.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)


class Searcher:
    """
    Retrieve-then-rerank over one vector store.

    `provider_factory` builds embedding providers for per-call
    `embedding_model` names, `judge_factory` builds judges for per-call
    `rerank_model` ids. Both default to the configured SDK-backed classes
    and each result is cached for the Searcher's lifetime.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: VectorStore,
        judge: RelevanceJudge,
        events: EventSink | None = None,
        settings: Settings | None = None,
        provider_factory: Callable[[str], EmbeddingProvider] | None = None,
        judge_factory: Callable[[str], RelevanceJudge] | None = None,
    ) -> None:
        self._events = events or LoggingEventSink()
        self._settings = settings or get_settings()
        self._store = store
        self._providers = EmbeddingProviderPool(provider, provider_factory, self._settings)
        self._judge = judge
        self._judge_factory = judge_factory or (
            lambda model_id: LLMRelevanceJudge(model_id=model_id, settings=self._settings)
        )
        self._judges: dict[str, RelevanceJudge] = {}

    def _judge_for(self, rerank_model: str | None) -> RelevanceJudge:
        if not rerank_model or rerank_model == getattr(self._judge, "model_id", None):
            return self._judge
        judge = self._judges.get(rerank_model)
        if judge is None:
            logger.info("Building relevance judge for model=%s", rerank_model)
            judge = self._judge_factory(rerank_model)
            self._judges[rerank_model] = judge
        return judge

    async def search(
        self,
        index_name: str,
        query_text: str,
        top_k: int | None = None,
        initial_top_k: int | None = None,
        weights: RerankWeights | Mapping[str, float] | None = None,
        filter: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        include_vector: bool = False,
        embedding_model: str | None = None,
        rerank_model: str | None = None,
    ) -> list[RerankResult]:
        """
        Return up to `top_k` reranked results for `query_text`.

        Args:
            index_name: Index to search.
            query_text: The user's query.
            top_k: Final result size (default settings.retrieval_top_k).
            initial_top_k: Candidate pool size (default
                settings.retrieval_initial_top_k, raised to top_k if lower).
            weights: Rerank weights (default from settings).
            filter: Store-specific metadata filter.
            cancel_event: Caller's cancel signal.
            include_vector: Attach each result's stored vector.
            embedding_model: Query embedding model (default: the Searcher's
                provider).
            rerank_model: Judge provider id (default: the Searcher's judge).

        Raises:
            ValidationError: Blank query, top_k < 1, initial_top_k < top_k
                or an unparseable rerank_model.
            ProviderError: Embedding, store or judge call failed.
            DimensionMismatchError: Query vector does not fit the index.
            OperationCancelledError: cancel_event fired; `partial` holds the
                candidates retrieved so far (possibly empty).
        """
        cfg = self._settings
        _top_k = top_k if top_k is not None else cfg.retrieval_top_k
        _initial_top_k = (
            initial_top_k if initial_top_k is not None
            else max(cfg.retrieval_initial_top_k, _top_k)
        )
        if _top_k < 1:
            raise ValidationError(f"top_k must be >= 1, got {_top_k}")
        if _initial_top_k < _top_k:
            raise ValidationError(
                f"initial_top_k ({_initial_top_k}) must be >= top_k ({_top_k})"
            )
        if weights is None:
            weights = RerankWeights(
                semantic=cfg.rerank_semantic_weight,
                vector=cfg.rerank_vector_weight,
                position=cfg.rerank_position_weight,
            )

        retriever = QueryRetriever(self._providers.get(embedding_model), self._store)
        reranker = Reranker(self._judge_for(rerank_model), events=self._events)

        started = time.perf_counter()
        candidates: list[Candidate] = []
        try:
            candidates = await retriever.retrieve(
                index_name, query_text, _initial_top_k,
                filter=filter, cancel_event=cancel_event, include_vector=include_vector,
            )
            self._events.emit(
                "retrieval.candidates", index_name=index_name, count=len(candidates),
            )
            if not candidates:
                logger.info("No candidates in '%s' for query '%s'", index_name, query_text[:80])
                return []

            results = await reranker.rerank(
                candidates, query_text, weights, _top_k, cancel_event=cancel_event,
            )
        except OperationCancelledError as e:
            e.partial = candidates
            self._events.emit(
                "retrieval.cancelled", index_name=index_name, candidates=len(candidates),
            )
            raise
        except asyncio.CancelledError:
            self._events.emit(
                "retrieval.cancelled",
                index_name=index_name,
                candidates=len(candidates),
                native=True,
            )
            raise

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Search in '%s' complete: %d candidates → %d results (%.0fms)",
            index_name, len(candidates), len(results), elapsed_ms,
        )
        self._events.emit(
            "retrieval.reranked",
            index_name=index_name,
            candidates=len(candidates),
            results=len(results),
            elapsed_ms=elapsed_ms,
        )
        return results
