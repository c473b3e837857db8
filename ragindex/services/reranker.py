# =============================================================================
# Reranker — Weighted Multi-Signal Rescoring of the Candidate Pool
# =============================================================================
#
# Each candidate gets three signals, all in [0, 1]:
#
#   semantic  relevance judge's score for (query, candidate text)
#   vector    the store's similarity score from the initial search
#   position  1 - (original_rank / total_candidates), original_rank 0-based
#
#   final = w.semantic * semantic + w.vector * vector + w.position * position
#
# Weights are normalised to sum to 1 before use; an all-zero input falls
# back to the default {0.5, 0.3, 0.2}. Results are sorted by final score
# descending, ties broken by vector score (descending) and then by the
# original position, truncated to top_k and ranked from 1.
#
# Given identical judge outputs the ordering is fully deterministic.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ragindex.exceptions import ProviderError, ValidationError
from ragindex.models.results import Candidate, RerankResult, RerankWeights
from ragindex.services.cancellation import run_cancellable
from ragindex.services.events import EventSink, NullEventSink
from ragindex.services.relevance import RelevanceJudge

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = RerankWeights(semantic=0.5, vector=0.3, position=0.2)

_SUM_TOLERANCE = 1e-6


def normalize_weights(
    weights: RerankWeights | Mapping[str, float] | None,
) -> tuple[RerankWeights, bool]:
    """
    Scale weights so they sum to 1.

    Returns:
        (normalised weights, changed) where `changed` is True when the
        caller's values had to be rescaled or replaced by the defaults.

    Raises:
        ValidationError: A weight is negative or not a number.
    """
    if weights is None:
        return DEFAULT_WEIGHTS, False
    if not isinstance(weights, RerankWeights):
        try:
            weights = RerankWeights(**dict(weights))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid rerank weights: {e}") from e

    total = weights.total
    if total <= 0:
        logger.warning(
            "All rerank weights are zero; using defaults %s", DEFAULT_WEIGHTS.model_dump(),
        )
        return DEFAULT_WEIGHTS, True
    if abs(total - 1.0) <= _SUM_TOLERANCE:
        return weights, False

    normalized = RerankWeights(
        semantic=weights.semantic / total,
        vector=weights.vector / total,
        position=weights.position / total,
    )
    logger.info(
        "Normalized reranker weights (original sum=%.4f): %s",
        total, normalized.model_dump(),
    )
    return normalized, True


class Reranker:
    """Combines judge, vector and position signals into one ranking."""

    def __init__(self, judge: RelevanceJudge, events: EventSink | None = None) -> None:
        self._judge = judge
        self._events = events or NullEventSink()

    async def rerank(
        self,
        candidates: Sequence[Candidate],
        query_text: str,
        weights: RerankWeights | Mapping[str, float] | None = None,
        top_k: int = 10,
        cancel_event: asyncio.Event | None = None,
    ) -> list[RerankResult]:
        """
        Rescore and reorder `candidates` (given best-first from the store).

        Raises:
            ValidationError: top_k < 1 or invalid weights.
            ProviderError: The judge failed or returned the wrong count.
            OperationCancelledError: `cancel_event` fired while judging.
        """
        if top_k < 1:
            raise ValidationError(f"top_k must be >= 1, got {top_k}")
        if not candidates:
            return []

        original = weights
        w, changed = normalize_weights(weights)
        if changed:
            self._events.emit(
                "rerank.weights_normalized",
                original=_weights_dict(original),
                normalized=w.model_dump(),
            )

        total = len(candidates)
        if w.semantic > 0:
            semantic_scores = await run_cancellable(
                self._judge.score_many(query_text, [c.text for c in candidates]),
                cancel_event,
                "relevance judging",
            )
            if len(semantic_scores) != total:
                raise ProviderError(
                    f"Relevance judge returned {len(semantic_scores)} scores "
                    f"for {total} candidates",
                    provider="judge",
                )
        else:
            # Semantic signal carries no weight; skip the judge calls.
            semantic_scores = [0.0] * total

        scored: list[tuple[float, float, int, Candidate, float, float]] = []
        for position, (candidate, semantic) in enumerate(zip(candidates, semantic_scores)):
            semantic_score = _clamp(semantic)
            vector_score = _clamp(candidate.score)
            position_score = 1.0 - (position / total)
            final = (
                w.semantic * semantic_score
                + w.vector * vector_score
                + w.position * position_score
            )
            scored.append((final, vector_score, position, candidate, semantic_score, position_score))

        scored.sort(key=lambda s: (-s[0], -s[1], s[2]))

        results = [
            RerankResult(
                id=candidate.id,
                text=candidate.text,
                metadata=dict(candidate.metadata),
                relevance_score=final,
                rank=rank,
                semantic_score=semantic_score,
                vector_score=vector_score,
                position_score=position_score,
                vector=candidate.vector,
            )
            for rank, (final, vector_score, _, candidate, semantic_score, position_score)
            in enumerate(scored[:top_k], start=1)
        ]

        logger.info(
            "Reranked %d candidates → %d results (weights=%s)",
            total, len(results), w.model_dump(),
        )
        return results


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(max(number, 0.0), 1.0)


def _weights_dict(weights: RerankWeights | Mapping[str, float] | None) -> dict[str, Any]:
    if weights is None:
        return {}
    if isinstance(weights, RerankWeights):
        return weights.model_dump()
    return dict(weights)
