# =============================================================================
# Unit Tests — Reranker
# =============================================================================
#
# Uses a fixed-score judge so orderings are fully deterministic.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ragindex.exceptions import OperationCancelledError, ProviderError, ValidationError
from ragindex.models.results import Candidate, RerankWeights
from ragindex.services.reranker import DEFAULT_WEIGHTS, Reranker, normalize_weights


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FixedJudge:
    """Scores each text from a lookup table, counting score_many calls."""

    def __init__(self, scores: dict[str, float]) -> None:
        self.scores = scores
        self.calls = 0

    async def score(self, query: str, text: str) -> float:
        return self.scores.get(text, 0.0)

    async def score_many(self, query: str, texts) -> list[float]:
        self.calls += 1
        return [self.scores.get(t, 0.0) for t in texts]


def _candidates(*rows: tuple[str, float, str]) -> list[Candidate]:
    return [Candidate(id=i, score=s, metadata={"text": t}) for i, s, t in rows]


POOL = _candidates(
    ("a", 0.9, "alpha"),
    ("b", 0.8, "beta"),
    ("c", 0.7, "gamma"),
    ("d", 0.6, "delta"),
)
JUDGE_SCORES = {"alpha": 0.1, "beta": 0.5, "gamma": 0.9, "delta": 0.3}


# ---------------------------------------------------------------------------
# Test: normalize_weights()
# ---------------------------------------------------------------------------


class TestNormalizeWeights:
    def test_none_is_default(self):
        assert normalize_weights(None) == (DEFAULT_WEIGHTS, False)

    def test_unit_sum_unchanged(self):
        weights = RerankWeights(semantic=0.6, vector=0.2, position=0.2)
        assert normalize_weights(weights) == (weights, False)

    def test_scaled_to_unit_sum(self):
        weights, changed = normalize_weights({"semantic": 1, "vector": 1, "position": 2})
        assert changed
        assert (weights.semantic, weights.vector, weights.position) == (0.25, 0.25, 0.5)

    def test_all_zero_falls_back_to_default(self):
        weights, changed = normalize_weights({"semantic": 0, "vector": 0, "position": 0})
        assert changed
        assert weights == DEFAULT_WEIGHTS
        assert (weights.semantic, weights.vector, weights.position) == (0.5, 0.3, 0.2)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError):
            normalize_weights({"semantic": -1, "vector": 1, "position": 1})


# ---------------------------------------------------------------------------
# Test: Reranker.rerank()
# ---------------------------------------------------------------------------


class TestRerank:
    def test_semantic_only_ranks_by_judge(self):
        judge = FixedJudge(JUDGE_SCORES)
        results = _run(Reranker(judge).rerank(
            POOL, "query", {"semantic": 1, "vector": 0, "position": 0}, top_k=4,
        ))
        assert [r.id for r in results] == ["c", "b", "d", "a"]
        assert [r.rank for r in results] == [1, 2, 3, 4]
        assert [r.relevance_score for r in results] == [0.9, 0.5, 0.3, 0.1]

    def test_empty_candidates_skip_judge(self):
        judge = AsyncMock()
        assert _run(Reranker(judge).rerank([], "query", None, top_k=5)) == []
        judge.score_many.assert_not_called()
        judge.score.assert_not_called()

    def test_weight_scaling_does_not_change_ordering(self):
        scaled = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(
            POOL, "query", {"semantic": 2, "vector": 1, "position": 1}, top_k=4,
        ))
        unit = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(
            POOL, "query", {"semantic": 0.5, "vector": 0.25, "position": 0.25}, top_k=4,
        ))
        assert [r.id for r in scaled] == [r.id for r in unit]
        assert [r.relevance_score for r in scaled] == [r.relevance_score for r in unit]

    def test_all_zero_weights_use_defaults(self):
        zero = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(
            POOL, "query", {"semantic": 0, "vector": 0, "position": 0}, top_k=4,
        ))
        default = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(
            POOL, "query", DEFAULT_WEIGHTS, top_k=4,
        ))
        assert [(r.id, r.relevance_score) for r in zero] == [
            (r.id, r.relevance_score) for r in default
        ]

    def test_final_score_formula(self):
        results = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(
            POOL, "query", DEFAULT_WEIGHTS, top_k=4,
        ))
        by_id = {r.id: r for r in results}
        gamma = by_id["c"]
        assert gamma.semantic_score == 0.9
        assert gamma.vector_score == 0.7
        assert gamma.position_score == pytest.approx(0.5)
        assert gamma.relevance_score == pytest.approx(0.5 * 0.9 + 0.3 * 0.7 + 0.2 * 0.5)
        assert by_id["a"].position_score == 1.0

    def test_truncates_to_top_k(self):
        results = _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(POOL, "query", None, top_k=2))
        assert len(results) == 2
        assert [r.rank for r in results] == [1, 2]

    def test_ties_broken_by_vector_score_then_position(self):
        pool = _candidates(
            ("low", 0.2, "same"),
            ("high", 0.9, "same"),
            ("first", 0.5, "tie"),
            ("second", 0.5, "tie"),
        )
        judge = FixedJudge({"same": 0.8, "tie": 0.8})
        results = _run(Reranker(judge).rerank(
            pool, "query", {"semantic": 1, "vector": 0, "position": 0}, top_k=4,
        ))
        assert [r.id for r in results] == ["high", "first", "second", "low"]

    def test_deterministic_for_identical_judge_outputs(self):
        runs = [
            [r.id for r in _run(Reranker(FixedJudge(JUDGE_SCORES)).rerank(POOL, "q", None, 4))]
            for _ in range(3)
        ]
        assert runs[0] == runs[1] == runs[2]

    def test_scores_clamped(self):
        pool = _candidates(("x", 1.7, "over"), ("y", -0.3, "under"))
        results = _run(Reranker(FixedJudge({"over": 2.0, "under": -1.0})).rerank(
            pool, "query", None, top_k=2,
        ))
        by_id = {r.id: r for r in results}
        assert by_id["x"].semantic_score == 1.0 and by_id["x"].vector_score == 1.0
        assert by_id["y"].semantic_score == 0.0 and by_id["y"].vector_score == 0.0

    def test_zero_semantic_weight_skips_judge(self):
        judge = FixedJudge(JUDGE_SCORES)
        results = _run(Reranker(judge).rerank(
            POOL, "query", {"semantic": 0, "vector": 1, "position": 0}, top_k=4,
        ))
        assert judge.calls == 0
        assert [r.id for r in results] == ["a", "b", "c", "d"]

    def test_invalid_top_k(self):
        with pytest.raises(ValidationError):
            _run(Reranker(FixedJudge({})).rerank(POOL, "query", None, top_k=0))

    def test_judge_count_mismatch(self):
        judge = AsyncMock()
        judge.score_many.return_value = [0.5]
        with pytest.raises(ProviderError):
            _run(Reranker(judge).rerank(POOL, "query", None, top_k=2))

    def test_normalization_emits_event(self, events):
        _run(Reranker(FixedJudge(JUDGE_SCORES), events=events).rerank(
            POOL, "query", {"semantic": 2, "vector": 1, "position": 1}, top_k=2,
        ))
        event = events.first("rerank.weights_normalized")
        assert event is not None
        assert event.fields["normalized"] == {"semantic": 0.5, "vector": 0.25, "position": 0.25}

    def test_cancel_event_stops_judging(self):
        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            return await Reranker(FixedJudge(JUDGE_SCORES)).rerank(
                POOL, "query", None, top_k=2, cancel_event=cancel,
            )

        with pytest.raises(OperationCancelledError):
            _run(scenario())
