# =============================================================================
# Unit Tests — Relevance Judge
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ragindex.config import Settings
from ragindex.exceptions import ProviderError
from ragindex.services.llm import LLMResponse
from ragindex.services.relevance import LLMRelevanceJudge, parse_relevance_score


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _mock_llm(*contents: str) -> AsyncMock:
    llm = AsyncMock()
    llm.complete.side_effect = [
        LLMResponse(content=c, model="mock", input_tokens=10, output_tokens=3)
        for c in contents
    ]
    return llm


class TestParseRelevanceScore:
    def test_json_object(self):
        assert parse_relevance_score('{"score": 0.75}') == 0.75

    def test_bare_number(self):
        assert parse_relevance_score("0.4") == 0.4

    def test_number_in_free_text(self):
        assert parse_relevance_score("I'd rate this 0.6 overall.") == 0.6

    def test_clamped(self):
        assert parse_relevance_score('{"score": 7}') == 1.0
        assert parse_relevance_score("-0.5") == 0.0

    def test_unparseable_is_zero(self):
        assert parse_relevance_score("no idea") == 0.0
        assert parse_relevance_score("") == 0.0
        assert parse_relevance_score('{"relevance": "high"}') == 0.0


class TestLLMRelevanceJudge:
    def test_scores_in_input_order(self):
        llm = _mock_llm('{"score": 0.9}', '{"score": 0.1}')
        judge = LLMRelevanceJudge(llm=llm, max_concurrency=1, settings=Settings(_env_file=None))
        scores = _run(judge.score_many("revenue growth", ["Revenue grew", "Weather"]))
        assert scores == [0.9, 0.1]
        assert llm.complete.call_count == 2

    def test_prompt_contains_query_and_passage(self):
        llm = _mock_llm('{"score": 1}')
        judge = LLMRelevanceJudge(llm=llm, settings=Settings(_env_file=None))
        _run(judge.score("what is revenue", "Revenue was $10M"))
        kwargs = llm.complete.call_args.kwargs
        content = kwargs["messages"][0]["content"]
        assert "what is revenue" in content
        assert "Revenue was $10M" in content
        assert kwargs["temperature"] == 0.0

    def test_unexpected_failure_becomes_provider_error(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("socket closed")
        judge = LLMRelevanceJudge(llm=llm, settings=Settings(_env_file=None))
        with pytest.raises(ProviderError):
            _run(judge.score("q", "text"))

    def test_provider_error_propagates_unchanged(self):
        llm = AsyncMock()
        original = ProviderError("rate limited", provider="openai")
        llm.complete.side_effect = original
        judge = LLMRelevanceJudge(llm=llm, settings=Settings(_env_file=None))
        with pytest.raises(ProviderError) as exc_info:
            _run(judge.score_many("q", ["a"]))
        assert exc_info.value is original

    def test_sampling_settings_reach_the_llm(self):
        llm = _mock_llm('{"score": 0.5}')
        cfg = Settings(_env_file=None, llm_temperature=0.3, llm_max_tokens=200)
        _run(LLMRelevanceJudge(llm=llm, settings=cfg).score("q", "text"))
        kwargs = llm.complete.call_args.kwargs
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 200

    def test_failure_cancels_sibling_calls(self):
        class SlowOrFailingLLM:
            def __init__(self):
                self.cancelled = 0

            async def complete(self, messages, system=None, temperature=None, max_tokens=None):
                if "broken" in messages[0]["content"]:
                    await asyncio.sleep(0.01)
                    raise ProviderError("judge unavailable", provider="llm")
                try:
                    await asyncio.sleep(30)
                except asyncio.CancelledError:
                    self.cancelled += 1
                    raise

        llm = SlowOrFailingLLM()
        judge = LLMRelevanceJudge(llm=llm, max_concurrency=3, settings=Settings(_env_file=None))

        with pytest.raises(ProviderError):
            _run(asyncio.wait_for(
                judge.score_many("q", ["slow one", "broken", "slow two"]), timeout=5,
            ))
        assert llm.cancelled == 2


class TestJudgeModelSelection:
    def test_model_id_builds_provider(self):
        cfg = Settings(_env_file=None)
        with patch("ragindex.services.relevance.create_provider_from_id") as factory:
            judge = LLMRelevanceJudge(model_id="anthropic/claude-sonnet-4-6", settings=cfg)
        factory.assert_called_once_with("anthropic/claude-sonnet-4-6", settings=cfg)
        assert judge.model_id == "anthropic/claude-sonnet-4-6"

    def test_judge_model_setting_is_the_default(self):
        cfg = Settings(_env_file=None, judge_model="openai_compatible/deepseek-chat")
        with patch("ragindex.services.relevance.create_provider_from_id") as factory:
            LLMRelevanceJudge(settings=cfg)
        factory.assert_called_once_with("openai_compatible/deepseek-chat", settings=cfg)

    def test_without_model_id_uses_configured_provider(self):
        cfg = Settings(_env_file=None)
        with (
            patch("ragindex.services.relevance.create_provider_from_id") as by_id,
            patch("ragindex.services.relevance.get_llm_provider") as default,
        ):
            LLMRelevanceJudge(settings=cfg)
        by_id.assert_not_called()
        default.assert_called_once_with(cfg)
