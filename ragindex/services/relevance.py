# =============================================================================
# Relevance Judge — Query/Document Relevance Scores in [0, 1]
# =============================================================================
#
# The reranker asks a RelevanceJudge how well each candidate answers the
# query. The judge is a pluggable strategy:
#
#   RelevanceJudge (Protocol)
#   ├── score(query, text)          → float in [0, 1]
#   └── score_many(query, texts)    → list[float], same order as texts
#
# LLMRelevanceJudge prompts an LLMProvider once per candidate, with at most
# `max_concurrency` calls in flight; the first failure cancels the rest.
# Replies are parsed as JSON {"score": x}; a bare number is also accepted.
# A reply with no usable number scores 0.0 (logged). Provider failures
# raise ProviderError.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from typing import Protocol

from ragindex.config import Settings, get_settings
from ragindex.exceptions import ProviderError, RagIndexError
from ragindex.services.cancellation import gather_or_cancel
from ragindex.services.llm import LLMProvider, create_provider_from_id, get_llm_provider

logger = logging.getLogger(__name__)


class RelevanceJudge(Protocol):
    """Scores how well a text answers a query."""

    async def score(self, query: str, text: str) -> float:
        ...

    async def score_many(self, query: str, texts: Sequence[str]) -> list[float]:
        ...


# ---------------------------------------------------------------------------
# Judge Prompt
# ---------------------------------------------------------------------------

_JUDGE_SYSTEM = """You are a retrieval relevance judge.

Given a user query and one candidate passage, rate how well the passage \
answers or directly supports the query.

Respond with ONLY valid JSON (no markdown, no explanation):
{"score": <number between 0 and 1>}

Scale:
- 1.0 = the passage directly and completely answers the query
- 0.5 = the passage is on-topic but only partially answers it
- 0.0 = the passage is unrelated to the query"""

# Passages are truncated in the prompt; scoring needs the gist, not all of it.
_MAX_PASSAGE_CHARS = 4000

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


class LLMRelevanceJudge:
    """
    RelevanceJudge backed by a chat LLM.

    The LLM is, in order of preference: the explicit `llm`, the provider
    named by `model_id` ("anthropic/claude-sonnet-4-6",
    "openai_compatible/deepseek-chat@https://api.deepseek.com/v1"), the one
    named by settings.judge_model, or the configured default provider.
    Sampling temperature and max tokens come from settings.
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        max_concurrency: int | None = None,
        settings: Settings | None = None,
        model_id: str | None = None,
    ) -> None:
        cfg = settings or get_settings()
        if llm is None:
            model_id = model_id or cfg.judge_model
            llm = (
                create_provider_from_id(model_id, settings=cfg) if model_id
                else get_llm_provider(cfg)
            )
        self._llm = llm
        self.model_id = model_id
        self._temperature = cfg.llm_temperature
        self._max_tokens = cfg.llm_max_tokens
        self._max_concurrency = max(max_concurrency or cfg.judge_max_concurrency, 1)

    async def score(self, query: str, text: str) -> float:
        user_message = (
            f"Query: {query}\n\n"
            f"Passage:\n{text[:_MAX_PASSAGE_CHARS]}"
        )
        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": user_message}],
                system=_JUDGE_SYSTEM,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except RagIndexError:
            raise
        except Exception as e:
            raise ProviderError(f"Relevance judge call failed: {e}", provider="llm") from e

        return parse_relevance_score(response.content)

    async def score_many(self, query: str, texts: Sequence[str]) -> list[float]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(text: str) -> float:
            async with semaphore:
                return await self.score(query, text)

        scores = await gather_or_cancel(*(_bounded(t) for t in texts))
        logger.debug("Judged %d passages for query '%s'", len(scores), query[:80])
        return list(scores)


def parse_relevance_score(content: str) -> float:
    """
    Extract a [0, 1] score from a judge reply.

    Accepts {"score": x}, a bare JSON number, or the first number found in
    free text. Values outside [0, 1] are clamped; no number at all → 0.0.
    """
    raw: object = None
    text = (content or "").strip()
    try:
        parsed = json.loads(text)
        raw = parsed.get("score") if isinstance(parsed, dict) else parsed
    except json.JSONDecodeError:
        match = _NUMBER_RE.search(text)
        raw = match.group(0) if match else None

    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("Unparseable relevance judge reply %r; scoring 0.0", text[:200])
        return 0.0

    if value != value:  # NaN
        return 0.0
    return min(max(value, 0.0), 1.0)
