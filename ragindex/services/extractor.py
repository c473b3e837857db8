# =============================================================================
# Metadata Extractor — LLM-Derived Titles, Summaries, Keywords, Questions
# =============================================================================
#
# Optional enrichment between chunking and sanitization. A MetadataExtractor
# returns one dict per chunk; the indexer merges it into that chunk's
# metadata, so extracted fields go through the same key sanitizer as the
# caller's own metadata.
#
#   ExtractParams flag      metadata key
#   ├── title           →  document_title  (one call over the opening
#   │                                        chunks, shared by all chunks)
#   ├── summary         →  section_summary
#   ├── keywords        →  excerpt_keywords (list[str])
#   └── questions       →  questions_this_excerpt_can_answer (list[str])
#
# Summary, keywords and questions come from one JSON reply per chunk, with
# at most `max_concurrency` calls in flight. A reply that is not valid JSON
# leaves that chunk's fields out (logged). Provider failures raise
# ProviderError and cancel the calls still in flight.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from typing import Any, Protocol

from ragindex.config import Settings, get_settings
from ragindex.exceptions import ProviderError, RagIndexError
from ragindex.models.documents import ExtractParams
from ragindex.services.cancellation import gather_or_cancel
from ragindex.services.llm import LLMProvider, create_provider_from_id, get_llm_provider

logger = logging.getLogger(__name__)

TITLE_KEY = "document_title"
SUMMARY_KEY = "section_summary"
KEYWORDS_KEY = "excerpt_keywords"
QUESTIONS_KEY = "questions_this_excerpt_can_answer"


class MetadataExtractor(Protocol):
    """Derives extra metadata for a document's chunks."""

    async def extract(
        self, texts: Sequence[str], params: ExtractParams,
    ) -> list[dict[str, Any]]:
        """One metadata dict per text, in input order."""
        ...


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_TITLE_SYSTEM = """You name documents.

Given the opening excerpts of a document, reply with a short, specific \
title for the whole document.

Respond with ONLY valid JSON (no markdown, no explanation):
{"title": "<title>"}"""

_EXCERPT_SYSTEM = """You annotate excerpts of a document for a search index.

Respond with ONLY valid JSON (no markdown, no explanation) containing \
exactly the requested keys:
- "summary": one or two sentences summarizing the excerpt
- "keywords": a list of distinct keywords that appear in or describe the excerpt
- "questions": a list of questions that the excerpt can answer"""

# The title is inferred from the start of the document only.
_TITLE_CHUNKS = 3
_MAX_EXCERPT_CHARS = 4000

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


class LLMMetadataExtractor:
    """
    MetadataExtractor backed by a chat LLM.

    The LLM is chosen the same way as for the relevance judge: explicit
    `llm`, then `model_id`, then settings.extraction_model, then the
    configured default provider.
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
            model_id = model_id or cfg.extraction_model
            llm = (
                create_provider_from_id(model_id, settings=cfg) if model_id
                else get_llm_provider(cfg)
            )
        self._llm = llm
        self.model_id = model_id
        self._temperature = cfg.llm_temperature
        self._max_tokens = cfg.extraction_max_tokens
        self._max_concurrency = max(max_concurrency or cfg.extraction_max_concurrency, 1)

    async def extract(
        self, texts: Sequence[str], params: ExtractParams,
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = [{} for _ in texts]
        if not texts or not params.requested:
            return results

        if params.title:
            title = await self._title(texts[:_TITLE_CHUNKS])
            if title:
                for fields in results:
                    fields[TITLE_KEY] = title

        if params.summary or params.keywords or params.questions:
            semaphore = asyncio.Semaphore(self._max_concurrency)

            async def _bounded(text: str) -> dict[str, Any]:
                async with semaphore:
                    return await self._excerpt_fields(text, params)

            per_chunk = await gather_or_cancel(*(_bounded(t) for t in texts))
            for fields, extracted in zip(results, per_chunk):
                fields.update(extracted)

        logger.info(
            "Extracted %s for %d chunks", ", ".join(params.requested), len(texts),
        )
        return results

    async def _title(self, texts: Sequence[str]) -> str | None:
        excerpts = "\n\n---\n\n".join(t[:_MAX_EXCERPT_CHARS] for t in texts)
        reply = _parse_json_reply(await self._complete(_TITLE_SYSTEM, excerpts))
        title = reply.get("title")
        return title.strip() if isinstance(title, str) and title.strip() else None

    async def _excerpt_fields(self, text: str, params: ExtractParams) -> dict[str, Any]:
        wanted = []
        if params.summary:
            wanted.append('"summary"')
        if params.keywords:
            wanted.append(f'"keywords" (at most {params.keyword_count})')
        if params.questions:
            wanted.append(f'"questions" (at most {params.question_count})')
        user_message = (
            f"Requested keys: {', '.join(wanted)}\n\n"
            f"Excerpt:\n{text[:_MAX_EXCERPT_CHARS]}"
        )
        reply = _parse_json_reply(await self._complete(_EXCERPT_SYSTEM, user_message))

        fields: dict[str, Any] = {}
        summary = reply.get("summary")
        if params.summary and isinstance(summary, str) and summary.strip():
            fields[SUMMARY_KEY] = summary.strip()
        if params.keywords:
            keywords = _string_list(reply.get("keywords"))[: params.keyword_count]
            if keywords:
                fields[KEYWORDS_KEY] = keywords
        if params.questions:
            questions = _string_list(reply.get("questions"))[: params.question_count]
            if questions:
                fields[QUESTIONS_KEY] = questions
        return fields

    async def _complete(self, system: str, user_message: str) -> str:
        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": user_message}],
                system=system,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except RagIndexError:
            raise
        except Exception as e:
            raise ProviderError(f"Metadata extraction call failed: {e}", provider="llm") from e
        return response.content


def _parse_json_reply(content: str) -> dict[str, Any]:
    """JSON object from an LLM reply, tolerating a markdown fence; {} if unusable."""
    text = _FENCE_RE.sub("", (content or "").strip())
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Unparseable extraction reply %r; skipping", text[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return []
    seen: list[str] = []
    for item in value:
        text = str(item).strip()
        if text and text not in seen:
            seen.append(text)
    return seen
