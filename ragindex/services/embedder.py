# =============================================================================
# Embedding Service — Provider Protocol + Fault-Tolerant Batcher
# =============================================================================
#
# Two layers:
#
# 1. EmbeddingProvider (Protocol) — turns text into fixed-dimension vectors.
#    OpenAIEmbeddingProvider talks to any OpenAI-compatible embeddings
#    endpoint (OpenAI, DashScope, local servers) via a configurable
#    base_url. Retries with backoff are delegated to the SDK
#    (max_retries = settings.provider_max_retries).
#
# 2. embed_batch() — the pipeline's batcher:
#    - blank texts are dropped BEFORE calling the provider, their positions
#      remembered so the result stays aligned with the input
#    - non-blank texts are sent in groups of at most batch_size
#    - a failed batch stops the run; what succeeded so far is kept and the
#      status becomes PARTIAL (or FAILED if nothing succeeded)
#    - provider failures never raise out of embed_batch()
#
# ARCHITECTURE:
#   EmbeddingProvider (Protocol)
#   ├── OpenAIEmbeddingProvider — AsyncOpenAI, any compatible endpoint
#   ├── get_embedding_provider() — factory, reads from config
#   └── EmbeddingProviderPool   — per-call model selection over a default
#   embed_batch()  → EmbeddingBatchResult (sparse, order-preserving)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from ragindex.config import Settings, get_settings
from ragindex.exceptions import (
    DimensionMismatchError,
    OperationCancelledError,
    ProviderError,
    ProviderTimeoutError,
)
from ragindex.models.results import EmbeddingStatus
from ragindex.services.cancellation import check_cancelled, run_cancellable
from ragindex.services.events import EventSink, NullEventSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """
    Protocol for embedding backends.

    Every vector a provider returns has the same length for a given model.
    Implementations raise ProviderError (or ProviderTimeoutError) when a
    call fails after their own retries.
    """

    model: str

    async def embed(self, text: str) -> list[float]:
        """Embed a single text (used for queries)."""
        ...

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts in one call, output order = input order."""
        ...


# ---------------------------------------------------------------------------
# Implementation: OpenAI-compatible embeddings endpoint
# ---------------------------------------------------------------------------


class OpenAIEmbeddingProvider:
    """
    Embeddings via the OpenAI SDK, against any OpenAI-compatible API.

    API key resolution order: explicit argument, OPENAI_API_KEY, LLM_API_KEY.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        dimensions: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        cfg = settings or get_settings()
        resolved_key = api_key or cfg.openai_api_key or cfg.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": cfg.provider_max_retries,
            "timeout": cfg.provider_timeout_seconds,
        }
        resolved_base_url = base_url or cfg.embedding_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self.model = model or cfg.embedding_model
        self._dimensions = dimensions or cfg.embedding_dimensions

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            self.model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        import openai

        if not texts:
            return []

        create_kwargs: dict = {"model": self.model, "input": list(texts)}
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**create_kwargs)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(
                f"Embedding request timed out: {e}", provider="openai",
            ) from e
        except openai.OpenAIError as e:
            raise ProviderError(
                f"Embedding request failed: {e}", provider="openai",
            ) from e

        if len(response.data) != len(texts):
            raise ProviderError(
                f"Embedding response has {len(response.data)} vectors "
                f"for {len(texts)} inputs",
                provider="openai",
            )

        # Items carry their input index; sort so output order = input order.
        vectors = [item.embedding for item in sorted(response.data, key=lambda x: x.index)]

        logger.debug(
            "Embedded %d texts, %d prompt tokens",
            len(texts),
            response.usage.prompt_tokens if response.usage else 0,
        )
        return vectors


def get_embedding_provider(
    settings: Settings | None = None,
    model: str | None = None,
) -> OpenAIEmbeddingProvider:
    """Build the configured embedding provider (a new instance per call)."""
    return OpenAIEmbeddingProvider(model=model, settings=settings)


class EmbeddingProviderPool:
    """
    A default provider plus lazily built providers for other model names.

    get(None) and get(<the default's model>) return the default provider.
    Any other name is built once through `factory` and reused afterwards.
    An index keeps the dimension of the first model written to it; other
    models are rejected with DimensionMismatchError when sizes differ.
    """

    def __init__(
        self,
        default: EmbeddingProvider,
        factory: Callable[[str], EmbeddingProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or get_settings()
        self._default = default
        self._factory = factory or (lambda model: get_embedding_provider(cfg, model=model))
        self._by_model: dict[str, EmbeddingProvider] = {}

    def get(self, model: str | None = None) -> EmbeddingProvider:
        if not model or model == getattr(self._default, "model", None):
            return self._default
        provider = self._by_model.get(model)
        if provider is None:
            logger.info("Building embedding provider for model=%s", model)
            provider = self._factory(model)
            self._by_model[model] = provider
        return provider


# ---------------------------------------------------------------------------
# Batcher
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingBatchResult:
    """
    Sparse, input-aligned outcome of embed_batch().

    `embeddings[i]` is the vector for `texts[i]`, or None when the text was
    blank or its batch failed. `vectors` / `positions` give the dense view.
    """

    embeddings: list[list[float] | None]
    status: EmbeddingStatus
    dimension: int | None = None
    batches_total: int = 0
    batches_failed: int = 0
    skipped_blank: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def positions(self) -> list[int]:
        return [i for i, v in enumerate(self.embeddings) if v is not None]

    @property
    def vectors(self) -> list[list[float]]:
        return [v for v in self.embeddings if v is not None]

    @property
    def generated(self) -> int:
        return len(self.positions)


async def embed_batch(
    texts: Sequence[str],
    provider: EmbeddingProvider,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    cancel_event: asyncio.Event | None = None,
    events: EventSink | None = None,
) -> EmbeddingBatchResult:
    """
    Embed `texts` in bounded batches, tolerating blank entries and failures.

    Args:
        texts: Texts to embed; blank / whitespace-only entries are skipped.
        provider: The embedding backend.
        batch_size: Max texts per provider call (default from settings, 50).
        max_concurrency: Max batches in flight (default from settings, 1).
        cancel_event: Caller's cancel signal.
        events: Sink for per-batch events.

    Returns:
        EmbeddingBatchResult aligned with `texts`.

    Raises:
        DimensionMismatchError: The provider returned vectors of differing
            lengths within this run.
        OperationCancelledError: `cancel_event` fired; `partial` holds the
            result accumulated so far.
    """
    cfg = get_settings()
    _batch_size = max(batch_size or cfg.embedding_batch_size, 1)
    _concurrency = max(max_concurrency or cfg.embedding_max_concurrency, 1)
    sink = events or NullEventSink()

    result = EmbeddingBatchResult(
        embeddings=[None] * len(texts),
        status=EmbeddingStatus.SKIPPED,
    )

    non_blank = [i for i, t in enumerate(texts) if isinstance(t, str) and t.strip()]
    result.skipped_blank = len(texts) - len(non_blank)
    if not non_blank:
        logger.info("No non-blank texts to embed (%d blank)", result.skipped_blank)
        return result

    batches = [
        non_blank[i : i + _batch_size]
        for i in range(0, len(non_blank), _batch_size)
    ]
    result.batches_total = len(batches)

    async def _embed_one(batch_no: int, positions: list[int]) -> None:
        batch_texts = [texts[p].strip() for p in positions]
        logger.info(
            "Embedding batch %d/%d (%d texts, model=%s)",
            batch_no + 1, len(batches), len(batch_texts),
            getattr(provider, "model", "unknown"),
        )
        vectors = await run_cancellable(
            provider.embed_many(batch_texts), cancel_event, "embedding",
        )
        if len(vectors) != len(positions):
            raise ProviderError(
                f"Provider returned {len(vectors)} vectors for "
                f"{len(positions)} texts"
            )
        for position, vector in zip(positions, vectors):
            _check_dimension(result, vector)
            result.embeddings[position] = list(vector)
        sink.emit("embedding.batch_completed", batch=batch_no, size=len(positions))

    numbered = list(enumerate(batches))
    try:
        for wave_start in range(0, len(numbered), _concurrency):
            check_cancelled(cancel_event, "embedding")
            wave = numbered[wave_start : wave_start + _concurrency]
            outcomes = await asyncio.gather(
                *(_embed_one(n, positions) for n, positions in wave),
                return_exceptions=True,
            )

            failed = False
            for (batch_no, _), outcome in zip(wave, outcomes):
                if outcome is None:
                    continue
                if isinstance(outcome, (OperationCancelledError, DimensionMismatchError)):
                    raise outcome
                if not isinstance(outcome, Exception):
                    # CancelledError and other BaseExceptions propagate.
                    raise outcome
                failed = True
                result.batches_failed += 1
                result.errors.append(str(outcome))
                logger.warning(
                    "Embedding batch %d/%d failed: %s",
                    batch_no + 1, len(batches), outcome,
                )
                sink.emit(
                    "embedding.batch_failed",
                    batch=batch_no,
                    error=str(outcome),
                    timeout=isinstance(outcome, ProviderTimeoutError),
                )

            if failed:
                logger.warning(
                    "Stopping after failed batch; keeping %d of %d embeddings",
                    result.generated, len(non_blank),
                )
                break
    except OperationCancelledError as e:
        result.status = _status_for(result, len(non_blank))
        e.partial = result
        raise

    result.status = _status_for(result, len(non_blank))
    logger.info(
        "Generated %d/%d embeddings (status=%s, dimension=%s)",
        result.generated, len(non_blank), result.status.value, result.dimension,
    )
    return result


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _check_dimension(result: EmbeddingBatchResult, vector: Sequence[float]) -> None:
    if result.dimension is None:
        result.dimension = len(vector)
    elif len(vector) != result.dimension:
        raise DimensionMismatchError(
            f"Embedding provider returned a {len(vector)}-dim vector, "
            f"expected {result.dimension}",
            expected=result.dimension,
            actual=len(vector),
        )


def _status_for(result: EmbeddingBatchResult, expected: int) -> EmbeddingStatus:
    generated = result.generated
    if generated == 0:
        return EmbeddingStatus.FAILED
    if generated < expected:
        return EmbeddingStatus.PARTIAL
    return EmbeddingStatus.COMPLETE
