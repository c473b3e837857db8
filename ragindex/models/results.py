# =============================================================================
# Result Models — What the Pipeline Hands Back
# =============================================================================
#
# IndexReport and RerankResult are the public outputs of the two
# orchestrators. They are Pydantic V2 models so host processes can return
# them from an API or log them with `model_dump()` directly.
#
# Candidate is an internal dataclass passed from the retriever to the
# reranker; it mirrors one row of a vector-store query.
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EmbeddingStatus(str, enum.Enum):
    """Outcome of the embedding stage for one indexing run."""

    SKIPPED = "skipped"    # generate_embeddings=False, or nothing to embed
    COMPLETE = "complete"  # every non-blank chunk got a vector
    PARTIAL = "partial"    # some batches failed
    FAILED = "failed"      # no vectors at all


class IndexedChunk(BaseModel):
    """Per-chunk line of the indexing report."""

    id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    index: int
    total_chunks: int
    embedding_generated: bool = False
    stored: bool = False


class IndexReport(BaseModel):
    """
    Structured outcome of Indexer.index_document().

    A report is returned for partial failures too. Callers tell
    "no chunks produced" (chunk_count == 0) apart from "chunks produced,
    embeddings failed" (chunk_count > 0, embedding_status failed/partial).
    """

    success: bool
    document_id: str
    index_name: str
    chunk_count: int
    total_text_length: int
    chunks: list[IndexedChunk] = Field(default_factory=list)
    embedding_status: EmbeddingStatus = EmbeddingStatus.SKIPPED
    embedded_count: int = 0
    stored_count: int = 0
    dimension: int | None = None
    cancelled: bool = False
    errors: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0


@dataclass
class Candidate:
    """
    A single vector-store hit, before reranking.

    `score` is the store's similarity (higher = more similar). The chunk
    text travels in metadata["text"]. `vector` is only filled when the
    query asked for stored vectors.
    """

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
    vector: list[float] | None = None

    @property
    def text(self) -> str:
        value = self.metadata.get("text")
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


class RerankWeights(BaseModel):
    """
    Relative importance of the three rerank signals.

    Any non-negative values are accepted; the reranker normalises them to
    sum to 1 before use.
    """

    model_config = ConfigDict(frozen=True)

    semantic: float = Field(default=0.5, ge=0.0)
    vector: float = Field(default=0.3, ge=0.0)
    position: float = Field(default=0.2, ge=0.0)

    @property
    def total(self) -> float:
        return self.semantic + self.vector + self.position


class RerankResult(BaseModel):
    """One reranked document, ranked 1..top_k."""

    id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    relevance_score: float
    rank: int
    semantic_score: float = 0.0
    vector_score: float = 0.0
    position_score: float = 0.0
    vector: list[float] | None = None
