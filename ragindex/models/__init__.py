# =============================================================================
# Models Package — Pipeline Data Structures
# =============================================================================
#   - documents.py: Document, ChunkingStrategy, ChunkParams, ExtractParams,
#     Chunk (write path)
#   - results.py: IndexReport, Candidate, RerankWeights, RerankResult
# =============================================================================

from ragindex.models.documents import (
    Chunk,
    ChunkingStrategy,
    ChunkParams,
    Document,
    ExtractParams,
)
from ragindex.models.results import (
    Candidate,
    EmbeddingStatus,
    IndexedChunk,
    IndexReport,
    RerankResult,
    RerankWeights,
)

__all__ = [
    "Candidate",
    "Chunk",
    "ChunkParams",
    "ChunkingStrategy",
    "Document",
    "EmbeddingStatus",
    "ExtractParams",
    "IndexReport",
    "IndexedChunk",
    "RerankResult",
    "RerankWeights",
]
