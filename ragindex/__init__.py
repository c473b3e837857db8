# =============================================================================
# ragindex — Document Indexing & Semantic Retrieval Pipeline
# =============================================================================
# A library-level RAG pipeline consumed by a host process. Documents are
# chunked, embedded and written to a pluggable vector store; queries are
# answered by vector retrieval followed by weighted LLM reranking.
#
# Package structure:
#   ragindex/
#   ├── models/       → Document / chunk types and Pydantic V2 result models
#   ├── services/     → Chunking, metadata extraction and sanitizing,
#   │                    embedding, vector stores, relevance judging, reranking
#   ├── pipelines/    → The two orchestrators (Indexer, Searcher)
#   └── db/           → Async SQLAlchemy engine for the pgvector backend
# =============================================================================

from ragindex.exceptions import (
    DimensionMismatchError,
    EmbeddingRequiredError,
    OperationCancelledError,
    ProviderError,
    ProviderTimeoutError,
    RagIndexError,
    ValidationError,
)
from ragindex.models import (
    Candidate,
    Chunk,
    ChunkingStrategy,
    ChunkParams,
    Document,
    EmbeddingStatus,
    ExtractParams,
    IndexReport,
    RerankResult,
    RerankWeights,
)
from ragindex.pipelines.indexing import Indexer
from ragindex.pipelines.retrieval import Searcher

__version__ = "0.1.0"

__all__ = [
    "Candidate",
    "Chunk",
    "ChunkParams",
    "ChunkingStrategy",
    "DimensionMismatchError",
    "Document",
    "EmbeddingRequiredError",
    "EmbeddingStatus",
    "ExtractParams",
    "IndexReport",
    "Indexer",
    "OperationCancelledError",
    "ProviderError",
    "ProviderTimeoutError",
    "RagIndexError",
    "RerankResult",
    "RerankWeights",
    "Searcher",
    "ValidationError",
]
