# =============================================================================
# Services Package — Pipeline Stages and Provider Adapters
# =============================================================================
# The building blocks the orchestrators compose:
#   - chunker.py: Strategy-driven text chunking (langchain splitters, tiktoken)
#   - metadata.py: Store-safe metadata keys and values
#   - embedder.py: Embedding provider protocol + fault-tolerant batcher
#   - vectorstore.py: Pluggable vector store protocol (Chroma, pgvector, memory)
#   - index_writer.py: Dimension-checked index creation and upserts
#   - retriever.py: Query embedding + initial candidate search
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - relevance.py: LLM-backed relevance judge
#   - reranker.py: Weighted multi-signal reranking
#   - events.py / cancellation.py: Progress events and cancel signals
# =============================================================================
