# =============================================================================
# Pipelines Package — Orchestrators
# =============================================================================
#   - indexing.py: Indexer — chunk → sanitize → embed → store, with a
#     structured IndexReport for partial failures
#   - retrieval.py: Searcher — retrieve → rerank
# =============================================================================
