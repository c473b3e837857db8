# =============================================================================
# Unit Tests — Pipeline Settings
# =============================================================================

from __future__ import annotations

from ragindex.config import Settings


class TestSettings:
    def test_defaults(self):
        cfg = Settings(_env_file=None)
        assert cfg.vectorstore_type == "chroma"
        assert cfg.default_chunking_strategy == "recursive"
        assert (cfg.retrieval_top_k, cfg.retrieval_initial_top_k) == (10, 20)
        assert cfg.judge_model is None
        assert cfg.extraction_model is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_BATCH_SIZE", "7")
        monkeypatch.setenv("JUDGE_MODEL", "anthropic/claude-sonnet-4-6")
        cfg = Settings(_env_file=None)
        assert cfg.embedding_batch_size == 7
        assert cfg.judge_model == "anthropic/claude-sonnet-4-6"

    def test_only_pipeline_fields(self):
        assert "app_name" not in Settings.model_fields
        assert "app_version" not in Settings.model_fields
