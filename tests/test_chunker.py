# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Tests every chunking strategy without external dependencies.
# No API keys, databases, or network calls needed.
# =============================================================================

import json

import pytest

from ragindex.exceptions import ValidationError
from ragindex.models.documents import ChunkingStrategy, ChunkParams, Document
from ragindex.services.chunker import chunk_document


def _params(**overrides) -> ChunkParams:
    return ChunkParams(**{"max_size": 100, "overlap": 10, **overrides})


class TestShortDocuments:
    """A document within max_size is returned as a single chunk."""

    @pytest.mark.parametrize(
        "strategy",
        ["recursive", "character", "token", "markdown", "html", "latex", "semantic-markdown"],
    )
    def test_short_text_is_one_chunk(self, strategy):
        doc = Document(text="Revenue grew 15% year over year.")
        chunks = chunk_document(doc, strategy, _params())
        assert len(chunks) == 1
        assert chunks[0].text == "Revenue grew 15% year over year."
        assert chunks[0].index == 0
        assert chunks[0].total_chunks == 1

    def test_short_json_is_one_chunk(self):
        doc = Document(text='{"a": 1}')
        chunks = chunk_document(doc, "json", _params())
        assert [c.text for c in chunks] == ['{"a": 1}']

    def test_whitespace_only_document_produces_no_chunks(self):
        chunks = chunk_document(Document(text="   \n\n  "), "recursive", _params())
        assert chunks == []

    def test_empty_document_rejected(self):
        with pytest.raises(ValidationError):
            Document(text="")


class TestChunkParams:
    """Parameter validation happens before any splitting."""

    def test_overlap_must_be_below_max_size(self):
        with pytest.raises(ValidationError):
            chunk_document(Document(text="abc"), "recursive", {"max_size": 100, "overlap": 100})

    def test_max_size_lower_bound(self):
        with pytest.raises(ValidationError):
            chunk_document(Document(text="abc"), "recursive", {"max_size": 10, "overlap": 0})

    def test_unknown_param_rejected(self):
        with pytest.raises(ValidationError):
            chunk_document(Document(text="abc"), "recursive", {"chunk_size": 100})

    def test_unknown_strategy_falls_back_to_recursive(self):
        chunks = chunk_document(Document(text="word " * 100), "does-not-exist", _params())
        assert len(chunks) > 1
        assert all(c.metadata["chunking_strategy"] == "recursive" for c in chunks)


class TestRecursive:
    def test_chunks_respect_max_size(self):
        doc = Document(text="Financial analysis is important. " * 50)
        chunks = chunk_document(doc, "recursive", _params())
        assert len(chunks) > 1
        assert all(len(c.text) <= 100 for c in chunks)

    def test_chunk_count_non_decreasing_in_length(self):
        counts = [
            len(chunk_document(Document(text="word " * n), "recursive", _params(overlap=20)))
            for n in range(10, 400, 15)
        ]
        assert counts == sorted(counts)

    def test_indices_are_sequential_and_total_consistent(self):
        chunks = chunk_document(Document(text="word " * 200), "recursive", _params())
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert {c.total_chunks for c in chunks} == {len(chunks)}
        assert all(c.metadata["chunk_index"] == c.index for c in chunks)

    def test_no_blank_chunks(self):
        doc = Document(text=("para one. " * 12) + "\n\n\n\n   \n\n" + ("para two. " * 12))
        chunks = chunk_document(doc, "recursive", _params())
        assert all(c.text.strip() for c in chunks)


class TestCharacter:
    def test_oversize_piece_is_hard_split(self):
        doc = Document(text="x" * 300)
        chunks = chunk_document(doc, "character", _params(overlap=0, separator="\n"))
        assert [len(c.text) for c in chunks] == [100, 100, 100]

    def test_splits_on_separator(self):
        lines = [f"line {i} " + "y" * 40 for i in range(6)]
        chunks = chunk_document(Document(text="\n".join(lines)), "character", _params(overlap=0))
        assert len(chunks) >= 3
        assert all(len(c.text) <= 100 for c in chunks)


class TestToken:
    def test_windows_respect_token_budget(self):
        doc = Document(text="Revenue grew by 15% year over year. " * 40)
        chunks = chunk_document(doc, "token", _params(max_size=50, overlap=10))
        assert len(chunks) > 1
        assert all(c.metadata["token_count"] <= 50 for c in chunks)


class TestSentence:
    def test_one_chunk_per_sentence(self):
        chunks = chunk_document(
            Document(text="A. B. C."), "sentence", {"max_size": 50, "overlap": 0},
        )
        assert [c.text for c in chunks] == ["A.", "B.", "C."]
        assert all(c.total_chunks == 3 for c in chunks)

    def test_decimal_point_is_not_a_boundary(self):
        chunks = chunk_document(
            Document(text="Margin was 3.5 percent. Next sentence."),
            "sentence",
            {"max_size": 50, "overlap": 0},
        )
        assert [c.text for c in chunks] == ["Margin was 3.5 percent.", "Next sentence."]

    def test_custom_enders(self):
        chunks = chunk_document(
            Document(text="Is it up? Yes! It is."),
            "sentence",
            {"max_size": 50, "overlap": 0, "sentence_enders": [".", "?", "!"]},
        )
        assert [c.text for c in chunks] == ["Is it up?", "Yes!", "It is."]

    def test_min_size_merges_short_sentences(self):
        chunks = chunk_document(
            Document(text="A. B. C."),
            "sentence",
            {"max_size": 50, "overlap": 0, "min_size": 5},
        )
        assert [c.text for c in chunks] == ["A. B.", "C."]

    def test_long_sentence_is_split(self):
        long_sentence = ("word " * 40).strip() + "."
        chunks = chunk_document(
            Document(text=long_sentence), "sentence", {"max_size": 60, "overlap": 0},
        )
        assert len(chunks) > 1
        assert all(len(c.text) <= 60 for c in chunks)


class TestMarkdown:
    def test_header_metadata_attached(self):
        text = (
            "# Annual Report\n\n"
            + "Intro text. " * 12
            + "\n\n## Risk Factors\n\n"
            + "Risk text. " * 12
        )
        chunks = chunk_document(Document(text=text), "markdown", _params())
        assert len(chunks) > 1
        assert chunks[0].metadata["title"] == "Annual Report"
        risk = [c for c in chunks if c.metadata.get("section") == "Risk Factors"]
        assert risk
        assert all(c.metadata["title"] == "Annual Report" for c in risk)

    def test_semantic_markdown_joins_small_sections(self):
        sections = [f"# H{i}\n" + " ".join(["word"] * 8) for i in range(1, 5)]
        chunks = chunk_document(
            Document(text="\n".join(sections)),
            "semantic-markdown",
            {"max_size": 100, "overlap": 0, "join_threshold": 100},
        )
        assert len(chunks) == 2
        assert chunks[0].text.startswith("# H1") and "# H2" in chunks[0].text
        assert chunks[1].text.startswith("# H3") and "# H4" in chunks[1].text


class TestHtml:
    def test_header_tags_become_metadata(self):
        text = (
            "<h1>Guide</h1><p>" + "text " * 60 + "</p>"
            "<h2>Install</h2><p>" + "more " * 60 + "</p>"
        )
        chunks = chunk_document(Document(text=text), "html", _params(overlap=0))
        assert len(chunks) > 1
        assert all(len(c.text) <= 100 for c in chunks)
        assert chunks[-1].metadata["title"] == "Guide"
        assert chunks[-1].metadata["section"] == "Install"


class TestJson:
    def test_chunks_are_valid_json(self):
        data = {f"key_{i}": f"value number {i}" for i in range(40)}
        chunks = chunk_document(Document(text=json.dumps(data)), "json", _params())
        assert len(chunks) > 1
        merged: dict = {}
        for chunk in chunks:
            merged.update(json.loads(chunk.text))
        assert merged == data

    def test_invalid_json_rejected(self):
        with pytest.raises(ValidationError):
            chunk_document(Document(text="{not json"), "json", _params())

    def test_long_string_values_are_cut_to_max_size(self):
        text = json.dumps({"a": "x" * 300, "b": "y" * 300, "c": 1})
        chunks = chunk_document(Document(text=text), "json", _params(overlap=0))
        assert len(chunks) > 3
        assert all(len(c.text) <= 100 for c in chunks)
        assert "".join(c.text for c in chunks).count("x") == 300

    def test_long_top_level_scalar_is_cut_to_max_size(self):
        text = json.dumps("z" * 300)
        chunks = chunk_document(Document(text=text), "json", _params())
        assert len(chunks) == 4
        assert all(len(c.text) <= 100 for c in chunks)
        assert "".join(c.text for c in chunks) == text


class TestLatex:
    def test_chunks_respect_max_size(self):
        text = "\\section{Intro}\n" + "Some words here. " * 20 + "\n\\section{Method}\n" + "More. " * 30
        chunks = chunk_document(Document(text=text), ChunkingStrategy.LATEX, _params())
        assert len(chunks) > 1
        assert all(len(c.text) <= 100 for c in chunks)


class TestChunkMetadata:
    def test_shared_metadata_fields(self):
        doc = Document(text="word " * 100, metadata={"author": "finance", "document_id": "doc-1"})
        chunks = chunk_document(doc, "recursive", _params())
        for chunk in chunks:
            meta = chunk.metadata
            assert meta["author"] == "finance"
            assert meta["document_id"] == "doc-1"
            assert meta["chunking_strategy"] == "recursive"
            assert meta["chunk_size"] == 100
            assert meta["chunk_overlap"] == 10
            assert meta["source"] == "ragindex"
            assert meta["total_chunks"] == len(chunks)
            assert "processed_at" in meta

    def test_document_metadata_not_mutated(self):
        caller_meta = {"author": "finance"}
        doc = Document(text="word " * 100, metadata=caller_meta)
        chunk_document(doc, "recursive", _params())
        caller_meta["author"] = "changed"
        assert doc.metadata == {"author": "finance"}

    def test_ids_unique_over_ten_thousand_chunks(self):
        text = " ".join(f"S{i}." for i in range(10_000))
        chunks = chunk_document(Document(text=text), "sentence", {"max_size": 50, "overlap": 0})
        assert len(chunks) == 10_000
        assert len({c.id for c in chunks}) == 10_000
