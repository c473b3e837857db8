# =============================================================================
# Unit Tests — Index Writer
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from ragindex.exceptions import DimensionMismatchError, ValidationError
from ragindex.services.index_writer import IndexWriter


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestEnsureIndex:
    def test_second_call_is_a_no_op(self, memory_store):
        writer = IndexWriter(memory_store)

        async def scenario():
            first = await writer.ensure_index("docs", 4)
            second = await writer.ensure_index("docs", 4)
            return first, second

        assert _run(scenario()) == (True, False)

    def test_existing_index_is_not_recreated(self):
        store = AsyncMock()
        store.describe_index.return_value = 4
        assert _run(IndexWriter(store).ensure_index("docs", 4)) is False
        store.create_index.assert_not_called()

    def test_dimension_mismatch(self, memory_store):
        writer = IndexWriter(memory_store)

        async def scenario():
            await writer.ensure_index("docs", 4)
            await writer.ensure_index("docs", 8)

        with pytest.raises(DimensionMismatchError) as exc_info:
            _run(scenario())
        assert exc_info.value.expected == 4
        assert exc_info.value.actual == 8


class TestWrite:
    def test_bad_vector_never_reaches_store(self):
        store = AsyncMock()
        with pytest.raises(DimensionMismatchError):
            _run(IndexWriter(store).write(
                "docs", ["a", "b"], [[0.1] * 4, [0.1] * 3], [{}, {}], dimension=4,
            ))
        store.upsert.assert_not_called()

    def test_length_mismatch(self):
        store = AsyncMock()
        with pytest.raises(ValidationError):
            _run(IndexWriter(store).write("docs", ["a"], [], [{}], dimension=4))
        store.upsert.assert_not_called()

    def test_duplicate_ids_rejected(self):
        store = AsyncMock()
        with pytest.raises(ValidationError):
            _run(IndexWriter(store).write(
                "docs", ["a", "a"], [[0.1] * 4, [0.2] * 4], [{}, {}], dimension=4,
            ))

    def test_empty_write_skips_store(self):
        store = AsyncMock()
        assert _run(IndexWriter(store).write("docs", [], [], [], dimension=4)) == 0
        store.upsert.assert_not_called()

    def test_writes_through_to_store(self, memory_store):
        writer = IndexWriter(memory_store)

        async def scenario():
            await writer.ensure_index("docs", 2)
            written = await writer.write(
                "docs", ["a", "b"], [[1.0, 0.0], [0.0, 1.0]],
                [{"text": "a"}, {"text": "b"}], dimension=2,
            )
            return written, await memory_store.query("docs", [1.0, 0.0], 1)

        written, results = _run(scenario())
        assert written == 2
        assert results[0].id == "a"
