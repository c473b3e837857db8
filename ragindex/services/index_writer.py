# =============================================================================
# Index Writer — Dimension-Checked Upserts
# =============================================================================
#
# Sits between the indexing orchestrator and a VectorStore:
#
#   ensure_index(name, dimension)
#       idempotent; creates the index on first use with the dimension of
#       the run's first vector, fails fast if the index already exists with
#       a different dimension
#
#   write(name, ids, vectors, metadata)
#       validates the three sequences line up and that every vector matches
#       the index dimension, THEN upserts. A dimension problem never reaches
#       the store.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ragindex.exceptions import DimensionMismatchError, ValidationError
from ragindex.services.cancellation import run_cancellable
from ragindex.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)


class IndexWriter:
    """Writes embedded chunks into one VectorStore."""

    def __init__(self, store: VectorStore) -> None:
        self._store = store

    async def ensure_index(
        self,
        name: str,
        dimension: int,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """
        Make sure `name` exists with `dimension`.

        Returns:
            True if the index was created by this call, False if it existed.

        Raises:
            DimensionMismatchError: The index exists with another dimension.
        """
        existing = await run_cancellable(
            self._store.describe_index(name), cancel_event, "describe index",
        )
        if existing is not None:
            if existing != dimension:
                raise DimensionMismatchError(
                    f"Index '{name}' exists with dimension {existing}; "
                    f"this run produced {dimension}-dim vectors",
                    expected=existing,
                    actual=dimension,
                )
            logger.debug("Index '%s' already exists (dimension=%d)", name, existing)
            return False

        created = await run_cancellable(
            self._store.create_index(name, dimension), cancel_event, "create index",
        )
        logger.info("Ensured index '%s' (dimension=%d, created=%s)", name, dimension, created)
        return created

    async def write(
        self,
        name: str,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
        dimension: int,
        cancel_event: asyncio.Event | None = None,
    ) -> int:
        """
        Upsert entries after checking shapes.

        Raises:
            ValidationError: ids / vectors / metadata lengths differ, or ids
                repeat within the call.
            DimensionMismatchError: A vector's length is not `dimension`.
        """
        if not (len(ids) == len(vectors) == len(metadata)):
            raise ValidationError(
                f"ids ({len(ids)}), vectors ({len(vectors)}) and metadata "
                f"({len(metadata)}) must have the same length"
            )
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate ids in a single upsert")
        for entry_id, vector in zip(ids, vectors):
            if len(vector) != dimension:
                raise DimensionMismatchError(
                    f"Vector for '{entry_id}' has dimension {len(vector)}, "
                    f"index '{name}' expects {dimension}",
                    expected=dimension,
                    actual=len(vector),
                )

        if not ids:
            logger.info("Nothing to upsert into '%s'", name)
            return 0

        written = await run_cancellable(
            self._store.upsert(name, list(ids), [list(v) for v in vectors], list(metadata)),
            cancel_event,
            "upsert",
        )
        logger.info("Wrote %d vectors to index '%s'", written, name)
        return written
