# =============================================================================
# Vector Store Abstraction — Named Indexes with Fixed Dimensions
# =============================================================================
#
# The pipeline talks to vector stores through a small protocol:
#
#   create_index(name, dimension)  idempotent; another dimension → error
#   describe_index(name)           dimension of an index, None if missing
#   upsert(name, ids, vectors, metadata)   idempotent by id
#   query(name, vector, top_k, filter)     → list[Candidate], best first
#
# Every implementation records the dimension an index was created with and
# rejects vectors of any other length with DimensionMismatchError, for
# writes AND queries. Backend failures surface as ProviderError.
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── ChromaVectorStore   — ChromaDB (in-process, persistent or HTTP)
#   │                         sync client wrapped in asyncio.to_thread()
#   ├── PgVectorStore       — PostgreSQL + pgvector, one table per index,
#   │                         dimensions kept in a registry table
#   ├── InMemoryVectorStore — pure Python cosine search, process-local
#   └── get_vector_store()  — factory, reads `vectorstore_type`
#
# Scores are cosine similarity (1 - cosine distance), higher = closer.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from ragindex.config import Settings, get_settings
from ragindex.exceptions import (
    DimensionMismatchError,
    ProviderError,
    RagIndexError,
    ValidationError,
)
from ragindex.models.results import Candidate
from ragindex.services.metadata import coerce_metadata_values

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Protocol every vector-store backend implements."""

    async def create_index(self, name: str, dimension: int) -> bool:
        """
        Create `name` with `dimension` if it does not exist.

        Returns True when the index was created, False when it already
        existed with the same dimension.

        Raises:
            DimensionMismatchError: The index exists with another dimension.
        """
        ...

    async def describe_index(self, name: str) -> int | None:
        """Dimension of `name`, or None if there is no such index."""
        ...

    async def upsert(
        self,
        name: str,
        ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
        metadata: Sequence[Mapping[str, Any]],
    ) -> int:
        """Insert or overwrite entries by id. Returns the number written."""
        ...

    async def query(
        self,
        name: str,
        vector: Sequence[float],
        top_k: int,
        filter: Mapping[str, Any] | None = None,
        include_vector: bool = False,
    ) -> list[Candidate]:
        """
        Nearest neighbours of `vector`, highest similarity first.

        With include_vector=True each Candidate carries its stored vector.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: In-Memory
# ---------------------------------------------------------------------------


@dataclass
class _MemoryIndex:
    dimension: int
    entries: dict[str, tuple[list[float], dict[str, Any]]] = field(default_factory=dict)


class InMemoryVectorStore:
    """
    Process-local store with exact cosine search.

    Filters use a Mongo-style subset: plain values mean equality, and a
    value may be an operator dict using $eq, $ne, $in, $nin, $gt, $gte,
    $lt, $lte. Top-level $and / $or take lists of filters.
    """

    def __init__(self) -> None:
        self._indexes: dict[str, _MemoryIndex] = {}

    async def create_index(self, name: str, dimension: int) -> bool:
        _check_positive_dimension(dimension)
        existing = self._indexes.get(name)
        if existing is not None:
            _check_same_dimension(name, existing.dimension, dimension)
            return False
        self._indexes[name] = _MemoryIndex(dimension=dimension)
        logger.info("Created in-memory index '%s' (dimension=%d)", name, dimension)
        return True

    async def describe_index(self, name: str) -> int | None:
        index = self._indexes.get(name)
        return index.dimension if index else None

    async def upsert(self, name, ids, vectors, metadata) -> int:
        index = self._require(name)
        _check_lengths(ids, vectors, metadata)
        for vector in vectors:
            _check_same_dimension(name, index.dimension, len(vector))
        for entry_id, vector, meta in zip(ids, vectors, metadata):
            index.entries[entry_id] = (list(vector), dict(meta))
        return len(ids)

    async def query(
        self, name, vector, top_k, filter=None, include_vector=False,
    ) -> list[Candidate]:
        index = self._indexes.get(name)
        if index is None:
            logger.warning("Query against missing index '%s'", name)
            return []
        _check_same_dimension(name, index.dimension, len(vector))

        scored = [
            Candidate(
                id=entry_id,
                score=round(_cosine_similarity(vector, stored), 4),
                metadata=dict(meta),
                vector=list(stored) if include_vector else None,
            )
            for entry_id, (stored, meta) in index.entries.items()
            if not filter or _matches(meta, filter)
        ]
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:top_k]

    def _require(self, name: str) -> _MemoryIndex:
        index = self._indexes.get(name)
        if index is None:
            raise ProviderError(f"Index '{name}' does not exist", provider="memory")
        return index


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed store; one collection per index.

    The index dimension is stored in the collection metadata next to the
    cosine space setting. ChromaDB supports three modes:
    - In-process, ephemeral (default)
    - In-process, persistent: set CHROMA_PATH
    - Client/server: set CHROMA_URL
    """

    def __init__(self, client: Any | None = None, settings: Settings | None = None) -> None:
        import chromadb

        cfg = settings or get_settings()
        if client is not None:
            self._client = client
        elif cfg.chroma_url:
            self._client = chromadb.HttpClient(host=cfg.chroma_url)
        elif cfg.chroma_path:
            self._client = chromadb.PersistentClient(path=cfg.chroma_path)
        else:
            self._client = chromadb.Client()

    async def create_index(self, name: str, dimension: int) -> bool:
        _check_positive_dimension(dimension)

        def _create() -> bool:
            if self._collection_exists(name):
                existing = self._dimension_of(self._client.get_collection(name=name))
                if existing is not None:
                    _check_same_dimension(name, existing, dimension)
                return False
            self._client.get_or_create_collection(
                name=name,
                metadata={"hnsw:space": "cosine", "dimension": dimension},
            )
            logger.info("Created Chroma collection '%s' (dimension=%d)", name, dimension)
            return True

        return await self._call(_create)

    async def describe_index(self, name: str) -> int | None:
        def _describe() -> int | None:
            if not self._collection_exists(name):
                return None
            return self._dimension_of(self._client.get_collection(name=name))

        return await self._call(_describe)

    async def upsert(self, name, ids, vectors, metadata) -> int:
        _check_lengths(ids, vectors, metadata)

        def _upsert() -> int:
            collection = self._client.get_collection(name=name)
            dimension = self._dimension_of(collection)
            if dimension is not None:
                for vector in vectors:
                    _check_same_dimension(name, dimension, len(vector))
            collection.upsert(
                ids=list(ids),
                embeddings=[list(v) for v in vectors],
                metadatas=[coerce_metadata_values(m) for m in metadata],
                documents=[str(m.get("text", "")) for m in metadata],
            )
            return len(ids)

        written = await self._call(_upsert)
        logger.info("Upserted %d entries into Chroma collection '%s'", written, name)
        return written

    async def query(
        self, name, vector, top_k, filter=None, include_vector=False,
    ) -> list[Candidate]:
        def _query() -> list[Candidate]:
            if not self._collection_exists(name):
                logger.warning("Query against missing Chroma collection '%s'", name)
                return []
            collection = self._client.get_collection(name=name)
            dimension = self._dimension_of(collection)
            if dimension is not None:
                _check_same_dimension(name, dimension, len(vector))
            if collection.count() == 0:
                return []

            results = collection.query(
                query_embeddings=[list(vector)],
                n_results=top_k,
                where=_chroma_where(filter),
                include=["documents", "metadatas", "distances"]
                + (["embeddings"] if include_vector else []),
            )

            candidates: list[Candidate] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    distance = results["distances"][0][i] if results["distances"] else 0.0
                    meta = dict(results["metadatas"][0][i] or {}) if results["metadatas"] else {}
                    if "text" not in meta and results["documents"]:
                        meta["text"] = results["documents"][0][i] or ""
                    stored = None
                    if include_vector and results.get("embeddings") is not None:
                        stored = [float(x) for x in results["embeddings"][0][i]]
                    candidates.append(Candidate(
                        id=chroma_id,
                        score=round(1.0 - distance, 4),
                        metadata=meta,
                        vector=stored,
                    ))
            return candidates

        return await self._call(_query)

    def _collection_exists(self, name: str) -> bool:
        # list_collections() yields names on older clients, Collection
        # objects on newer ones.
        for item in self._client.list_collections():
            if getattr(item, "name", item) == name:
                return True
        return False

    @staticmethod
    def _dimension_of(collection: Any) -> int | None:
        meta = collection.metadata or {}
        value = meta.get("dimension")
        return int(value) if value is not None else None

    async def _call(self, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except RagIndexError:
            raise
        except Exception as e:
            raise ProviderError(f"ChromaDB call failed: {e}", provider="chroma") from e


# ---------------------------------------------------------------------------
# Implementation 3: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------

_PG_REGISTRY_TABLE = "ragindex_indexes"
_PG_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class PgVectorStore:
    """
    pgvector-backed store.

    Each index is its own table (id text PK, embedding vector(dim),
    metadata jsonb). A registry table records index dimensions so
    create_index() can detect mismatches without inspecting column types.
    Filters are JSONB containment (`metadata @> filter`).
    """

    def __init__(self, engine: Any | None = None, settings: Settings | None = None) -> None:
        from sqlalchemy import Column, Integer, MetaData, String, Table

        from ragindex.db.engine import create_engine_from_settings, create_session_factory

        self._engine = engine or create_engine_from_settings(settings)
        self._session_factory = create_session_factory(self._engine)
        self._metadata = MetaData()
        self._registry = Table(
            _PG_REGISTRY_TABLE,
            self._metadata,
            Column("name", String, primary_key=True),
            Column("dimension", Integer, nullable=False),
        )
        self._tables: dict[str, Any] = {}
        self._bootstrapped = False

    async def create_index(self, name: str, dimension: int) -> bool:
        from sqlalchemy.dialects.postgresql import insert

        _check_positive_dimension(dimension)
        await self._bootstrap()
        existing = await self.describe_index(name)
        if existing is not None:
            _check_same_dimension(name, existing, dimension)
            return False

        table = self._table(name, dimension)

        async def _create() -> None:
            async with self._engine.begin() as conn:
                await conn.run_sync(table.create, checkfirst=True)
                await conn.execute(
                    insert(self._registry)
                    .values(name=name, dimension=dimension)
                    .on_conflict_do_nothing(index_elements=["name"])
                )

        await self._call(_create)
        # A concurrent creator may have won with another dimension.
        stored = await self.describe_index(name)
        if stored is not None:
            _check_same_dimension(name, stored, dimension)
        logger.info("Created pgvector index '%s' (dimension=%d)", name, dimension)
        return True

    async def describe_index(self, name: str) -> int | None:
        from sqlalchemy import select

        _check_pg_name(name)
        await self._bootstrap()

        async def _describe() -> int | None:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(self._registry.c.dimension).where(self._registry.c.name == name)
                )
                return result.scalar_one_or_none()

        return await self._call(_describe)

    async def upsert(self, name, ids, vectors, metadata) -> int:
        from sqlalchemy.dialects.postgresql import insert

        _check_lengths(ids, vectors, metadata)
        dimension = await self.describe_index(name)
        if dimension is None:
            raise ProviderError(f"Index '{name}' does not exist", provider="pgvector")
        for vector in vectors:
            _check_same_dimension(name, dimension, len(vector))
        if not ids:
            return 0

        table = self._table(name, dimension)
        rows = [
            {"id": i, "embedding": list(v), "meta": dict(m)}
            for i, v, m in zip(ids, vectors, metadata)
        ]
        stmt = insert(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={table.c.embedding: stmt.excluded.embedding, table.c.meta: stmt.excluded.meta},
        )

        async def _upsert() -> None:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)

        await self._call(_upsert)
        logger.info("Upserted %d entries into pgvector index '%s'", len(rows), name)
        return len(rows)

    async def query(
        self, name, vector, top_k, filter=None, include_vector=False,
    ) -> list[Candidate]:
        from sqlalchemy import select

        dimension = await self.describe_index(name)
        if dimension is None:
            logger.warning("Query against missing pgvector index '%s'", name)
            return []
        _check_same_dimension(name, dimension, len(vector))

        table = self._table(name, dimension)
        distance = table.c.embedding.cosine_distance(list(vector)).label("distance")
        columns = [table.c.id, table.c.meta, distance]
        if include_vector:
            columns.append(table.c.embedding)
        stmt = select(*columns).order_by(distance).limit(top_k)
        if filter:
            stmt = stmt.where(table.c.meta.contains(dict(filter)))

        async def _query() -> list[Any]:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.all())

        rows = await self._call(_query)
        logger.debug("pgvector query on '%s' returned %d rows (top_k=%d)", name, len(rows), top_k)
        return [
            Candidate(
                id=row[0],
                score=round(1.0 - row[2], 4),
                metadata=dict(row[1] or {}),
                vector=[float(x) for x in row[3]] if include_vector else None,
            )
            for row in rows
        ]

    async def _bootstrap(self) -> None:
        if self._bootstrapped:
            return
        from ragindex.db.engine import ensure_vector_extension

        async def _init() -> None:
            await ensure_vector_extension(self._engine)
            async with self._engine.begin() as conn:
                await conn.run_sync(self._registry.create, checkfirst=True)

        await self._call(_init)
        self._bootstrapped = True

    def _table(self, name: str, dimension: int) -> Any:
        from pgvector.sqlalchemy import Vector
        from sqlalchemy import Column, String, Table
        from sqlalchemy.dialects.postgresql import JSONB

        _check_pg_name(name)
        table = self._tables.get(name)
        if table is None:
            table = Table(
                name,
                self._metadata,
                Column("id", String, primary_key=True),
                Column("embedding", Vector(dimension), nullable=False),
                Column("metadata", JSONB, key="meta", nullable=False),
            )
            self._tables[name] = table
        return table

    @staticmethod
    async def _call(fn: Callable[[], Any]) -> Any:
        from sqlalchemy.exc import SQLAlchemyError

        try:
            return await fn()
        except SQLAlchemyError as e:
            raise ProviderError(f"pgvector call failed: {e}", provider="pgvector") from e
        except OSError as e:
            raise ProviderError(f"pgvector connection failed: {e}", provider="pgvector") from e


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store(
    override_type: str | None = None,
    settings: Settings | None = None,
) -> VectorStore:
    """
    Build the configured vector store backend.

    - "chroma" → ChromaVectorStore (default)
    - "pgvector" → PgVectorStore
    - "memory" → InMemoryVectorStore

    Each call returns a new instance; callers inject it into the pipeline.
    """
    cfg = settings or get_settings()
    store_type = override_type or cfg.vectorstore_type

    if store_type == "pgvector":
        logger.info("Using pgvector vector store")
        return PgVectorStore(settings=cfg)
    if store_type == "memory":
        logger.info("Using in-memory vector store")
        return InMemoryVectorStore()
    if store_type != "chroma":
        logger.warning("Unknown vectorstore_type %r; using ChromaDB", store_type)
    logger.info("Using ChromaDB vector store")
    return ChromaVectorStore(settings=cfg)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _check_positive_dimension(dimension: int) -> None:
    if not isinstance(dimension, int) or dimension <= 0:
        raise ValidationError(f"Index dimension must be a positive int, got {dimension!r}")


def _check_same_dimension(name: str, expected: int, actual: int) -> None:
    if expected != actual:
        raise DimensionMismatchError(
            f"Index '{name}' has dimension {expected}, got a {actual}-dim vector",
            expected=expected,
            actual=actual,
        )


def _check_lengths(ids: Sequence[Any], vectors: Sequence[Any], metadata: Sequence[Any]) -> None:
    if not (len(ids) == len(vectors) == len(metadata)):
        raise ValidationError(
            f"ids ({len(ids)}), vectors ({len(vectors)}) and metadata "
            f"({len(metadata)}) must have the same length"
        )


def _check_pg_name(name: str) -> None:
    if not _PG_NAME_RE.match(name):
        raise ValidationError(
            f"Index name {name!r} is not a valid PostgreSQL table name"
        )


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _chroma_where(filter: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """ChromaDB needs an explicit $and when a filter has several fields."""
    if not filter:
        return None
    if len(filter) == 1 or any(k.startswith("$") for k in filter):
        return dict(filter)
    return {"$and": [{k: v} for k, v in filter.items()]}


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda a, b: a == b,
    "$ne": lambda a, b: a != b,
    "$in": lambda a, b: a in b,
    "$nin": lambda a, b: a not in b,
    "$gt": lambda a, b: a is not None and a > b,
    "$gte": lambda a, b: a is not None and a >= b,
    "$lt": lambda a, b: a is not None and a < b,
    "$lte": lambda a, b: a is not None and a <= b,
}


def _matches(meta: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    for key, expected in filter.items():
        if key == "$and":
            if not all(_matches(meta, f) for f in expected):
                return False
        elif key == "$or":
            if not any(_matches(meta, f) for f in expected):
                return False
        elif isinstance(expected, Mapping) and expected and all(
            op in _COMPARATORS for op in expected
        ):
            actual = meta.get(key)
            try:
                if not all(_COMPARATORS[op](actual, arg) for op, arg in expected.items()):
                    return False
            except TypeError:
                return False
        elif meta.get(key) != expected:
            return False
    return True
