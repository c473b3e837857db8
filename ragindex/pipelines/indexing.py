# =============================================================================
# Indexing Orchestrator — Document → Searchable Vectors
# =============================================================================
#
# The write path, one document per call:
#
#   1. Chunk the document with the requested strategy
#   2. Optionally extract title / summary / keywords / questions per chunk
#   3. Sanitize each chunk's metadata (unsafe keys dropped, text attached)
#   4. Embed the non-blank chunks in bounded batches
#   5. Ensure the index exists with the dimension of the first vector,
#      then upsert ONLY the chunks that received an embedding
#
# FAILURE MODEL:
# - Structurally invalid input (empty document, bad params, bad JSON for
#   the json strategy) raises ValidationError before any provider call.
# - Extraction, embedding and upsert failures do NOT raise. They are
#   reported in the IndexReport: embedding_status, per-chunk
#   embedding_generated / stored flags, and the error messages. A chunk
#   whose extraction failed is still embedded and stored without the
#   extracted fields.
# - DimensionMismatchError is fatal and aborts before anything is written.
# - The cancel signal raises OperationCancelledError with the report built
#   so far as `partial` (cancelled=True). Native task cancellation emits an
#   "indexing.cancelled" event and propagates unchanged.
#
# A report with chunk_count == 0 means the document produced no chunks;
# chunk_count > 0 with a FAILED/PARTIAL embedding_status means the provider
# let us down. Callers can always tell the two apart.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ragindex.config import Settings, get_settings
from ragindex.exceptions import (
    EmbeddingRequiredError,
    OperationCancelledError,
    ProviderError,
    ValidationError,
)
from ragindex.models.documents import (
    Chunk,
    ChunkingStrategy,
    ChunkParams,
    Document,
    ExtractParams,
)
from ragindex.models.results import EmbeddingStatus, IndexedChunk, IndexReport
from ragindex.services.cancellation import check_cancelled, run_cancellable
from ragindex.services.chunker import chunk_document, document_id_for
from ragindex.services.embedder import (
    EmbeddingBatchResult,
    EmbeddingProvider,
    EmbeddingProviderPool,
    embed_batch,
)
from ragindex.services.events import EventSink, LoggingEventSink
from ragindex.services.extractor import LLMMetadataExtractor, MetadataExtractor
from ragindex.services.index_writer import IndexWriter
from ragindex.services.metadata import sanitize_metadata
from ragindex.services.vectorstore import VectorStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Run State
# ---------------------------------------------------------------------------


@dataclass
class _IndexingRun:
    """Everything one index_document() call has produced so far."""

    document_id: str
    index_name: str
    text_length: int
    started: float = field(default_factory=time.perf_counter)
    chunks: list[Chunk] = field(default_factory=list)
    metadata: list[dict[str, Any]] = field(default_factory=list)
    embedding: EmbeddingBatchResult | None = None
    stored_ids: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)

    def report(self, cancelled: bool = False) -> IndexReport:
        embedded_flags = [False] * len(self.chunks)
        status = EmbeddingStatus.SKIPPED
        dimension = None
        if self.embedding is not None:
            status = self.embedding.status
            dimension = self.embedding.dimension
            embedded_flags = [v is not None for v in self.embedding.embeddings]

        indexed = [
            IndexedChunk(
                id=chunk.id,
                text=chunk.text,
                metadata=meta,
                index=chunk.index,
                total_chunks=chunk.total_chunks,
                embedding_generated=embedded,
                stored=chunk.id in self.stored_ids,
            )
            for chunk, meta, embedded in zip(self.chunks, self.metadata, embedded_flags)
        ]
        embedded_count = sum(embedded_flags)
        stored_count = sum(1 for c in indexed if c.stored)

        success = (
            not cancelled
            and bool(self.chunks)
            and status in (EmbeddingStatus.COMPLETE, EmbeddingStatus.SKIPPED)
            and stored_count == embedded_count
            and not self.errors
        )

        return IndexReport(
            success=success,
            document_id=self.document_id,
            index_name=self.index_name,
            chunk_count=len(self.chunks),
            total_text_length=self.text_length,
            chunks=indexed,
            embedding_status=status,
            embedded_count=embedded_count,
            stored_count=stored_count,
            dimension=dimension,
            cancelled=cancelled,
            errors=list(self.errors),
            processing_time_ms=round((time.perf_counter() - self.started) * 1000, 2),
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Indexer:
    """
    Indexes documents into one vector store.

    The provider and store are injected; an Indexer holds no per-call state
    and can serve concurrent index_document() calls. Per-call
    `embedding_model` names are built through `provider_factory`. The
    metadata extractor is only built, or called, when a call asks for
    extraction.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: VectorStore,
        events: EventSink | None = None,
        settings: Settings | None = None,
        extractor: MetadataExtractor | None = None,
        provider_factory: Callable[[str], EmbeddingProvider] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._providers = EmbeddingProviderPool(provider, provider_factory, self._settings)
        self._writer = IndexWriter(store)
        self._events = events or LoggingEventSink()
        self._extractor = extractor

    def _get_extractor(self) -> MetadataExtractor:
        if self._extractor is None:
            self._extractor = LLMMetadataExtractor(settings=self._settings)
        return self._extractor

    async def index_document(
        self,
        document: Document,
        strategy: ChunkingStrategy | str | None = None,
        params: ChunkParams | dict[str, Any] | None = None,
        generate_embeddings: bool = True,
        index_name: str | None = None,
        require_embeddings: bool = False,
        cancel_event: asyncio.Event | None = None,
        extract: ExtractParams | dict[str, Any] | None = None,
        embedding_model: str | None = None,
    ) -> IndexReport:
        """
        Chunk, embed and store one document.

        Args:
            document: Text plus caller metadata.
            strategy: Chunking strategy (default from settings).
            params: Chunk parameters; defaults use settings.chunk_size and
                settings.chunk_overlap.
            generate_embeddings: False stops after chunking.
            index_name: Target index (default settings.default_index_name).
            require_embeddings: Raise instead of returning a report when
                not every non-blank chunk got a vector.
            cancel_event: Caller's cancel signal.
            extract: Metadata to derive per chunk with the extractor
                (title, summary, keywords, questions). None extracts nothing.
            embedding_model: Embedding model for this call (default: the
                Indexer's provider).

        Returns:
            IndexReport with per-chunk detail.

        Raises:
            ValidationError: Invalid document, params, extract or index name.
            DimensionMismatchError: Vectors do not fit the existing index.
            EmbeddingRequiredError: require_embeddings and the embedding run
                was not complete (report attached).
            OperationCancelledError: cancel_event fired (partial report
                attached).
        """
        cfg = self._settings
        name = (index_name or cfg.default_index_name or "").strip()
        if not name:
            raise ValidationError("Index name cannot be empty")
        chunk_params = ChunkParams.from_value(
            params if params is not None
            else {"max_size": cfg.chunk_size, "overlap": cfg.chunk_overlap}
        )
        resolved = ChunkingStrategy.resolve(strategy or cfg.default_chunking_strategy)
        extract_params = ExtractParams.from_value(extract)
        provider = self._providers.get(embedding_model)

        run = _IndexingRun(
            document_id=document_id_for(document),
            index_name=name,
            text_length=len(document.text),
        )
        doc_id = run.document_id

        logger.info(
            "Starting indexing: document_id=%s, index=%s, strategy=%s, "
            "max_size=%d, overlap=%d, embeddings=%s",
            doc_id, name, resolved.value,
            chunk_params.max_size, chunk_params.overlap, generate_embeddings,
        )
        self._events.emit(
            "indexing.started", document_id=doc_id, index_name=name, strategy=resolved.value,
        )

        try:
            check_cancelled(cancel_event, "indexing")

            # --- Step 1: Chunk ---
            logger.info("[%s] Step 1/5: Chunking text...", doc_id)
            run.chunks = chunk_document(document, resolved, chunk_params, document_id=doc_id)

            # --- Step 2: Extract metadata (only when asked) ---
            if run.chunks and extract_params.requested:
                logger.info(
                    "[%s] Step 2/5: Extracting %s for %d chunks...",
                    doc_id, ", ".join(extract_params.requested), len(run.chunks),
                )
                await self._extract_metadata(run, extract_params, cancel_event)

            # --- Step 3: Sanitize metadata ---
            logger.info("[%s] Step 3/5: Sanitizing metadata for %d chunks...", doc_id, len(run.chunks))
            run.metadata = [sanitize_metadata(c.metadata) for c in run.chunks]
            self._events.emit("indexing.chunked", document_id=doc_id, chunk_count=len(run.chunks))

            if not run.chunks:
                logger.warning("[%s] No chunks produced from document", doc_id)
                run.errors.append("No chunks produced from document")
                return self._finish(run)

            if not generate_embeddings:
                logger.info("[%s] Embedding generation disabled; returning chunks only", doc_id)
                return self._finish(run)

            # --- Step 4: Embed ---
            logger.info(
                "[%s] Step 4/5: Generating embeddings for %d chunks (model=%s)...",
                doc_id, len(run.chunks), getattr(provider, "model", "unknown"),
            )
            run.embedding = await embed_batch(
                [c.text for c in run.chunks],
                provider,
                batch_size=cfg.embedding_batch_size,
                max_concurrency=cfg.embedding_max_concurrency,
                cancel_event=cancel_event,
                events=self._events,
            )
            run.errors.extend(run.embedding.errors)
            self._events.emit(
                "indexing.embedded",
                document_id=doc_id,
                status=run.embedding.status.value,
                generated=run.embedding.generated,
                skipped_blank=run.embedding.skipped_blank,
            )

            if require_embeddings and run.embedding.status is not EmbeddingStatus.COMPLETE:
                report = run.report()
                raise EmbeddingRequiredError(
                    f"Embeddings required but status is {run.embedding.status.value} "
                    f"({run.embedding.generated}/{len(run.chunks)} chunks embedded)",
                    report=report,
                )

            if run.embedding.generated == 0:
                logger.warning("[%s] No embeddings generated; nothing to store", doc_id)
                return self._finish(run)

            # --- Step 5: Store ---
            logger.info(
                "[%s] Step 5/5: Storing %d vectors in '%s'...",
                doc_id, run.embedding.generated, name,
            )
            await self._store_embedded(run, cancel_event)

        except OperationCancelledError as e:
            if isinstance(e.partial, EmbeddingBatchResult):
                run.embedding = e.partial
            report = run.report(cancelled=True)
            logger.warning(
                "[%s] Indexing cancelled after %d chunks, %d embeddings, %d stored",
                doc_id, report.chunk_count, report.embedded_count, report.stored_count,
            )
            self._events.emit(
                "indexing.cancelled",
                document_id=doc_id,
                chunk_count=report.chunk_count,
                embedded_count=report.embedded_count,
                stored_count=report.stored_count,
            )
            raise OperationCancelledError(
                f"Indexing of {doc_id} cancelled", partial=report,
            ) from e
        except asyncio.CancelledError:
            self._events.emit(
                "indexing.cancelled",
                document_id=doc_id,
                chunk_count=len(run.chunks),
                stored_count=len(run.stored_ids),
                native=True,
            )
            raise

        return self._finish(run)

    async def _store_embedded(
        self,
        run: _IndexingRun,
        cancel_event: asyncio.Event | None,
    ) -> None:
        """Ensure the index and upsert the embedded chunks of `run`."""
        embedding = run.embedding
        if embedding is None or embedding.dimension is None:
            raise RuntimeError(f"[{run.document_id}] store step reached without embeddings")

        positions = embedding.positions
        ids = [run.chunks[p].id for p in positions]
        vectors = [embedding.embeddings[p] for p in positions]
        metadata = [{**run.metadata[p], "text": run.chunks[p].text} for p in positions]

        try:
            await self._writer.ensure_index(run.index_name, embedding.dimension, cancel_event)
            await self._writer.write(
                run.index_name, ids, vectors, metadata, embedding.dimension, cancel_event,
            )
        except ProviderError as e:
            logger.exception("[%s] Storing vectors in '%s' failed", run.document_id, run.index_name)
            run.errors.append(f"Upsert failed: {e}")
            self._events.emit(
                "indexing.upsert_failed",
                document_id=run.document_id,
                index_name=run.index_name,
                error=str(e),
            )
            return

        run.stored_ids.update(ids)

    async def _extract_metadata(
        self,
        run: _IndexingRun,
        params: ExtractParams,
        cancel_event: asyncio.Event | None,
    ) -> None:
        """Merge extracted fields into each chunk's metadata; failures are reported."""
        try:
            extracted = await run_cancellable(
                self._get_extractor().extract([c.text for c in run.chunks], params),
                cancel_event,
                "metadata extraction",
            )
            if len(extracted) != len(run.chunks):
                raise ProviderError(
                    f"Extractor returned {len(extracted)} results "
                    f"for {len(run.chunks)} chunks",
                )
        except ProviderError as e:
            logger.warning("[%s] Metadata extraction failed: %s", run.document_id, e)
            run.errors.append(f"Metadata extraction failed: {e}")
            self._events.emit(
                "indexing.extraction_failed", document_id=run.document_id, error=str(e),
            )
            return

        for chunk, fields in zip(run.chunks, extracted):
            chunk.metadata.update(fields)
        self._events.emit(
            "indexing.extracted",
            document_id=run.document_id,
            fields=params.requested,
            chunk_count=len(run.chunks),
        )

    def _finish(self, run: _IndexingRun) -> IndexReport:
        report = run.report()
        logger.info(
            "[%s] Indexing complete: success=%s, %d chunks, %d embedded, %d stored (%.0fms)",
            run.document_id, report.success, report.chunk_count,
            report.embedded_count, report.stored_count, report.processing_time_ms,
        )
        self._events.emit(
            "indexing.completed",
            document_id=run.document_id,
            success=report.success,
            chunk_count=report.chunk_count,
            embedded_count=report.embedded_count,
            stored_count=report.stored_count,
            embedding_status=report.embedding_status.value,
            processing_time_ms=report.processing_time_ms,
        )
        return report
