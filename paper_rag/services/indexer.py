# =============================================================================
# Indexing Run: Document → Chunks → Embeddings → Vector Index
# =============================================================================
#
# INDEXING PIPELINE:
#   1. Chunk the document (structure-aware, overlapping)
#   2. Ensure the index exists with the embedding model's dimension
#   3. Embed every chunk with the DOCUMENT task variant
#   4. Upsert one record per chunk
#
# All embeddings are computed before the first write, so a failing batch
# leaves the index untouched: no partial documents.
#
# Record ids are "<source>#<ordinal>", so re-indexing the same document
# replaces its records instead of duplicating them. Records of that source
# with an ordinal past the new chunk count are deleted after the upsert.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from paper_rag.config import settings
from paper_rag.errors import InputValidationError
from paper_rag.services.chunker import Chunk, ChunkingConfig, chunk_text
from paper_rag.services.embedder import (
    EmbeddingModel,
    ProgressCallback,
    TaskType,
    embed_batch,
)
from paper_rag.services.filters import And, Eq, Range
from paper_rag.services.vectorstore import IndexedRecord, VectorIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    """Raw text plus the identifier it is cited by."""

    text: str
    source: str


@dataclass
class IndexingSummary:
    index_name: str
    source: str
    chunk_count: int
    dimension: int
    chunk_size: int
    chunk_overlap: int


def record_id(source: str, ordinal: int) -> str:
    return f"{source}#{ordinal}"


def stale_records_filter(document: Document, chunk_count: int) -> And:
    """Records of `document` beyond its current last chunk."""
    return And((Eq("source", document.source), Range("ordinal", gte=chunk_count)))


def build_records(
    document: Document,
    chunks: list[Chunk],
    vectors: list[list[float]],
) -> list[IndexedRecord]:
    """Pair chunks with their vectors one-to-one."""
    return [
        IndexedRecord(
            id=record_id(document.source, chunk.ordinal),
            vector=vector,
            metadata={
                "text": chunk.text,
                "source": document.source,
                "excerpt_keywords": ", ".join(chunk.keywords),
                "ordinal": chunk.ordinal,
                "start": chunk.start,
                "token_count": chunk.token_count,
            },
        )
        for chunk, vector in zip(chunks, vectors, strict=True)
    ]


def index_document(
    document: Document,
    embedding_model: EmbeddingModel,
    index: VectorIndex,
    index_name: str | None = None,
    config: ChunkingConfig | None = None,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    progress: ProgressCallback | None = None,
) -> IndexingSummary:
    """
    Run the full write path for one document.

    Raises:
        InputValidationError: Empty document or source, invalid chunk config.
        ConfigurationError: Index dimension differs from the model's.
        UpstreamUnavailable: An embedding batch failed (nothing was written).
    """
    if not document.source.strip():
        raise InputValidationError("Document source identifier must not be empty")
    if not document.text.strip():
        raise InputValidationError(
            f"Document '{document.source}' is empty; nothing to index"
        )

    _index_name = index_name or settings.index_name
    _config = config or ChunkingConfig.from_settings()

    logger.info(
        "Indexing '%s' into '%s' (%d chars, size=%d, overlap=%d)",
        document.source, _index_name, len(document.text),
        _config.max_size, _config.overlap,
    )

    try:
        chunks = chunk_text(document.text, _config)
        logger.info("Step 1/3: created %d chunks", len(chunks))

        index.create_index(_index_name, embedding_model.dimension)

        logger.info("Step 2/3: embedding %d chunks (model=%s)", len(chunks), embedding_model.name)
        vectors = embed_batch(
            [c.text for c in chunks],
            embedding_model,
            task_type=TaskType.DOCUMENT,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
            progress=progress,
        )

        logger.info("Step 3/3: upserting %d records", len(vectors))
        index.upsert(_index_name, build_records(document, chunks, vectors))
        stale = index.delete_records(
            _index_name, stale_records_filter(document, len(chunks)),
        )
        if stale:
            logger.info("Removed %d records left from a longer earlier version", stale)
    except Exception:
        logger.exception(
            "Indexing aborted for '%s' into '%s'", document.source, _index_name,
        )
        raise

    summary = IndexingSummary(
        index_name=_index_name,
        source=document.source,
        chunk_count=len(chunks),
        dimension=embedding_model.dimension,
        chunk_size=_config.max_size,
        chunk_overlap=_config.overlap,
    )
    logger.info("Indexing complete: %s", summary)
    return summary
